import logging
from contextlib import asynccontextmanager

import asyncpg
import httpx
from fastapi import FastAPI

from app.api.routes import ping, reconciliation, tickets
from app.core.config import Settings, get_settings
from app.core.logging import configure_logging, init_tracer, shutdown_tracer
from app.metrics import metrics_registry
from app.services.notifications import DeliveryDocumentClient, ObserverNotifier
from app.services.postgres import PostgresPool
from app.tickets.authorization import AssignmentAuthorizer
from app.tickets.directory import ContactDirectory, EmployeeDirectory, StateMachineStore
from app.tickets.guards import ConcurrencyGuard
from app.tickets.history import HistoryRecorder
from app.tickets.reconciliation import HistoryReconciler
from app.tickets.repository import StateHistoryRepository, TicketRepository
from app.tickets.state import StateMachineRegistry
from app.tickets.workflow import TicketWorkflow

logger = logging.getLogger(__name__)


async def build_workflow(
    settings: Settings, pool: asyncpg.Pool, client: httpx.AsyncClient
) -> tuple[TicketWorkflow, ObserverNotifier]:
    """Wire the ticket workflow and its collaborators onto an asyncpg pool."""

    ticket_repository = TicketRepository(pool)
    history_repository = StateHistoryRepository(pool)
    state_machines = StateMachineStore(pool)
    employees = EmployeeDirectory(pool)
    contacts = ContactDirectory(pool)
    for store in (ticket_repository, history_repository, state_machines, employees, contacts):
        await store.ensure_schema()

    notifier = ObserverNotifier(client, settings.observer_endpoint, metrics=metrics_registry)
    recorder = HistoryRecorder(
        history_repository,
        documents=DeliveryDocumentClient(client, settings.ods_endpoint),
        publisher=notifier,
        reschedule_state=settings.reschedule_state,
        metrics=metrics_registry,
    )
    registry = StateMachineRegistry(
        state_machines,
        max_entries=settings.state_machine_cache_size,
        ttl_seconds=settings.state_machine_cache_ttl_seconds,
        metrics=metrics_registry,
    )
    workflow = TicketWorkflow(
        ticket_repository,
        employees,
        contacts,
        registry,
        recorder,
        authorizer=AssignmentAuthorizer(home_provider=settings.home_provider),
        guard=ConcurrencyGuard(ticket_repository, active_state=settings.active_service_state),
        coordination_state=settings.coordination_state,
        metrics=metrics_registry,
    )
    return workflow, notifier


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.tracer_provider = tracer_provider

    postgres = PostgresPool(
        dsn=settings.postgres_dsn,
        min_size=settings.postgres_pool_min_size,
        max_size=settings.postgres_pool_max_size,
    )
    client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    notifier: ObserverNotifier | None = None
    app.state.postgres = postgres
    app.state.ticket_workflow = None
    app.state.history_reconciler = None
    try:
        pool = await postgres.get_pool()
        workflow, notifier = await build_workflow(settings, pool, client)
        app.state.ticket_workflow = workflow
        app.state.history_reconciler = HistoryReconciler(pool)
    except (OSError, asyncpg.PostgresError) as exc:
        logger.exception("Ticket workflow initialisation failed: %s", exc)
    try:
        yield
    finally:
        if notifier is not None:
            await notifier.drain()
        await client.aclose()
        await postgres.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    app.include_router(reconciliation.router)
    return app


app = create_app()
