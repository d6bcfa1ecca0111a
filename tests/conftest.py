from __future__ import annotations

import itertools
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Sequence

import pytest

from app.metrics import MetricsRegistry, create_registry
from app.services.notifications import DeliveryDocument
from app.tickets.authorization import AssignmentAuthorizer
from app.tickets.errors import DocumentServiceError, NotFoundError, StaleTicketError
from app.tickets.guards import ConcurrencyGuard
from app.tickets.history import HistoryRecorder
from app.tickets.models import (
    Assignment,
    Contact,
    Employee,
    State,
    StateChangeNotification,
    StateHistoryEntry,
    StateMachine,
    StateRef,
    Ticket,
)
from app.tickets.state import StateMachineRegistry
from app.tickets.workflow import TicketWorkflow

COMMERCE_ID = "commerce-1"
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

_TRANSITIONS = {
    "created": ("dispatcher_assigned", "technician_assigned"),
    "dispatcher_assigned": ("technician_assigned", "dispatcher_assigned"),
    "technician_assigned": ("coordinate", "technician_unassigned", "technician_assigned", "dispatcher_assigned"),
    "technician_unassigned": ("technician_assigned", "dispatcher_assigned"),
    "coordinate": ("in_service", "reschedule", "technician_unassigned", "dispatcher_assigned"),
    "reschedule": ("coordinate", "dispatcher_assigned"),
    "in_service": ("closed",),
    "closed": (),
}

_LABELS = {
    "created": "Creado",
    "dispatcher_assigned": "Dispatcher asignado",
    "technician_assigned": "Técnico asignado",
    "technician_unassigned": "Técnico desasignado",
    "coordinate": "Coordinado",
    "reschedule": "Reprogramado",
    "in_service": "En servicio",
    "closed": "Cerrado",
}


def make_machine(commerce_id: str = COMMERCE_ID, transitions: dict[str, Sequence[str]] | None = None) -> StateMachine:
    transitions = _TRANSITIONS if transitions is None else transitions
    return StateMachine(
        commerce_id=commerce_id,
        states=tuple(
            State(id=state_id, label=_LABELS.get(state_id, state_id), transitions=frozenset(targets))
            for state_id, targets in transitions.items()
        ),
    )


def make_employee(employee_id: str, *, role: str = "DISPATCHER", provider: str | None = "STEFANINI") -> Employee:
    return Employee(
        id=employee_id,
        role=role,
        provider=provider,
        first_name=employee_id.capitalize(),
        first_surname="Pérez",
    )


def make_assignment(employee: Employee, *, enabled: bool = True, assigned_by: str = "admin") -> Assignment:
    assignment = employee.assignment(assigned_by=assigned_by, assigned_at=BASE_TIME)
    return assignment if enabled else assignment.disable(by=assigned_by, at=BASE_TIME)


def make_ticket(
    ticket_id: str = "ticket-1",
    *,
    state: str | None = "created",
    dispatchers: Sequence[Assignment] = (),
    technicians: Sequence[Assignment] = (),
    commerce_id: str = COMMERCE_ID,
) -> Ticket:
    return Ticket(
        id=ticket_id,
        commerce_id=commerce_id,
        ticket_number=f"TCK-{ticket_id}",
        current_state=StateRef(id=state, label=_LABELS.get(state, state)) if state else None,
        dispatchers=list(dispatchers),
        technicians=list(technicians),
        created_at=BASE_TIME,
        updated_at=BASE_TIME,
    )


class InMemoryTickets:
    """Ticket store with the same revision semantics as the Postgres repository."""

    def __init__(self, *tickets: Ticket) -> None:
        self.tickets: dict[str, Ticket] = {ticket.id: ticket for ticket in tickets}
        self.saved: list[Ticket] = []
        self.concurrent_writes = 0

    def add(self, ticket: Ticket) -> Ticket:
        self.tickets[ticket.id] = ticket
        return ticket

    async def create_ticket(self, ticket: Ticket) -> Ticket:
        self.tickets[ticket.id] = replace(ticket, revision=0)
        return self.tickets[ticket.id]

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ticket = self.tickets.get(ticket_id)
        return replace(ticket) if ticket is not None else None

    async def save_ticket(self, ticket: Ticket) -> Ticket:
        stored = self.tickets.get(ticket.id)
        if stored is None:
            raise NotFoundError(f"Ticket {ticket.id} not found")
        if self.concurrent_writes:
            # Another writer lands between this caller's read and write.
            self.concurrent_writes -= 1
            self.tickets[ticket.id] = replace(stored, revision=stored.revision + 1)
            raise StaleTicketError(ticket.id, ticket.revision)
        if stored.revision != ticket.revision:
            raise StaleTicketError(ticket.id, ticket.revision)
        saved = replace(ticket, revision=ticket.revision + 1)
        self.tickets[ticket.id] = saved
        self.saved.append(saved)
        return saved

    async def find_serving_ticket(
        self, technician_ids: Sequence[str], state_id: str, *, exclude_ticket_id: str
    ) -> Ticket | None:
        for ticket in self.tickets.values():
            if ticket.id == exclude_ticket_id or ticket.current_state_id != state_id:
                continue
            if any(entry.enabled and entry.id in technician_ids for entry in ticket.technicians):
                return ticket
        return None


class InMemoryHistory:
    def __init__(self) -> None:
        self.entries: list[StateHistoryEntry] = []
        self.batches: list[list[StateHistoryEntry]] = []

    async def append(self, entries: Sequence[StateHistoryEntry]) -> None:
        known = {entry.id for entry in self.entries}
        self.batches.append(list(entries))
        self.entries.extend(entry for entry in entries if entry.id not in known)

    async def list_for_ticket(self, ticket_id: str) -> list[StateHistoryEntry]:
        return [entry for entry in self.entries if entry.ticket_id == ticket_id]


class Directory:
    def __init__(self, *records) -> None:
        self.records = {record.id: record for record in records}

    def add(self, record) -> None:
        self.records[record.id] = record

    async def get(self, record_id: str):
        return self.records.get(record_id)


class StaticStateMachines:
    def __init__(self, *machines: StateMachine) -> None:
        self.machines = {machine.commerce_id: machine for machine in machines}
        self.calls: list[str] = []

    async def fetch_state_machine(self, commerce_id: str) -> StateMachine | None:
        self.calls.append(commerce_id)
        return self.machines.get(commerce_id)


class StubDocuments:
    def __init__(self, document: DeliveryDocument | None = None, *, error: Exception | None = None) -> None:
        self.document = document or DeliveryDocument(file_name="ods.pdf", file_path="/ods/ods.pdf", url="https://ods/1")
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def fetch(self, ticket_id: str, commerce_id: str) -> DeliveryDocument:
        self.calls.append((ticket_id, commerce_id))
        if self.error is not None:
            raise self.error
        return self.document


class RecordingPublisher:
    def __init__(self) -> None:
        self.notifications: list[StateChangeNotification] = []

    def notify(self, notification: StateChangeNotification) -> None:
        self.notifications.append(notification)


class TickingClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self._ticks = itertools.count(1)
        self._start = start

    def __call__(self) -> datetime:
        return self._start + timedelta(seconds=next(self._ticks))


@dataclass
class WorkflowHarness:
    workflow: TicketWorkflow
    tickets: InMemoryTickets
    history: InMemoryHistory
    employees: Directory
    contacts: Directory
    machines: StaticStateMachines
    documents: StubDocuments
    publisher: RecordingPublisher
    metrics: object

    def ticket(self, ticket_id: str = "ticket-1") -> Ticket:
        return self.tickets.tickets[ticket_id]


def build_harness(
    *,
    machine: StateMachine | None = None,
    documents: StubDocuments | None = None,
    metrics: MetricsRegistry | None = None,
) -> WorkflowHarness:
    metrics = metrics if metrics is not None else create_registry()
    tickets = InMemoryTickets()
    history = InMemoryHistory()
    employees = Directory()
    contacts = Directory(Contact(id="contact-1", commerce_id=COMMERCE_ID, first_name="Ana", last_name="Ruiz"))
    machines = StaticStateMachines(machine or make_machine())
    documents = documents or StubDocuments()
    publisher = RecordingPublisher()
    clock = TickingClock()
    ids = itertools.count(1)
    recorder = HistoryRecorder(
        history,
        documents=documents,
        publisher=publisher,
        metrics=metrics,
        clock=clock,
        id_factory=lambda: f"entry-{next(ids)}",
    )
    workflow = TicketWorkflow(
        tickets,
        employees,
        contacts,
        StateMachineRegistry(machines, metrics=metrics),
        recorder,
        authorizer=AssignmentAuthorizer(home_provider="STEFANINI"),
        guard=ConcurrencyGuard(tickets),
        metrics=metrics,
        clock=clock,
    )
    return WorkflowHarness(
        workflow=workflow,
        tickets=tickets,
        history=history,
        employees=employees,
        contacts=contacts,
        machines=machines,
        documents=documents,
        publisher=publisher,
        metrics=metrics,
    )


@pytest.fixture
def harness() -> WorkflowHarness:
    return build_harness()


@pytest.fixture
def failing_documents() -> StubDocuments:
    return StubDocuments(error=DocumentServiceError("ODS service unavailable"))


class DummyAcquire:
    def __init__(self, connection):
        self._connection = connection

    async def __aenter__(self):
        return self._connection

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummyPool:
    def __init__(self, connection):
        self._connection = connection

    def acquire(self):
        return DummyAcquire(self._connection)
