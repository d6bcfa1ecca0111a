from datetime import datetime, timezone
from unittest.mock import AsyncMock

import asyncpg
import pytest
from fastapi.testclient import TestClient

from app.api.routes import reconciliation as reconciliation_routes
from app.api.routes import tickets as ticket_routes
from app.main import create_app
from app.tickets.errors import (
    BadRequestError,
    ConflictError,
    DocumentServiceError,
    ForbiddenError,
    NotFoundError,
    StateMachineUnavailableError,
)
from app.tickets.models import CoordinationDetails, StateHistoryEntry, WorkflowResult
from app.tickets.reconciliation import UnrecordedTransition

from conftest import make_assignment, make_employee, make_ticket

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _entry(state_id: str = "coordinate") -> StateHistoryEntry:
    return StateHistoryEntry(
        id="h1",
        ticket_id="ticket-1",
        commerce_id="commerce-1",
        state_id=state_id,
        state_label="Coordinado",
        description="Cambio de estado Técnico asignado al estado Coordinado.",
        created_at=NOW,
        customs={"clientId": "c-1"},
    )


def _result(**kwargs) -> WorkflowResult:
    ticket = make_ticket(
        state="coordinate",
        dispatchers=[make_assignment(make_employee("d1"))],
        technicians=[make_assignment(make_employee("t1", role="TECHNICIAN"))],
    )
    return WorkflowResult(message="ok", ticket=ticket, history=(_entry(),), **kwargs)


@pytest.fixture
def ticket_client():
    app = create_app()
    workflow = AsyncMock()

    async def override_workflow():
        return workflow

    app.dependency_overrides[ticket_routes.get_ticket_workflow] = override_workflow

    client = TestClient(app)
    try:
        yield client, workflow
    finally:
        app.dependency_overrides.clear()


def test_update_state_passes_coordination_details(ticket_client):
    client, workflow = ticket_client
    workflow.update_state = AsyncMock(return_value=_result())

    response = client.put(
        "/tickets/ticket-1/states/coordinate",
        json={"coordinatedDate": NOW.isoformat(), "coordinatedContactId": "contact-1", "customs": {"clientId": "c-1"}},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["changed"] is True
    assert body["ticket"]["current_state"] == {"id": "coordinate", "label": "Coordinado"}
    assert body["ticket"]["technicians"][0]["id"] == "t1"
    assert body["history"][0]["customs"] == {"clientId": "c-1"}
    workflow.update_state.assert_awaited_once_with(
        "ticket-1",
        "coordinate",
        CoordinationDetails(coordinated_date=NOW, coordinated_contact_id="contact-1", customs={"clientId": "c-1"}),
    )


def test_update_state_without_body(ticket_client):
    client, workflow = ticket_client
    workflow.update_state = AsyncMock(return_value=_result())

    response = client.put("/tickets/ticket-1/states/in_service")

    assert response.status_code == 200
    assert workflow.update_state.await_args.args[2] == CoordinationDetails()


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (NotFoundError("missing"), 404),
        (BadRequestError("bad"), 400),
        (ForbiddenError("nope"), 403),
        (ConflictError("busy"), 409),
        (DocumentServiceError("ods down"), 502),
        (StateMachineUnavailableError("no machine"), 503),
    ],
)
def test_update_state_maps_errors(ticket_client, error, status_code):
    client, workflow = ticket_client
    workflow.update_state = AsyncMock(side_effect=error)

    response = client.put("/tickets/ticket-1/states/closed", json={})

    assert response.status_code == status_code
    assert response.json()["detail"] == str(error)


def test_assign_technician_endpoint(ticket_client):
    client, workflow = ticket_client
    workflow.assign_technician = AsyncMock(return_value=_result())

    response = client.post("/tickets/ticket-1/technicians", json={"technicianId": "t1", "dispatcherId": "d1"})

    assert response.status_code == 200
    workflow.assign_technician.assert_awaited_once_with("ticket-1", "t1", "d1")


def test_assign_technician_requires_ids(ticket_client):
    client, workflow = ticket_client
    workflow.assign_technician = AsyncMock()

    response = client.post("/tickets/ticket-1/technicians", json={"technicianId": "t1"})

    assert response.status_code == 422
    workflow.assign_technician.assert_not_awaited()


def test_unassign_technician_endpoint(ticket_client):
    client, workflow = ticket_client
    workflow.unassign_technician = AsyncMock(return_value=_result(changed=False))

    response = client.request("DELETE", "/tickets/ticket-1/technicians", json={"dispatcherId": "d1"})

    assert response.status_code == 200
    assert response.json()["changed"] is False
    workflow.unassign_technician.assert_awaited_once_with("ticket-1", None, "d1")


def test_assign_dispatcher_forbidden(ticket_client):
    client, workflow = ticket_client
    workflow.assign_dispatcher = AsyncMock(side_effect=ForbiddenError("other provider"))

    response = client.post(
        "/tickets/ticket-1/dispatchers", json={"dispatcherId": "d2", "currentDispatcherId": "d1"}
    )

    assert response.status_code == 403
    workflow.assign_dispatcher.assert_awaited_once_with("ticket-1", "d2", "d1")


def test_unassign_dispatcher_endpoint(ticket_client):
    client, workflow = ticket_client
    workflow.unassign_dispatcher = AsyncMock(return_value=WorkflowResult(message="done"))

    response = client.request(
        "DELETE", "/tickets/ticket-1/dispatchers", json={"dispatcherId": "d1", "actingEmployeeId": "admin"}
    )

    assert response.status_code == 200
    assert response.json() == {"message": "done", "changed": True, "ticket": None, "history": []}
    workflow.unassign_dispatcher.assert_awaited_once_with("ticket-1", "d1", acting_employee_id="admin")


def test_history_endpoint(ticket_client):
    client, workflow = ticket_client
    workflow.get_history = AsyncMock(return_value=[_entry("reschedule"), _entry("coordinate")])

    response = client.get("/tickets/ticket-1/history")

    assert response.status_code == 200
    assert [item["state_id"] for item in response.json()] == ["reschedule", "coordinate"]


def test_history_endpoint_unknown_ticket(ticket_client):
    client, workflow = ticket_client
    workflow.get_history = AsyncMock(side_effect=NotFoundError("Ticket ghost not found"))

    response = client.get("/tickets/ghost/history")

    assert response.status_code == 404


def test_unconfigured_workflow_returns_503():
    client = TestClient(create_app())

    response = client.get("/tickets/ticket-1/history")

    assert response.status_code == 503


def test_ping_reports_readiness():
    client = TestClient(create_app())

    assert client.get("/ping").json() == {"status": "ok"}
    assert client.get("/ping/ready").json() == {"status": "degraded"}


class _Postgres:
    def __init__(self, error: Exception | None = None) -> None:
        self.test_connection = AsyncMock(side_effect=error, return_value=True)


@pytest.mark.parametrize(
    ("postgres", "expected"),
    [
        (_Postgres(), "ok"),
        (_Postgres(OSError("connection refused")), "degraded"),
        (_Postgres(asyncpg.PostgresError("too many clients")), "degraded"),
        (None, "degraded"),
    ],
)
def test_ready_checks_postgres(postgres, expected):
    app = create_app()
    app.state.ticket_workflow = AsyncMock()
    app.state.postgres = postgres

    response = TestClient(app).get("/ping/ready")

    assert response.json() == {"status": expected}
    if postgres is not None:
        postgres.test_connection.assert_awaited_once()


@pytest.fixture
def reconciliation_client():
    app = create_app()
    reconciler = AsyncMock()

    async def override_reconciler():
        return reconciler

    app.dependency_overrides[reconciliation_routes.get_history_reconciler] = override_reconciler
    try:
        yield TestClient(app), reconciler
    finally:
        app.dependency_overrides.clear()


def test_unrecorded_transitions_endpoint(reconciliation_client):
    client, reconciler = reconciliation_client
    reconciler.find_unrecorded = AsyncMock(
        return_value=[UnrecordedTransition("ticket-1", "commerce-1", "TCK-1", "coordinate", NOW)]
    )

    response = client.get("/reconciliation/unrecorded", params={"limit": 5})

    assert response.status_code == 200
    assert response.json() == [
        {
            "ticket_id": "ticket-1",
            "commerce_id": "commerce-1",
            "ticket_number": "TCK-1",
            "state_id": "coordinate",
            "state_changed_at": "2024-05-01T12:00:00Z",
        }
    ]
    reconciler.find_unrecorded.assert_awaited_once_with(limit=5)


def test_unrecorded_transitions_limit_is_bounded(reconciliation_client):
    client, reconciler = reconciliation_client
    reconciler.find_unrecorded = AsyncMock(return_value=[])

    assert client.get("/reconciliation/unrecorded", params={"limit": 0}).status_code == 422
    reconciler.find_unrecorded.assert_not_awaited()


def test_unrecorded_transitions_database_failure(reconciliation_client):
    client, reconciler = reconciliation_client
    reconciler.find_unrecorded = AsyncMock(side_effect=OSError("connection reset"))

    response = client.get("/reconciliation/unrecorded")

    assert response.status_code == 503
    assert response.json()["detail"] == "connection reset"


def test_unconfigured_reconciler_returns_503():
    client = TestClient(create_app())

    assert client.get("/reconciliation/unrecorded").status_code == 503
