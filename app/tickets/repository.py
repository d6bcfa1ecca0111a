from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

import asyncpg

from .errors import NotFoundError, StaleTicketError
from .models import Assignment, StateHistoryEntry, StateRef, Ticket

_TICKET_COLUMNS = (
    "id, commerce_id, ticket_number, description, planned_date, priority, current_state, "
    "dispatchers, technicians, coordinated_date, coordinated_contact_id, revision, "
    "state_changed_at, created_at, updated_at"
)


class TicketRepository:
    """Persistence of ticket documents in the ``tickets`` table.

    Writes are compare-and-swap on ``revision``: a ticket read at revision N
    can only be saved while the stored row is still at revision N.
    """

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id TEXT PRIMARY KEY,
        commerce_id TEXT NOT NULL,
        ticket_number TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        planned_date TIMESTAMPTZ NULL,
        priority TEXT NULL,
        current_state JSONB NULL,
        dispatchers JSONB NOT NULL DEFAULT '[]'::jsonb,
        technicians JSONB NOT NULL DEFAULT '[]'::jsonb,
        coordinated_date TIMESTAMPTZ NULL,
        coordinated_contact_id TEXT NULL,
        revision INTEGER NOT NULL DEFAULT 0,
        state_changed_at TIMESTAMPTZ NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _CREATE_STATE_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS tickets_current_state_idx ON tickets ((current_state->>'id'))
    """

    _INSERT_TICKET_SQL = f"""
    INSERT INTO tickets (
        id, commerce_id, ticket_number, description, planned_date, priority, current_state,
        dispatchers, technicians, coordinated_date, coordinated_contact_id, revision,
        state_changed_at, created_at, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9::jsonb, $10, $11, 0, $12, $13, $13)
    RETURNING {_TICKET_COLUMNS}
    """

    _SELECT_TICKET_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id = $1
    """

    _SAVE_TICKET_SQL = f"""
    UPDATE tickets
    SET current_state = $3::jsonb,
        dispatchers = $4::jsonb,
        technicians = $5::jsonb,
        coordinated_date = $6,
        coordinated_contact_id = $7,
        state_changed_at = $8,
        updated_at = $9,
        revision = revision + 1
    WHERE id = $1 AND revision = $2
    RETURNING {_TICKET_COLUMNS}
    """

    _EXISTS_SQL = """
    SELECT 1 FROM tickets WHERE id = $1
    """

    # id and enabled flag must match on the same technician element.
    _SELECT_SERVING_SQL = f"""
    SELECT {_TICKET_COLUMNS}
    FROM tickets
    WHERE id <> $1
      AND current_state->>'id' = $2
      AND EXISTS (
        SELECT 1
        FROM jsonb_array_elements(technicians) AS technician
        WHERE (technician->>'enabled')::boolean
          AND technician->>'id' = ANY($3::text[])
      )
    LIMIT 1
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_STATE_INDEX_SQL)

    async def create_ticket(self, ticket: Ticket) -> Ticket:
        now = ticket.created_at or datetime.now(timezone.utc)
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(
                self._INSERT_TICKET_SQL,
                ticket.id,
                ticket.commerce_id,
                ticket.ticket_number,
                ticket.description,
                ticket.planned_date,
                ticket.priority,
                _dump_state(ticket.current_state),
                _dump_assignments(ticket.dispatchers),
                _dump_assignments(ticket.technicians),
                ticket.coordinated_date,
                ticket.coordinated_contact_id,
                ticket.state_changed_at,
                now,
            )
        if row is None:
            raise RuntimeError(f"Failed to insert ticket {ticket.id}")
        return self._row_to_ticket(row)

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def save_ticket(self, ticket: Ticket) -> Ticket:
        """Persist the mutable fields of ``ticket`` if nobody wrote it since it was read."""

        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(
                self._SAVE_TICKET_SQL,
                ticket.id,
                ticket.revision,
                _dump_state(ticket.current_state),
                _dump_assignments(ticket.dispatchers),
                _dump_assignments(ticket.technicians),
                ticket.coordinated_date,
                ticket.coordinated_contact_id,
                ticket.state_changed_at,
                ticket.updated_at or datetime.now(timezone.utc),
            )
            if row is None:
                exists = await connection.fetchval(self._EXISTS_SQL, ticket.id)
                if exists is None:
                    raise NotFoundError(f"Ticket {ticket.id} not found")
                raise StaleTicketError(ticket.id, ticket.revision)
        return self._row_to_ticket(row)

    async def find_serving_ticket(
        self, technician_ids: Sequence[str], state_id: str, *, exclude_ticket_id: str
    ) -> Ticket | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(
                self._SELECT_SERVING_SQL, exclude_ticket_id, state_id, list(technician_ids)
            )
        if row is None:
            return None
        return self._row_to_ticket(row)

    @staticmethod
    def _row_to_ticket(row: Mapping[str, Any]) -> Ticket:
        state = _load_json(row["current_state"], None)
        return Ticket(
            id=str(row["id"]),
            commerce_id=str(row["commerce_id"]),
            ticket_number=str(row["ticket_number"]),
            description=str(row["description"] or ""),
            planned_date=_optional_datetime(row["planned_date"]),
            priority=row["priority"],
            current_state=StateRef(id=str(state["id"]), label=str(state.get("label") or "")) if state else None,
            dispatchers=[assignment_from_json(item) for item in _load_json(row["dispatchers"], [])],
            technicians=[assignment_from_json(item) for item in _load_json(row["technicians"], [])],
            coordinated_date=_optional_datetime(row["coordinated_date"]),
            coordinated_contact_id=row["coordinated_contact_id"],
            revision=int(row["revision"]),
            state_changed_at=_optional_datetime(row["state_changed_at"]),
            created_at=_optional_datetime(row["created_at"]),
            updated_at=_optional_datetime(row["updated_at"]),
        )


class StateHistoryRepository:
    """Append-only storage of :class:`StateHistoryEntry` records."""

    _CREATE_HISTORY_SQL = """
    CREATE TABLE IF NOT EXISTS states_history (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL,
        commerce_id TEXT NOT NULL,
        state_id TEXT NOT NULL,
        state_label TEXT NOT NULL,
        description TEXT NOT NULL,
        dispatcher_id TEXT NULL,
        technician_id TEXT NULL,
        customs JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_TICKET_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS states_history_ticket_idx ON states_history (ticket_id, created_at DESC)
    """

    _INSERT_HISTORY_SQL = """
    INSERT INTO states_history (
        id, ticket_id, commerce_id, state_id, state_label, description,
        dispatcher_id, technician_id, customs, created_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10)
    ON CONFLICT (id) DO NOTHING
    """

    _SELECT_HISTORY_SQL = """
    SELECT id, ticket_id, commerce_id, state_id, state_label, description,
           dispatcher_id, technician_id, customs, created_at
    FROM states_history
    WHERE ticket_id = $1
    ORDER BY created_at DESC
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_HISTORY_SQL)
            await connection.execute(self._CREATE_TICKET_INDEX_SQL)

    async def append(self, entries: Sequence[StateHistoryEntry]) -> None:
        if not entries:
            return
        rows = [
            (
                entry.id,
                entry.ticket_id,
                entry.commerce_id,
                entry.state_id,
                entry.state_label,
                entry.description,
                entry.dispatcher_id,
                entry.technician_id,
                json.dumps(dict(entry.customs), default=str),
                entry.created_at,
            )
            for entry in entries
        ]
        async with self._pool.acquire() as connection:
            async with connection.transaction():
                await connection.executemany(self._INSERT_HISTORY_SQL, rows)

    async def list_for_ticket(self, ticket_id: str) -> list[StateHistoryEntry]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_HISTORY_SQL, ticket_id)
        return [self._row_to_entry(row) for row in rows]

    @staticmethod
    def _row_to_entry(row: Mapping[str, Any]) -> StateHistoryEntry:
        return StateHistoryEntry(
            id=str(row["id"]),
            ticket_id=str(row["ticket_id"]),
            commerce_id=str(row["commerce_id"]),
            state_id=str(row["state_id"]),
            state_label=str(row["state_label"]),
            description=str(row["description"]),
            dispatcher_id=row["dispatcher_id"],
            technician_id=row["technician_id"],
            customs=dict(_load_json(row["customs"], {})),
            created_at=_ensure_datetime(row["created_at"]),
        )


def assignment_to_json(assignment: Assignment) -> dict[str, Any]:
    return {
        "id": assignment.id,
        "provider": assignment.provider,
        "role": assignment.role,
        "name": assignment.name,
        "assignedBy": assignment.assigned_by,
        "assignedAt": _isoformat(assignment.assigned_at),
        "unassignedBy": assignment.unassigned_by,
        "unassignedAt": _isoformat(assignment.unassigned_at),
        "enabled": assignment.enabled,
    }


def assignment_from_json(data: Mapping[str, Any]) -> Assignment:
    return Assignment(
        id=str(data["id"]),
        provider=data.get("provider"),
        role=data.get("role"),
        name=str(data.get("name") or ""),
        assigned_by=data.get("assignedBy"),
        assigned_at=_optional_datetime(data.get("assignedAt")),
        enabled=bool(data.get("enabled", False)),
        unassigned_by=data.get("unassignedBy"),
        unassigned_at=_optional_datetime(data.get("unassignedAt")),
    )


def _dump_assignments(assignments: Sequence[Assignment]) -> str:
    return json.dumps([assignment_to_json(assignment) for assignment in assignments])


def _dump_state(state: StateRef | None) -> str | None:
    if state is None:
        return None
    return json.dumps({"id": state.id, "label": state.label})


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value))


def _optional_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    return _ensure_datetime(value)
