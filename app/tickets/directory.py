"""Read-only lookups of data owned outside the ticket workflow."""

from __future__ import annotations

import json
from typing import Any, Mapping

import asyncpg

from .errors import StateMachineDefinitionError
from .models import Contact, Employee, State, StateMachine

STATE_MACHINE_DOCUMENT_ID = "state_machine"


def parse_state_machine(commerce_id: str, document: Mapping[str, Any]) -> StateMachine:
    """Build a :class:`StateMachine` from its stored document.

    The document looks like ``{"states": [{"id", "label", "transitions": [...]}]}``.
    """

    raw_states = document.get("states")
    if not isinstance(raw_states, list):
        raise StateMachineDefinitionError(f"State machine of commerce {commerce_id} has no states list")

    states: list[State] = []
    seen: set[str] = set()
    for raw in raw_states:
        if not isinstance(raw, Mapping) or not raw.get("id"):
            raise StateMachineDefinitionError(f"State machine of commerce {commerce_id} has a state without id")
        state_id = str(raw["id"])
        if state_id in seen:
            raise StateMachineDefinitionError(f"State '{state_id}' is defined twice for commerce {commerce_id}")
        seen.add(state_id)
        states.append(
            State(
                id=state_id,
                label=str(raw.get("label") or state_id),
                transitions=frozenset(str(target) for target in raw.get("transitions") or ()),
            )
        )

    machine = StateMachine(commerce_id=commerce_id, states=tuple(states))
    dangling = machine.dangling_transitions()
    if dangling:
        pairs = ", ".join(f"{source}->{target}" for source, target in dangling)
        raise StateMachineDefinitionError(f"State machine of commerce {commerce_id} references unknown states: {pairs}")
    return machine


class StateMachineStore:
    """Load state machine documents from the ``datas`` table."""

    _CREATE_DATAS_SQL = """
    CREATE TABLE IF NOT EXISTS datas (
        commerce_id TEXT NOT NULL,
        id TEXT NOT NULL,
        document JSONB NOT NULL,
        PRIMARY KEY (commerce_id, id)
    )
    """

    _SELECT_STATE_MACHINE_SQL = """
    SELECT document
    FROM datas
    WHERE commerce_id = $1 AND id = $2
    LIMIT 1
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_DATAS_SQL)

    async def fetch_state_machine(self, commerce_id: str) -> StateMachine | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_STATE_MACHINE_SQL, commerce_id, STATE_MACHINE_DOCUMENT_ID)
        if row is None:
            return None
        document = row["document"]
        if isinstance(document, (str, bytes)):
            document = json.loads(document)
        return parse_state_machine(commerce_id, document)


class EmployeeDirectory:
    """Employee lookups used to resolve role and provider."""

    _CREATE_EMPLOYEES_SQL = """
    CREATE TABLE IF NOT EXISTS employees (
        id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        provider TEXT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        first_surname TEXT NOT NULL DEFAULT '',
        phone TEXT NULL,
        email TEXT NULL
    )
    """

    _SELECT_EMPLOYEE_SQL = """
    SELECT id, role, provider, first_name, first_surname, phone, email
    FROM employees
    WHERE id = $1
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_EMPLOYEES_SQL)

    async def get(self, employee_id: str) -> Employee | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_EMPLOYEE_SQL, employee_id)
        if row is None:
            return None
        return Employee(
            id=str(row["id"]),
            role=str(row["role"]),
            provider=row["provider"],
            first_name=str(row["first_name"] or ""),
            first_surname=str(row["first_surname"] or ""),
            phone=row["phone"],
            email=row["email"],
        )


class ContactDirectory:
    """Commerce contacts referenced when a visit is coordinated."""

    _CREATE_CONTACTS_SQL = """
    CREATE TABLE IF NOT EXISTS contacts (
        id TEXT PRIMARY KEY,
        commerce_id TEXT NOT NULL,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        phone TEXT NULL,
        email TEXT NULL
    )
    """

    _SELECT_CONTACT_SQL = """
    SELECT id, commerce_id, first_name, last_name, phone, email
    FROM contacts
    WHERE id = $1
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        async with self._pool.acquire() as connection:
            await connection.execute(self._CREATE_CONTACTS_SQL)

    async def get(self, contact_id: str) -> Contact | None:
        async with self._pool.acquire() as connection:
            row = await connection.fetchrow(self._SELECT_CONTACT_SQL, contact_id)
        if row is None:
            return None
        return Contact(
            id=str(row["id"]),
            commerce_id=str(row["commerce_id"]),
            first_name=str(row["first_name"] or ""),
            last_name=str(row["last_name"] or ""),
            phone=row["phone"],
            email=row["email"],
        )
