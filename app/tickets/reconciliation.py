"""Detect tickets whose last state change never reached the history.

The workflow writes the ticket first and appends history afterwards. A crash
in between leaves a ticket whose ``current_state`` has no matching history
entry written at or after ``state_changed_at``; this module lists them.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

import asyncpg

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class UnrecordedTransition:
    ticket_id: str
    commerce_id: str
    ticket_number: str
    state_id: str
    state_changed_at: datetime | None


class HistoryReconciler:
    _SELECT_UNRECORDED_SQL = """
    SELECT t.id, t.commerce_id, t.ticket_number, t.current_state, t.state_changed_at
    FROM tickets AS t
    WHERE t.current_state IS NOT NULL
      AND NOT EXISTS (
        SELECT 1
        FROM states_history AS h
        WHERE h.ticket_id = t.id
          AND h.state_id = t.current_state->>'id'
          AND (t.state_changed_at IS NULL OR h.created_at >= t.state_changed_at)
      )
    ORDER BY t.state_changed_at DESC NULLS LAST
    LIMIT $1
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def find_unrecorded(self, *, limit: int = 100) -> list[UnrecordedTransition]:
        async with self._pool.acquire() as connection:
            rows = await connection.fetch(self._SELECT_UNRECORDED_SQL, limit)
        found = [self._row_to_transition(row) for row in rows]
        if found:
            logger.warning("Found %d ticket(s) whose current state has no history entry", len(found))
        return found

    @staticmethod
    def _row_to_transition(row: Mapping[str, Any]) -> UnrecordedTransition:
        state = row["current_state"]
        if isinstance(state, (str, bytes)):
            state = json.loads(state)
        return UnrecordedTransition(
            ticket_id=str(row["id"]),
            commerce_id=str(row["commerce_id"]),
            ticket_number=str(row["ticket_number"]),
            state_id=str(state["id"]),
            state_changed_at=row["state_changed_at"],
        )
