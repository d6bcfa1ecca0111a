"""Append-only narrative history of ticket state changes."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, Sequence

from app.metrics import TRANSITIONS_TOTAL, MetricsRegistry, metrics_registry

from .models import (
    Actor,
    Assignment,
    StateChangeNotification,
    StateHistoryEntry,
    StateRef,
    TicketState,
    first_enabled,
)

logger = logging.getLogger(__name__)

# States whose narrative names nobody.
_BARE_NARRATIVE_STATES = frozenset({TicketState.CLOSED.value, TicketState.DISPATCHER_ASSIGNED.value})


class HistoryStore(Protocol):
    async def append(self, entries: Sequence[StateHistoryEntry]) -> None:
        ...

    async def list_for_ticket(self, ticket_id: str) -> list[StateHistoryEntry]:
        ...


class DocumentLookup(Protocol):
    async def fetch(self, ticket_id: str, commerce_id: str) -> Any:
        ...


class StateChangePublisher(Protocol):
    def notify(self, notification: StateChangeNotification) -> Any:
        ...


@dataclass(slots=True, frozen=True)
class StateChange:
    """A transition to be written to the history."""

    commerce_id: str
    ticket_id: str
    from_state: StateRef | None
    to_state: StateRef
    dispatchers: Sequence[Assignment] = ()
    technicians: Sequence[Assignment] = ()
    customs: Mapping[str, Any] | None = None
    dispatcher: Actor | None = None
    technician: Actor | None = None

    def acting_dispatcher(self) -> Actor | None:
        return self.dispatcher or Actor.from_assignment(first_enabled(self.dispatchers))

    def acting_technician(self) -> Actor | None:
        return self.technician or Actor.from_assignment(first_enabled(self.technicians))

    def previous_technician(self) -> Actor | None:
        if len(self.technicians) > 1:
            return Actor.from_assignment(self.technicians[-2])
        return None


def describe_transition(
    from_state: StateRef | None,
    to_state: StateRef,
    *,
    dispatcher: Actor | None = None,
    technician: Actor | None = None,
    previous_technician: Actor | None = None,
) -> str:
    """Render the Spanish narrative shown in the ticket history."""

    origin = from_state.display if from_state is not None else ""
    target = to_state.display
    dispatcher_name = dispatcher.name if dispatcher else ""

    if to_state.id == TicketState.TECHNICIAN_ASSIGNED.value:
        handed_off = f" atendido por el técnico {previous_technician.name}" if previous_technician else ""
        technician_name = technician.name if technician else ""
        return (
            f"Cambio de estado {origin}{handed_off} al estado {target} "
            f"al técnico {technician_name} por el dispatcher {dispatcher_name}."
        )
    if to_state.id == TicketState.CREATED.value:
        return f"El ticket fue creado por el dispatcher {dispatcher_name}."
    if to_state.id not in _BARE_NARRATIVE_STATES:
        served_by = f" por el técnico {technician.name}" if technician else ""
        return f"Cambio de estado {origin} al estado {target}{served_by}."
    return f"Cambio de estado {origin} al estado {target}."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HistoryRecorder:
    """Persist history entries and tell the observer about them.

    Entry ids are generated before the write and the store ignores repeated
    ids, so re-appending the same entries is harmless. The observer
    notification is best effort and runs detached from the caller.
    """

    def __init__(
        self,
        store: HistoryStore,
        *,
        documents: DocumentLookup,
        publisher: StateChangePublisher,
        reschedule_state: str = TicketState.RESCHEDULE.value,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        self._store = store
        self._documents = documents
        self._publisher = publisher
        self._reschedule_state = reschedule_state
        self._metrics = metrics or metrics_registry
        self._clock = clock
        self._id_factory = id_factory

    async def record(
        self,
        commerce_id: str,
        ticket_id: str,
        from_state: StateRef | None,
        to_state: StateRef,
        dispatchers: Sequence[Assignment],
        technicians: Sequence[Assignment],
        customs: Mapping[str, Any] | None = None,
        *,
        dispatcher: Actor | None = None,
    ) -> StateHistoryEntry:
        change = StateChange(
            commerce_id=commerce_id,
            ticket_id=ticket_id,
            from_state=from_state,
            to_state=to_state,
            dispatchers=tuple(dispatchers),
            technicians=tuple(technicians),
            customs=customs,
            dispatcher=dispatcher,
        )
        entries = await self.record_all([change])
        return entries[0]

    async def record_all(self, changes: Sequence[StateChange]) -> list[StateHistoryEntry]:
        """Write ``changes`` as a single batch, then notify the observer of each."""

        entries = [await self._build_entry(change) for change in changes]
        if not entries:
            return []
        await self._store.append(entries)

        for entry in entries:
            self._metrics.counter(TRANSITIONS_TOTAL, label_names=("state",)).inc(state=entry.state_id)
            logger.info("Ticket %s moved to %s", entry.ticket_id, entry.state_id)
            self._publisher.notify(
                StateChangeNotification(
                    ticket_id=entry.ticket_id,
                    new_state=entry.state_id,
                    client_id=str(entry.customs.get("clientId") or ""),
                )
            )
        return entries

    async def history(self, ticket_id: str) -> list[StateHistoryEntry]:
        entries = await self._store.list_for_ticket(ticket_id)
        return sorted(entries, key=lambda entry: entry.created_at, reverse=True)

    async def _build_entry(self, change: StateChange) -> StateHistoryEntry:
        dispatcher = change.acting_dispatcher()
        technician = change.acting_technician()
        description = describe_transition(
            change.from_state,
            change.to_state,
            dispatcher=dispatcher,
            technician=technician,
            previous_technician=change.previous_technician(),
        )

        customs = dict(change.customs or {})
        if change.to_state.id == self._reschedule_state:
            document = await self._documents.fetch(change.ticket_id, change.commerce_id)
            customs["ods"] = document.to_customs()

        return StateHistoryEntry(
            id=self._id_factory(),
            ticket_id=change.ticket_id,
            commerce_id=change.commerce_id,
            state_id=change.to_state.id,
            state_label=change.to_state.display,
            description=description,
            created_at=self._clock(),
            dispatcher_id=dispatcher.id if dispatcher else None,
            technician_id=technician.id if technician else None,
            customs=customs,
        )
