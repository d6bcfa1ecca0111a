from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable, Protocol

from app.metrics import CACHE_HITS_TOTAL, CACHE_MISSES_TOTAL, MetricsRegistry, metrics_registry

from .errors import NotFoundError, StateMachineUnavailableError, WorkflowError
from .models import StateMachine, TicketState

logger = logging.getLogger(__name__)


class StateMachineSource(Protocol):
    async def fetch_state_machine(self, commerce_id: str) -> StateMachine | None:
        ...


class TransitionValidator:
    """Decide whether a ticket may move between two states."""

    @staticmethod
    def is_allowed(machine: StateMachine | None, current_state_id: str | None, new_state_id: str | None) -> bool:
        # A ticket without any state can always be bootstrapped into "created".
        if not current_state_id and new_state_id == TicketState.CREATED.value:
            return True
        if machine is None:
            raise StateMachineUnavailableError("No state machine loaded to validate the transition")
        state = machine.get(current_state_id)
        if state is None or not new_state_id:
            return False
        return new_state_id in state.transitions

    @classmethod
    def check(
        cls,
        machine: StateMachine | None,
        current_state_id: str | None,
        new_state_id: str | None,
        *,
        error: type[WorkflowError],
        message: str,
    ) -> None:
        """Raise ``error(message)`` when the transition is not allowed."""

        if not cls.is_allowed(machine, current_state_id, new_state_id):
            raise error(message)


class StateMachineRegistry:
    """Load per-commerce state machines through a bounded LRU/TTL cache.

    Machines are edited out of band, so a cached entry may be stale until it
    expires or :meth:`invalidate` is called.
    """

    def __init__(
        self,
        source: StateMachineSource,
        *,
        max_entries: int = 128,
        ttl_seconds: float | None = 300.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._source = source
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        self._metrics = metrics or metrics_registry
        self._entries: OrderedDict[str, tuple[float, StateMachine]] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, commerce_id: str) -> StateMachine | None:
        cached = self._entries.get(commerce_id)
        if cached is None:
            return None
        loaded_at, machine = cached
        if self._ttl is not None and self._clock() - loaded_at >= self._ttl:
            del self._entries[commerce_id]
            return None
        self._entries.move_to_end(commerce_id)
        return machine

    async def get_state_machine(self, commerce_id: str) -> StateMachine:
        machine = self._lookup(commerce_id)
        if machine is not None:
            self._metrics.counter(CACHE_HITS_TOTAL).inc()
            return machine

        async with self._lock:
            # Another task may have loaded it while this one waited.
            machine = self._lookup(commerce_id)
            if machine is not None:
                self._metrics.counter(CACHE_HITS_TOTAL).inc()
                return machine

            self._metrics.counter(CACHE_MISSES_TOTAL).inc()
            machine = await self._source.fetch_state_machine(commerce_id)
            if machine is None:
                raise NotFoundError(f"State machine for commerce {commerce_id} not found")

            self._entries[commerce_id] = (self._clock(), machine)
            self._entries.move_to_end(commerce_id)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted state machine of commerce %s from cache", evicted)
            return machine

    def invalidate(self, commerce_id: str | None = None) -> None:
        """Drop the cached machine of ``commerce_id``, or every entry when omitted."""

        if commerce_id is None:
            self._entries.clear()
        else:
            self._entries.pop(commerce_id, None)
