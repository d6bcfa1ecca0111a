from __future__ import annotations

import logging
from typing import Protocol, Sequence

from .errors import BadRequestError, ForbiddenError
from .models import Ticket, TicketState

logger = logging.getLogger(__name__)


class ServingTicketLookup(Protocol):
    async def find_serving_ticket(
        self, technician_ids: Sequence[str], state_id: str, *, exclude_ticket_id: str
    ) -> Ticket | None:
        ...


class ConcurrencyGuard:
    """Keep a technician from actively serving two tickets at once.

    The check reads the other tickets and then decides; nothing locks them in
    between, so two tickets moving into service at the same instant can both
    pass. A hard guarantee needs a uniqueness constraint in storage.
    """

    def __init__(self, tickets: ServingTicketLookup, *, active_state: str = TicketState.IN_SERVICE.value) -> None:
        self._tickets = tickets
        self.active_state = active_state

    def applies_to(self, state_id: str) -> bool:
        return state_id == self.active_state

    async def check(self, ticket: Ticket) -> None:
        technician_ids = ticket.enabled_technician_ids()
        if not technician_ids:
            raise BadRequestError(f"Ticket {ticket.ticket_number} has no technician assigned")

        busy = await self._tickets.find_serving_ticket(
            technician_ids, self.active_state, exclude_ticket_id=ticket.id
        )
        if busy is not None:
            logger.info(
                "Technician of ticket %s is already serving ticket %s", ticket.id, busy.id
            )
            raise ForbiddenError("The assigned technician is already serving another ticket")
