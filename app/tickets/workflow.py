"""Ticket lifecycle orchestration: state changes and assignments.

Every public operation reads the ticket, validates, writes the ticket and
then appends history. These steps are not atomic. A crash after the ticket
write leaves the ticket without its audit entry (see
:mod:`app.tickets.reconciliation`); a crash before it leaves both untouched.

Ticket writes are compare-and-swap on the ticket revision. When another
writer got there first the operation is replayed once from a fresh read and
then gives up with :class:`~app.tickets.errors.ConflictError`.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol, Sequence

from opentelemetry import trace

from app.metrics import REJECTIONS_TOTAL, WORKFLOW_DURATION_SECONDS, MetricsRegistry, metrics_registry

from .authorization import AssignmentAuthorizer
from .errors import BadRequestError, ConflictError, ForbiddenError, NotFoundError, StaleTicketError, WorkflowError
from .guards import ConcurrencyGuard
from .history import HistoryRecorder, StateChange
from .models import (
    Actor,
    Contact,
    CoordinationDetails,
    Employee,
    State,
    StateHistoryEntry,
    StateMachine,
    StateRef,
    Ticket,
    TicketState,
    WorkflowResult,
    disable_enabled,
)
from .state import StateMachineRegistry, TransitionValidator

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class TicketStore(Protocol):
    async def create_ticket(self, ticket: Ticket) -> Ticket:
        ...

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        ...

    async def save_ticket(self, ticket: Ticket) -> Ticket:
        ...

    async def find_serving_ticket(
        self, technician_ids: Sequence[str], state_id: str, *, exclude_ticket_id: str
    ) -> Ticket | None:
        ...


class EmployeeLookup(Protocol):
    async def get(self, employee_id: str) -> Employee | None:
        ...


class ContactLookup(Protocol):
    async def get(self, contact_id: str) -> Contact | None:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _state_name(state: StateRef | State | None, fallback: str = "") -> str:
    if state is None:
        return fallback
    return state.label or state.id


class TicketWorkflow:
    """Move tickets through their commerce's lifecycle and manage assignees."""

    def __init__(
        self,
        tickets: TicketStore,
        employees: EmployeeLookup,
        contacts: ContactLookup,
        registry: StateMachineRegistry,
        recorder: HistoryRecorder,
        *,
        authorizer: AssignmentAuthorizer | None = None,
        guard: ConcurrencyGuard | None = None,
        coordination_state: str = TicketState.COORDINATE.value,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._tickets = tickets
        self._employees = employees
        self._contacts = contacts
        self._registry = registry
        self._recorder = recorder
        self._authorizer = authorizer or AssignmentAuthorizer()
        self._guard = guard or ConcurrencyGuard(tickets)
        self._coordination_state = coordination_state
        self._metrics = metrics or metrics_registry
        self._clock = clock

    async def create_ticket(self, ticket: Ticket) -> WorkflowResult:
        """Store a new ticket and bootstrap it into the ``created`` state."""

        created = await self._tickets.create_ticket(replace(ticket, current_state=None, revision=0))
        logger.info("Created ticket %s (%s)", created.id, created.ticket_number)
        return await self.update_state(created.id, TicketState.CREATED.value)

    async def update_state(
        self, ticket_id: str, new_state_id: str, extra: CoordinationDetails | None = None
    ) -> WorkflowResult:
        details = extra or CoordinationDetails()
        return await self._run("update_state", lambda: self._update_state(ticket_id, new_state_id, details))

    async def assign_technician(self, ticket_id: str, technician_id: str, dispatcher_id: str) -> WorkflowResult:
        return await self._run(
            "assign_technician", lambda: self._assign_technician(ticket_id, technician_id, dispatcher_id)
        )

    async def unassign_technician(
        self, ticket_id: str, technician_id: str | None, dispatcher_id: str
    ) -> WorkflowResult:
        return await self._run(
            "unassign_technician", lambda: self._unassign_technician(ticket_id, technician_id, dispatcher_id)
        )

    async def assign_dispatcher(
        self, ticket_id: str, new_dispatcher_id: str, current_dispatcher_id: str
    ) -> WorkflowResult:
        return await self._run(
            "assign_dispatcher",
            lambda: self._assign_dispatcher(ticket_id, new_dispatcher_id, current_dispatcher_id),
        )

    async def unassign_dispatcher(
        self, ticket_id: str, dispatcher_id: str, *, acting_employee_id: str | None = None
    ) -> WorkflowResult:
        return await self._run(
            "unassign_dispatcher",
            lambda: self._unassign_dispatcher(ticket_id, dispatcher_id, acting_employee_id or dispatcher_id),
        )

    async def get_history(self, ticket_id: str) -> list[StateHistoryEntry]:
        """History of a ticket, newest entry first."""

        await self._load_ticket(ticket_id)
        return await self._recorder.history(ticket_id)

    async def _run(self, operation: str, action: Callable[[], Awaitable[WorkflowResult]]) -> WorkflowResult:
        with tracer.start_as_current_span(f"ticket_workflow.{operation}"), self._metrics.time(
            WORKFLOW_DURATION_SECONDS, operation=operation
        ):
            try:
                try:
                    return await action()
                except StaleTicketError as exc:
                    logger.info("Replaying %s after concurrent modification: %s", operation, exc)
                    return await action()
            except WorkflowError as exc:
                self._metrics.counter(REJECTIONS_TOTAL, label_names=("kind",)).inc(kind=exc.kind.value)
                raise

    async def _update_state(self, ticket_id: str, new_state_id: str, extra: CoordinationDetails) -> WorkflowResult:
        ticket = await self._load_ticket(ticket_id)
        machine = await self._registry.get_state_machine(ticket.commerce_id)
        target = machine.get(new_state_id)
        # An unknown target is checked as None so it can never pass the bootstrap rule.
        TransitionValidator.check(
            machine,
            ticket.current_state_id,
            target.id if target is not None else None,
            error=BadRequestError,
            message=(
                f"Invalid transition from '{_state_name(ticket.current_state)}' "
                f"to '{_state_name(target, new_state_id)}'"
            ),
        )

        if self._guard.applies_to(target.id):
            await self._guard.check(ticket)

        coordinated_date = ticket.coordinated_date
        coordinated_contact_id = ticket.coordinated_contact_id
        if target.id == self._coordination_state:
            await self._check_coordination(ticket, extra)
            coordinated_date = extra.coordinated_date
            coordinated_contact_id = extra.coordinated_contact_id

        now = self._clock()
        saved = await self._tickets.save_ticket(
            replace(
                ticket,
                current_state=target.ref(),
                coordinated_date=coordinated_date,
                coordinated_contact_id=coordinated_contact_id,
                state_changed_at=now,
                updated_at=now,
            )
        )
        entry = await self._recorder.record(
            ticket.commerce_id,
            ticket.id,
            ticket.current_state,
            target.ref(),
            ticket.dispatchers,
            ticket.technicians,
            extra.customs,
        )
        return WorkflowResult(
            message=f"State updated to {target.label} for ticket {ticket.ticket_number}",
            ticket=saved,
            history=(entry,),
        )

    async def _assign_technician(self, ticket_id: str, technician_id: str, dispatcher_id: str) -> WorkflowResult:
        ticket = await self._load_ticket(ticket_id)
        technician = await self._load_employee(technician_id, "Technician")
        dispatcher = await self._load_employee(dispatcher_id, "Dispatcher")

        if any(entry.id == technician_id and entry.enabled for entry in ticket.technicians):
            return WorkflowResult(
                message=f"Technician {technician.full_name} is already assigned to ticket {ticket.ticket_number}",
                changed=False,
                ticket=ticket,
            )

        self._authorizer.authorize_technician_assignment(dispatcher, technician)
        _, target = await self._assignment_target(ticket, TicketState.TECHNICIAN_ASSIGNED.value)

        now = self._clock()
        technicians = [
            *disable_enabled(ticket.technicians, by=dispatcher_id, at=now),
            technician.assignment(assigned_by=dispatcher_id, assigned_at=now),
        ]
        saved = await self._tickets.save_ticket(
            replace(ticket, technicians=technicians, current_state=target.ref(), state_changed_at=now, updated_at=now)
        )
        entry = await self._recorder.record(
            ticket.commerce_id,
            ticket.id,
            ticket.current_state,
            target.ref(),
            ticket.dispatchers,
            technicians,
            dispatcher=Actor.from_employee(dispatcher),
        )
        logger.info("Technician %s assigned to ticket %s by %s", technician_id, ticket.id, dispatcher_id)
        return WorkflowResult(
            message=(
                f"Technician {technician.full_name} assigned to ticket {ticket.ticket_number} "
                f"by dispatcher {dispatcher.full_name}"
            ),
            ticket=saved,
            history=(entry,),
        )

    async def _unassign_technician(
        self, ticket_id: str, technician_id: str | None, dispatcher_id: str
    ) -> WorkflowResult:
        ticket = await self._load_ticket(ticket_id)
        dispatcher = await self._load_employee(dispatcher_id, "Dispatcher")

        if technician_id is None:
            assignment = ticket.active_technician
            if assignment is None:
                return WorkflowResult(message="No technician is currently assigned", changed=False, ticket=ticket)
        else:
            matches = [entry for entry in ticket.technicians if entry.id == technician_id]
            if not matches:
                raise NotFoundError(f"Technician {technician_id} is not on ticket {ticket.ticket_number}")
            assignment = next((entry for entry in matches if entry.enabled), matches[-1])

        self._authorizer.authorize_technician_unassignment(dispatcher, assignment)
        if not assignment.enabled:
            return WorkflowResult(
                message=f"Technician {assignment.name} was already unassigned", changed=False, ticket=ticket
            )

        _, target = await self._assignment_target(ticket, TicketState.TECHNICIAN_UNASSIGNED.value)

        now = self._clock()
        technicians = [
            entry.disable(by=dispatcher_id, at=now) if entry.id == assignment.id and entry.enabled else entry
            for entry in ticket.technicians
        ]
        saved = await self._tickets.save_ticket(
            replace(ticket, technicians=technicians, current_state=target.ref(), state_changed_at=now, updated_at=now)
        )
        entry = await self._recorder.record(
            ticket.commerce_id,
            ticket.id,
            ticket.current_state,
            target.ref(),
            ticket.dispatchers,
            technicians,
            dispatcher=Actor.from_employee(dispatcher),
        )
        logger.info("Technician %s unassigned from ticket %s by %s", assignment.id, ticket.id, dispatcher_id)
        return WorkflowResult(
            message=(
                f"Technician {assignment.name} unassigned from ticket {ticket.ticket_number} "
                f"by dispatcher {dispatcher.full_name}"
            ),
            ticket=saved,
            history=(entry,),
        )

    async def _assign_dispatcher(
        self, ticket_id: str, new_dispatcher_id: str, current_dispatcher_id: str
    ) -> WorkflowResult:
        ticket = await self._load_ticket(ticket_id)
        current = await self._load_employee(current_dispatcher_id, "Current dispatcher")
        new = await self._load_employee(new_dispatcher_id, "New dispatcher")

        if any(entry.id == new_dispatcher_id and entry.enabled for entry in ticket.dispatchers):
            if new_dispatcher_id == current_dispatcher_id:
                return WorkflowResult(
                    message=f"Dispatcher {new.full_name} is already assigned to ticket {ticket.ticket_number}",
                    changed=False,
                    ticket=ticket,
                )
            raise ConflictError(f"Dispatcher {new.full_name} is already assigned to ticket {ticket.ticket_number}")

        self._authorizer.authorize_dispatcher_assignment(current, new)
        machine, target = await self._assignment_target(ticket, TicketState.DISPATCHER_ASSIGNED.value)

        now = self._clock()
        dispatchers = [
            *disable_enabled(ticket.dispatchers, by=current_dispatcher_id, at=now),
            new.assignment(assigned_by=current_dispatcher_id, assigned_at=now),
        ]
        # A new dispatcher starts without technicians.
        technicians = disable_enabled(ticket.technicians, by=current_dispatcher_id, at=now)

        saved = await self._tickets.save_ticket(
            replace(
                ticket,
                dispatchers=dispatchers,
                technicians=technicians,
                current_state=target.ref(),
                state_changed_at=now,
                updated_at=now,
            )
        )
        # Both entries go to storage in one batch.
        entries = await self._recorder.record_all(
            [
                StateChange(
                    commerce_id=ticket.commerce_id,
                    ticket_id=ticket.id,
                    from_state=ticket.current_state,
                    to_state=target.ref(),
                    dispatchers=dispatchers,
                    technicians=technicians,
                ),
                StateChange(
                    commerce_id=ticket.commerce_id,
                    ticket_id=ticket.id,
                    from_state=ticket.current_state,
                    to_state=machine.ref(TicketState.TECHNICIAN_UNASSIGNED.value),
                    dispatchers=dispatchers,
                    technicians=technicians,
                ),
            ]
        )
        logger.info("Dispatcher %s assigned to ticket %s by %s", new_dispatcher_id, ticket.id, current_dispatcher_id)
        return WorkflowResult(
            message=(
                f"Dispatcher {new.full_name} assigned to ticket {ticket.ticket_number} by dispatcher "
                f"{current.full_name}. All previously assigned technicians were unassigned."
            ),
            ticket=saved,
            history=tuple(entries),
        )

    async def _unassign_dispatcher(self, ticket_id: str, dispatcher_id: str, acting_employee_id: str) -> WorkflowResult:
        acting = await self._load_employee(acting_employee_id, "Dispatcher")
        self._authorizer.authorize_dispatcher_unassignment(acting)
        ticket = await self._load_ticket(ticket_id)

        if not any(entry.id == dispatcher_id and entry.enabled for entry in ticket.dispatchers):
            return WorkflowResult(message="There is no enabled dispatcher to unassign", changed=False, ticket=ticket)

        now = self._clock()
        dispatchers = [
            entry.disable(by=acting.id, at=now) if entry.id == dispatcher_id and entry.enabled else entry
            for entry in ticket.dispatchers
        ]
        saved = await self._tickets.save_ticket(replace(ticket, dispatchers=dispatchers, updated_at=now))
        logger.info("Dispatcher %s unassigned from ticket %s by %s", dispatcher_id, ticket.id, acting.id)
        return WorkflowResult(
            message=f"Dispatcher {dispatcher_id} unassigned from ticket {ticket.ticket_number}",
            ticket=saved,
        )

    async def _assignment_target(self, ticket: Ticket, state_id: str) -> tuple[StateMachine, State]:
        machine = await self._registry.get_state_machine(ticket.commerce_id)
        target = machine.get(state_id)
        TransitionValidator.check(
            machine,
            ticket.current_state_id,
            target.id if target is not None else None,
            error=ForbiddenError,
            message=(
                f"Transition from '{_state_name(ticket.current_state)}' "
                f"to '{_state_name(target, state_id)}' is not allowed"
            ),
        )
        return machine, target

    async def _check_coordination(self, ticket: Ticket, extra: CoordinationDetails) -> None:
        if extra.coordinated_date is None:
            raise BadRequestError("A coordinated date is required to coordinate the visit")
        if not extra.coordinated_contact_id:
            raise BadRequestError("A contact is required to coordinate the visit")
        contact = await self._contacts.get(extra.coordinated_contact_id)
        if contact is None:
            raise NotFoundError(f"Contact {extra.coordinated_contact_id} not found")
        if contact.commerce_id != ticket.commerce_id:
            raise BadRequestError(f"Contact {contact.id} does not belong to the commerce of ticket {ticket.ticket_number}")

    async def _load_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self._tickets.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def _load_employee(self, employee_id: str, what: str) -> Employee:
        employee = await self._employees.get(employee_id)
        if employee is None:
            raise NotFoundError(f"{what} {employee_id} not found")
        return employee
