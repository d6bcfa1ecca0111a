from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence


class TicketState(str, Enum):
    """Lifecycle states the workflow attaches behaviour to.

    Commerce state machines may define any number of further states; these are
    the ids the engine itself refers to.
    """

    CREATED = "created"
    DISPATCHER_ASSIGNED = "dispatcher_assigned"
    TECHNICIAN_ASSIGNED = "technician_assigned"
    TECHNICIAN_UNASSIGNED = "technician_unassigned"
    COORDINATE = "coordinate"
    RESCHEDULE = "reschedule"
    IN_SERVICE = "in_service"
    CLOSED = "closed"


class EmployeeRole(str, Enum):
    ADMIN = "ADMIN"
    DISPATCHER = "DISPATCHER"
    TECHNICIAN = "TECHNICIAN"


@dataclass(slots=True, frozen=True)
class StateRef:
    """Denormalised ``{id, label}`` pair stored on tickets."""

    id: str
    label: str = ""

    @property
    def display(self) -> str:
        return self.label or self.id


@dataclass(slots=True, frozen=True)
class State:
    id: str
    label: str
    transitions: frozenset[str] = frozenset()

    def ref(self) -> StateRef:
        return StateRef(id=self.id, label=self.label)


@dataclass(slots=True, frozen=True)
class StateMachine:
    """Per-commerce definition of ticket states and legal transitions."""

    commerce_id: str
    states: tuple[State, ...]

    def get(self, state_id: str | None) -> State | None:
        if not state_id:
            return None
        for state in self.states:
            if state.id == state_id:
                return state
        return None

    def ref(self, state_id: str) -> StateRef:
        """Resolve ``state_id`` to a ref, falling back to the bare id as label."""

        state = self.get(state_id)
        return state.ref() if state is not None else StateRef(id=state_id, label=state_id)

    def dangling_transitions(self) -> list[tuple[str, str]]:
        known = {state.id for state in self.states}
        return [
            (state.id, target)
            for state in self.states
            for target in sorted(state.transitions)
            if target not in known
        ]


@dataclass(slots=True, frozen=True)
class Assignment:
    """One dispatcher or technician slot on a ticket.

    Entries are never removed from a ticket; unassigning flips ``enabled`` and
    stamps who did it and when.
    """

    id: str
    provider: str | None
    role: str | None
    name: str
    assigned_by: str | None
    assigned_at: datetime | None
    enabled: bool = True
    unassigned_by: str | None = None
    unassigned_at: datetime | None = None

    def disable(self, *, by: str, at: datetime) -> "Assignment":
        return replace(self, enabled=False, unassigned_by=by, unassigned_at=at)


def first_enabled(assignments: Iterable[Assignment]) -> Assignment | None:
    return next((assignment for assignment in assignments if assignment.enabled), None)


def disable_enabled(assignments: Sequence[Assignment], *, by: str, at: datetime) -> list[Assignment]:
    """Return a copy of ``assignments`` with every enabled entry disabled."""

    return [assignment.disable(by=by, at=at) if assignment.enabled else assignment for assignment in assignments]


@dataclass(slots=True, frozen=True)
class Employee:
    id: str
    role: str
    provider: str | None
    first_name: str = ""
    first_surname: str = ""
    phone: str | None = None
    email: str | None = None

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.first_surname) if part)

    @property
    def is_admin(self) -> bool:
        return self.role == EmployeeRole.ADMIN.value

    def assignment(self, *, assigned_by: str, assigned_at: datetime) -> Assignment:
        return Assignment(
            id=self.id,
            provider=self.provider,
            role=self.role,
            name=f"{self.first_name} {self.first_surname}",
            assigned_by=assigned_by,
            assigned_at=assigned_at,
            enabled=True,
        )


@dataclass(slots=True, frozen=True)
class Contact:
    id: str
    commerce_id: str
    first_name: str = ""
    last_name: str = ""
    phone: str | None = None
    email: str | None = None


@dataclass(slots=True, frozen=True)
class Actor:
    """Who a history narrative names as dispatcher or technician."""

    id: str
    name: str

    @classmethod
    def from_assignment(cls, assignment: Assignment | None) -> "Actor | None":
        if assignment is None:
            return None
        return cls(id=assignment.id, name=assignment.name)

    @classmethod
    def from_employee(cls, employee: Employee) -> "Actor":
        return cls(id=employee.id, name=employee.full_name)


@dataclass(slots=True)
class Ticket:
    """Field-service ticket as stored, with its assignment history."""

    id: str
    commerce_id: str
    ticket_number: str
    current_state: StateRef | None = None
    dispatchers: list[Assignment] = field(default_factory=list)
    technicians: list[Assignment] = field(default_factory=list)
    description: str = ""
    planned_date: datetime | None = None
    priority: str | None = None
    coordinated_date: datetime | None = None
    coordinated_contact_id: str | None = None
    revision: int = 0
    state_changed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def current_state_id(self) -> str | None:
        return self.current_state.id if self.current_state is not None else None

    @property
    def active_dispatcher(self) -> Assignment | None:
        return first_enabled(self.dispatchers)

    @property
    def active_technician(self) -> Assignment | None:
        return first_enabled(self.technicians)

    def enabled_technician_ids(self) -> list[str]:
        return [technician.id for technician in self.technicians if technician.enabled]


@dataclass(slots=True, frozen=True)
class StateHistoryEntry:
    """Immutable audit record of one state transition."""

    id: str
    ticket_id: str
    commerce_id: str
    state_id: str
    state_label: str
    description: str
    created_at: datetime
    dispatcher_id: str | None = None
    technician_id: str | None = None
    customs: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class CoordinationDetails:
    """Extra payload accepted by ``update_state``."""

    coordinated_date: datetime | None = None
    coordinated_contact_id: str | None = None
    customs: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class WorkflowResult:
    """Outcome of a workflow operation.

    ``changed`` is ``False`` for informational no-ops, which neither write the
    ticket nor append history.
    """

    message: str
    changed: bool = True
    ticket: Ticket | None = None
    history: tuple[StateHistoryEntry, ...] = ()


@dataclass(slots=True, frozen=True)
class StateChangeNotification:
    """Payload sent to the observer after a state change is recorded."""

    ticket_id: str
    new_state: str
    client_id: str = ""

    def to_payload(self) -> dict[str, str]:
        return {"ticketId": self.ticket_id, "newState": self.new_state, "clientId": self.client_id}
