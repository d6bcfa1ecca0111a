"""Ticket lifecycle and assignment authorization."""

from .authorization import AssignmentAuthorizer
from .errors import (
    BadRequestError,
    ConflictError,
    DocumentServiceError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    StaleTicketError,
    StateMachineDefinitionError,
    StateMachineUnavailableError,
    WorkflowError,
)
from .guards import ConcurrencyGuard
from .history import HistoryRecorder, StateChange, describe_transition
from .models import (
    Assignment,
    Contact,
    CoordinationDetails,
    Employee,
    EmployeeRole,
    State,
    StateChangeNotification,
    StateHistoryEntry,
    StateMachine,
    StateRef,
    Ticket,
    TicketState,
    WorkflowResult,
)
from .state import StateMachineRegistry, TransitionValidator
from .workflow import TicketWorkflow

__all__ = [
    "Assignment",
    "AssignmentAuthorizer",
    "BadRequestError",
    "ConcurrencyGuard",
    "ConflictError",
    "Contact",
    "CoordinationDetails",
    "DocumentServiceError",
    "Employee",
    "EmployeeRole",
    "ErrorKind",
    "ForbiddenError",
    "HistoryRecorder",
    "NotFoundError",
    "StaleTicketError",
    "State",
    "StateChange",
    "StateChangeNotification",
    "StateHistoryEntry",
    "StateMachine",
    "StateMachineDefinitionError",
    "StateMachineRegistry",
    "StateMachineUnavailableError",
    "StateRef",
    "Ticket",
    "TicketState",
    "TicketWorkflow",
    "TransitionValidator",
    "WorkflowError",
    "describe_transition",
]
