"""Error taxonomy of the ticket workflow.

``WorkflowError`` subclasses are expected rejections that are surfaced to the
caller verbatim. Everything else raised from this package is an
infrastructure fault.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    BAD_REQUEST = "bad_request"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"


class WorkflowError(RuntimeError):
    """Base class for user-facing workflow rejections."""

    kind: ErrorKind = ErrorKind.BAD_REQUEST


class NotFoundError(WorkflowError):
    """Ticket, employee, contact or state machine does not exist."""

    kind = ErrorKind.NOT_FOUND


class BadRequestError(WorkflowError):
    """Illegal transition or missing data required by the target state."""

    kind = ErrorKind.BAD_REQUEST


class ForbiddenError(WorkflowError):
    """Authorization rule violated or technician already busy."""

    kind = ErrorKind.FORBIDDEN


class ConflictError(WorkflowError):
    """Duplicate active assignment or concurrent modification."""

    kind = ErrorKind.CONFLICT


class StaleTicketError(ConflictError):
    """The ticket revision changed between read and write."""

    def __init__(self, ticket_id: str, expected_revision: int) -> None:
        super().__init__(f"Ticket {ticket_id} was modified concurrently (expected revision {expected_revision})")
        self.ticket_id = ticket_id
        self.expected_revision = expected_revision


class StateMachineUnavailableError(RuntimeError):
    """A transition was checked without any state machine loaded."""


class StateMachineDefinitionError(RuntimeError):
    """A stored state machine document is malformed."""


class DocumentServiceError(RuntimeError):
    """The delivery-document service could not provide the document URL."""
