"""Role and provider rules for dispatcher and technician assignment."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ForbiddenError
from .models import Assignment, Employee, EmployeeRole

_DISPATCHING_ROLES = frozenset({EmployeeRole.ADMIN.value, EmployeeRole.DISPATCHER.value})


@dataclass(slots=True, frozen=True)
class AssignmentAuthorizer:
    """Stateless rule set evaluated against the acting employee.

    ``home_provider`` is the organisation operating the platform; its
    dispatchers may hand tickets to anyone, while external providers may only
    hand tickets within their own organisation or back to the home provider.
    """

    home_provider: str = "STEFANINI"

    def authorize_technician_assignment(self, dispatcher: Employee, technician: Employee) -> None:
        if dispatcher.is_admin or dispatcher.provider == technician.provider:
            return
        raise ForbiddenError("Dispatchers can only assign technicians from their own provider")

    def authorize_technician_unassignment(self, dispatcher: Employee, technician: Assignment) -> None:
        if dispatcher.is_admin or dispatcher.provider == technician.provider:
            return
        raise ForbiddenError("Dispatchers can only unassign technicians from their own provider")

    def authorize_dispatcher_assignment(self, current: Employee, new: Employee) -> None:
        if current.is_admin:
            return
        if current.provider == self.home_provider:
            if current.role in _DISPATCHING_ROLES:
                return
            raise ForbiddenError("Only admins and dispatchers can reassign the dispatcher of a ticket")
        if new.provider in (current.provider, self.home_provider):
            return
        raise ForbiddenError(
            f"Dispatchers of other providers can only assign dispatchers of their own provider or {self.home_provider}"
        )

    def authorize_dispatcher_unassignment(self, employee: Employee) -> None:
        if not employee.is_admin:
            raise ForbiddenError("Only admins can unassign dispatchers")
