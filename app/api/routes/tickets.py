from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from app.dependencies.tickets import get_ticket_workflow
from app.tickets.errors import (
    DocumentServiceError,
    ErrorKind,
    StateMachineDefinitionError,
    StateMachineUnavailableError,
    WorkflowError,
)
from app.tickets.models import Assignment, CoordinationDetails, StateHistoryEntry, Ticket, WorkflowResult
from app.tickets.workflow import TicketWorkflow

router = APIRouter(prefix="/tickets", tags=["tickets"])

_STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.BAD_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StateChangeRequest(_CamelModel):
    coordinated_date: datetime | None = Field(default=None, alias="coordinatedDate")
    coordinated_contact_id: str | None = Field(default=None, alias="coordinatedContactId")
    customs: dict[str, Any] = Field(default_factory=dict)


class TechnicianAssignRequest(_CamelModel):
    technician_id: str = Field(..., min_length=1, alias="technicianId")
    dispatcher_id: str = Field(..., min_length=1, alias="dispatcherId")


class TechnicianUnassignRequest(_CamelModel):
    technician_id: str | None = Field(default=None, alias="technicianId")
    dispatcher_id: str = Field(..., min_length=1, alias="dispatcherId")


class DispatcherAssignRequest(_CamelModel):
    dispatcher_id: str = Field(..., min_length=1, alias="dispatcherId")
    current_dispatcher_id: str = Field(..., min_length=1, alias="currentDispatcherId")


class DispatcherUnassignRequest(_CamelModel):
    dispatcher_id: str = Field(..., min_length=1, alias="dispatcherId")
    acting_employee_id: str | None = Field(default=None, alias="actingEmployeeId")


class AssignmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str | None
    role: str | None
    name: str
    assigned_by: str | None
    assigned_at: datetime | None
    enabled: bool
    unassigned_by: str | None
    unassigned_at: datetime | None


class StateResponse(BaseModel):
    id: str
    label: str


class TicketResponse(BaseModel):
    id: str
    commerce_id: str
    ticket_number: str
    current_state: StateResponse | None
    dispatchers: list[AssignmentResponse]
    technicians: list[AssignmentResponse]
    coordinated_date: datetime | None
    coordinated_contact_id: str | None
    revision: int
    updated_at: datetime | None


class HistoryEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ticket_id: str
    commerce_id: str
    state_id: str
    state_label: str
    description: str
    dispatcher_id: str | None
    technician_id: str | None
    customs: dict[str, Any]
    created_at: datetime


class WorkflowResponse(BaseModel):
    message: str
    changed: bool
    ticket: TicketResponse | None = None
    history: list[HistoryEntryResponse] = Field(default_factory=list)


TicketWorkflowDep = Annotated[TicketWorkflow, Depends(get_ticket_workflow)]


def _assignment_response(assignment: Assignment) -> AssignmentResponse:
    return AssignmentResponse.model_validate(assignment)


def _history_response(entry: StateHistoryEntry) -> HistoryEntryResponse:
    return HistoryEntryResponse(
        id=entry.id,
        ticket_id=entry.ticket_id,
        commerce_id=entry.commerce_id,
        state_id=entry.state_id,
        state_label=entry.state_label,
        description=entry.description,
        dispatcher_id=entry.dispatcher_id,
        technician_id=entry.technician_id,
        customs=dict(entry.customs),
        created_at=entry.created_at,
    )


def _ticket_response(ticket: Ticket) -> TicketResponse:
    state = ticket.current_state
    return TicketResponse(
        id=ticket.id,
        commerce_id=ticket.commerce_id,
        ticket_number=ticket.ticket_number,
        current_state=StateResponse(id=state.id, label=state.display) if state is not None else None,
        dispatchers=[_assignment_response(entry) for entry in ticket.dispatchers],
        technicians=[_assignment_response(entry) for entry in ticket.technicians],
        coordinated_date=ticket.coordinated_date,
        coordinated_contact_id=ticket.coordinated_contact_id,
        revision=ticket.revision,
        updated_at=ticket.updated_at,
    )


def _to_response(result: WorkflowResult) -> WorkflowResponse:
    return WorkflowResponse(
        message=result.message,
        changed=result.changed,
        ticket=_ticket_response(result.ticket) if result.ticket is not None else None,
        history=[_history_response(entry) for entry in result.history],
    )


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, WorkflowError):
        raise HTTPException(status_code=_STATUS_BY_KIND[exc.kind], detail=str(exc)) from exc
    if isinstance(exc, DocumentServiceError):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


_HANDLED_ERRORS = (WorkflowError, DocumentServiceError, StateMachineUnavailableError, StateMachineDefinitionError)


@router.put("/{ticket_id}/states/{state_id}", response_model=WorkflowResponse)
async def update_state(
    ticket_id: str,
    state_id: str,
    workflow: TicketWorkflowDep,
    payload: StateChangeRequest | None = None,
) -> WorkflowResponse:
    payload = payload or StateChangeRequest()
    extra = CoordinationDetails(
        coordinated_date=payload.coordinated_date,
        coordinated_contact_id=payload.coordinated_contact_id,
        customs=payload.customs,
    )
    try:
        result = await workflow.update_state(ticket_id, state_id, extra)
    except _HANDLED_ERRORS as exc:
        _raise_http(exc)
    return _to_response(result)


@router.post("/{ticket_id}/technicians", response_model=WorkflowResponse)
async def assign_technician(
    ticket_id: str, payload: TechnicianAssignRequest, workflow: TicketWorkflowDep
) -> WorkflowResponse:
    try:
        result = await workflow.assign_technician(ticket_id, payload.technician_id, payload.dispatcher_id)
    except _HANDLED_ERRORS as exc:
        _raise_http(exc)
    return _to_response(result)


@router.delete("/{ticket_id}/technicians", response_model=WorkflowResponse)
async def unassign_technician(
    ticket_id: str, payload: TechnicianUnassignRequest, workflow: TicketWorkflowDep
) -> WorkflowResponse:
    try:
        result = await workflow.unassign_technician(ticket_id, payload.technician_id, payload.dispatcher_id)
    except _HANDLED_ERRORS as exc:
        _raise_http(exc)
    return _to_response(result)


@router.post("/{ticket_id}/dispatchers", response_model=WorkflowResponse)
async def assign_dispatcher(
    ticket_id: str, payload: DispatcherAssignRequest, workflow: TicketWorkflowDep
) -> WorkflowResponse:
    try:
        result = await workflow.assign_dispatcher(ticket_id, payload.dispatcher_id, payload.current_dispatcher_id)
    except _HANDLED_ERRORS as exc:
        _raise_http(exc)
    return _to_response(result)


@router.delete("/{ticket_id}/dispatchers", response_model=WorkflowResponse)
async def unassign_dispatcher(
    ticket_id: str, payload: DispatcherUnassignRequest, workflow: TicketWorkflowDep
) -> WorkflowResponse:
    try:
        result = await workflow.unassign_dispatcher(
            ticket_id, payload.dispatcher_id, acting_employee_id=payload.acting_employee_id
        )
    except _HANDLED_ERRORS as exc:
        _raise_http(exc)
    return _to_response(result)


@router.get("/{ticket_id}/history", response_model=list[HistoryEntryResponse])
async def get_history(ticket_id: str, workflow: TicketWorkflowDep) -> list[HistoryEntryResponse]:
    try:
        entries = await workflow.get_history(ticket_id)
    except _HANDLED_ERRORS as exc:
        _raise_http(exc)
    return [_history_response(entry) for entry in entries]
