from __future__ import annotations

from fastapi import HTTPException, Request

from app.tickets.reconciliation import HistoryReconciler
from app.tickets.workflow import TicketWorkflow


async def get_ticket_workflow(request: Request) -> TicketWorkflow:
    workflow = getattr(request.app.state, "ticket_workflow", None)
    if workflow is None:
        raise HTTPException(status_code=503, detail="Ticket workflow is not configured")
    return workflow


async def get_history_reconciler(request: Request) -> HistoryReconciler:
    reconciler = getattr(request.app.state, "history_reconciler", None)
    if reconciler is None:
        raise HTTPException(status_code=503, detail="History reconciliation is not configured")
    return reconciler
