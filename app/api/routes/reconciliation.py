from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated

import asyncpg
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict

from app.dependencies.tickets import get_history_reconciler
from app.tickets.reconciliation import HistoryReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


class UnrecordedTransitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticket_id: str
    commerce_id: str
    ticket_number: str
    state_id: str
    state_changed_at: datetime | None


@router.get(
    "/unrecorded",
    response_model=list[UnrecordedTransitionResponse],
    summary="Tickets whose current state has no history entry",
)
async def list_unrecorded(
    reconciler: Annotated[HistoryReconciler, Depends(get_history_reconciler)],
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> list[UnrecordedTransitionResponse]:
    try:
        found = await reconciler.find_unrecorded(limit=limit)
    except (OSError, asyncpg.PostgresError) as exc:
        logger.exception("Reconciliation query failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [UnrecordedTransitionResponse.model_validate(item) for item in found]
