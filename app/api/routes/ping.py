from __future__ import annotations

import logging

import asyncpg
from fastapi import APIRouter, Request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ping", tags=["health"])


@router.get("", summary="Public health check")
async def ping() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/ready", summary="Reports whether the workflow is wired and Postgres answers")
async def ready(request: Request) -> dict[str, str]:
    workflow = getattr(request.app.state, "ticket_workflow", None)
    postgres = getattr(request.app.state, "postgres", None)
    if workflow is None or postgres is None:
        return {"status": "degraded"}
    try:
        await postgres.test_connection()
    except (OSError, asyncpg.PostgresError) as exc:
        logger.warning("Readiness check could not reach Postgres: %s", exc)
        return {"status": "degraded"}
    return {"status": "ok"}
