"""HTTP clients for the collaborators told about ticket state changes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from app.metrics import OBSERVER_FAILURES_TOTAL, MetricsRegistry, metrics_registry
from app.tickets.errors import DocumentServiceError
from app.tickets.models import StateChangeNotification

logger = logging.getLogger(__name__)


def _join(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


class ObserverNotifier:
    """Fire-and-forget publisher of state changes to the observer service.

    :meth:`notify` schedules a detached task and returns immediately. Failures
    are logged and counted, never raised to the caller; the state change was
    already committed when the notification is sent.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str | None,
        *,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self._client = client
        self._endpoint = endpoint
        self._metrics = metrics or metrics_registry
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def notify(self, notification: StateChangeNotification) -> asyncio.Task[None] | None:
        if not self._endpoint:
            logger.debug("Observer endpoint not configured; skipping notification for %s", notification.ticket_id)
            return None
        url = _join(self._endpoint, "state-changes")
        task = asyncio.get_running_loop().create_task(self._send(url, notification))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def _send(self, url: str, notification: StateChangeNotification) -> None:
        try:
            response = await self._client.post(url, json=notification.to_payload())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self._metrics.counter(OBSERVER_FAILURES_TOTAL).inc()
            logger.warning(
                "Observer notification for ticket %s (%s) failed: %s",
                notification.ticket_id,
                notification.new_state,
                exc,
            )

    def _on_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._metrics.counter(OBSERVER_FAILURES_TOTAL).inc()
            logger.error("Observer notification task crashed", exc_info=exc)

    async def drain(self) -> None:
        """Wait for every in-flight notification, used on shutdown."""

        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


@dataclass(slots=True, frozen=True)
class DeliveryDocument:
    file_name: str | None
    file_path: str | None
    url: str | None

    def to_customs(self) -> dict[str, Any]:
        return {"fileName": self.file_name, "filePath": self.file_path, "url": self.url}


class DeliveryDocumentClient:
    """Fetch the delivery-document (ODS) URL of a ticket.

    Errors propagate as :class:`DocumentServiceError`: the document is part of
    the payload of a reschedule transition.
    """

    def __init__(self, client: httpx.AsyncClient, endpoint: str | None) -> None:
        self._client = client
        self._endpoint = endpoint

    async def fetch(self, ticket_id: str, commerce_id: str) -> DeliveryDocument:
        if not self._endpoint:
            raise DocumentServiceError("Delivery document endpoint is not configured")

        url = _join(self._endpoint, f"orders/{ticket_id}/commerce/{commerce_id}/url")
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise DocumentServiceError(f"Could not fetch delivery document of ticket {ticket_id}: {exc}") from exc
        except ValueError as exc:
            raise DocumentServiceError(f"Delivery document service returned invalid JSON for ticket {ticket_id}") from exc

        if not isinstance(data, Mapping):
            raise DocumentServiceError(f"Unexpected delivery document payload for ticket {ticket_id}")
        return DeliveryDocument(
            file_name=data.get("fileName"),
            file_path=data.get("filePath"),
            url=data.get("url"),
        )
