# urgent_dispatch/infra/realtime_gateway.py
"""
Real-time event delivery.

The service does not hold sockets itself. Events are POSTed as JSON to a relay
(the host application's socket server), which fans them out to the rooms
``urgent_request:<id>`` and ``user:<id>``.
"""
from __future__ import annotations

from typing import Any, Callable

import aiohttp

from urgent_dispatch.core.domain import UrgentRequest
from urgent_dispatch.infra.http_client import get_realtime_session
from urgent_dispatch.infra.logging_config import get_logger
from urgent_dispatch.infra.metrics import inc_counter

logger = get_logger(__name__)

EVENT_STATUS_UPDATE = "urgent_request_status_update"
EVENT_ACCEPTED = "urgent_request_accepted"
EVENT_NEW_REQUEST = "new_urgent_request"


class RealtimeDeliveryError(Exception):
    """Relay answered with a non-2xx status."""


class WebhookRealtimeGateway:
    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        session_factory: Callable[[], aiohttp.ClientSession] = get_realtime_session,
    ):
        self.url = url
        self.token = token
        self._session_factory = session_factory

    async def _post(self, event: str, rooms: list[str], data: dict[str, Any]) -> None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        body = {"event": event, "rooms": rooms, "data": data}

        session = self._session_factory()
        async with session.post(self.url, json=body, headers=headers) as resp:
            if resp.status >= 300:
                inc_counter("realtime_events_failed", event=event, status=str(resp.status))
                raise RealtimeDeliveryError(f"Relay returned {resp.status} for {event}")

        inc_counter("realtime_events_sent", event=event)
        logger.debug(f"Real-time event {event} sent to {len(rooms)} rooms")

    async def notify_status_update(self, request: UrgentRequest, extra: dict[str, Any]) -> None:
        rooms = [f"urgent_request:{request.id}", f"user:{request.client_id}"]
        await self._post(EVENT_STATUS_UPDATE, rooms, {"request": request.to_payload(), **extra})

    async def notify_accepted(self, request: UrgentRequest, extra: dict[str, Any]) -> None:
        rooms = [f"urgent_request:{request.id}", f"user:{request.client_id}"]
        await self._post(EVENT_ACCEPTED, rooms, {"request": request.to_payload(), **extra})

    async def notify_professionals(self, request: UrgentRequest, candidates: list[dict[str, Any]]) -> None:
        rooms = [f"user:{c['professional_id']}" for c in candidates]
        if not rooms:
            return
        await self._post(EVENT_NEW_REQUEST, rooms, {"request": request.to_payload(), "candidates": candidates})


class NullRealtimeGateway:
    """Used when no relay is configured: events are logged and dropped."""

    async def notify_status_update(self, request: UrgentRequest, extra: dict[str, Any]) -> None:
        logger.debug(f"Real-time disabled: status update for {request.id} dropped")

    async def notify_accepted(self, request: UrgentRequest, extra: dict[str, Any]) -> None:
        logger.debug(f"Real-time disabled: accepted event for {request.id} dropped")

    async def notify_professionals(self, request: UrgentRequest, candidates: list[dict[str, Any]]) -> None:
        logger.debug(f"Real-time disabled: {len(candidates)} candidate events for {request.id} dropped")
