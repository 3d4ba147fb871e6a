# urgent_dispatch/infra/pg_notification_repo_async.py
"""
In-app notifications persisted to the ``notifications`` table.

Clients read them through the host application's notification feed; push
delivery is handled elsewhere and is not part of this service.
"""
from __future__ import annotations

import json
from typing import Any

from urgent_dispatch.infra.db_resilience_async import safe_db_conn
from urgent_dispatch.infra.logging_config import get_logger
from urgent_dispatch.infra.metrics import inc_counter

logger = get_logger(__name__)


class AsyncPostgresNotificationGateway:
    def __init__(self, *, enabled: bool = True):
        self.enabled = enabled

    async def create_notification(
        self,
        user_id: str,
        notification_type: str,
        message: str,
        payload: dict[str, Any],
    ) -> None:
        if not self.enabled:
            logger.debug(f"Notifications disabled, dropping {notification_type} for {user_id}")
            return

        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO notifications (user_id, type, message, payload)
                VALUES ($1, $2, $3, $4::jsonb)
                """,
                user_id,
                notification_type,
                message,
                json.dumps(payload, default=str),
            )
        inc_counter("notifications_created_total", type=notification_type)
