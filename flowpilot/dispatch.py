"""Trigger emission onto the workflow trigger stream."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .constants import TRIGGER_STREAM
from .transports import BaseEventLog

logger = logging.getLogger(__name__)


class TriggerEmitter:
    """Append trigger events in either of the two shapes the ingestor reads."""

    def __init__(self, event_log: BaseEventLog, stream: str = TRIGGER_STREAM) -> None:
        self._event_log = event_log
        self.stream = stream

    async def emit(
        self,
        event_type: str,
        tenant_id: str,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> str:
        """Emit a direct named trigger ``{event_type, tenant_id, payload, timestamp}``."""
        timestamp = timestamp or datetime.now(timezone.utc)
        entry_id = await self._event_log.append(
            self.stream,
            {
                "event_type": event_type,
                "tenant_id": tenant_id,
                "payload": payload or {},
                "timestamp": timestamp.isoformat(),
            },
        )
        logger.info(f"Emitted {event_type} trigger for tenant {tenant_id} as {entry_id}")
        return entry_id

    async def emit_channel_message(
        self,
        tenant_id: str,
        message_id: str,
        channel: str,
        conversation_id: Optional[str] = None,
    ) -> str:
        """Emit a channel message reference ``{message_id, tenant_id, conversation_id, channel}``."""
        entry_id = await self._event_log.append(
            self.stream,
            {
                "message_id": message_id,
                "tenant_id": tenant_id,
                "conversation_id": conversation_id,
                "channel": channel,
            },
        )
        logger.info(f"Emitted {channel} message {message_id} for tenant {tenant_id}")
        return entry_id
