"""In-process push transport fed by the local HTTP API."""
from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Optional, Set

from ..telemetry import PUSH_TRANSPORT
from .transport import TelemetryHandler

logger = logging.getLogger(__name__)


class PushTransport:
    """Delivers payloads posted to ``/telemetry`` as database-style paths."""

    name = PUSH_TRANSPORT

    def __init__(self) -> None:
        self._handler: Optional[TelemetryHandler] = None
        self._subscriptions: Set[str] = set()

    @property
    def connected(self) -> bool:
        return self._handler is not None

    @property
    def subscriptions(self) -> Set[str]:
        return set(self._subscriptions)

    def subscribe(self, channels: Iterable[str]) -> None:
        self._subscriptions.update(channels)

    def unsubscribe(self, channels: Iterable[str]) -> None:
        self._subscriptions.difference_update(channels)

    async def connect(self, handler: TelemetryHandler) -> None:
        self._handler = handler

    async def disconnect(self) -> None:
        self._handler = None

    async def push(self, channel: str, payload: Any) -> bool:
        """Deliver one payload; returns False when it was not routed."""
        path = (channel or "").strip("/")
        if self._handler is None:
            logger.info("Push on %s dropped - transport not connected", path)
            return False
        if path not in self._subscriptions:
            logger.debug("Push on %s dropped - not subscribed", path)
            return False
        await self._handler(self.name, path, payload)
        return True


__all__ = ["PushTransport"]
