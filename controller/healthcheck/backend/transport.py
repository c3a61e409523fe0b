"""Transport contract shared by every telemetry source."""
from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol

# (transport name, channel, raw payload)
TelemetryHandler = Callable[[str, str, Any], Awaitable[None]]


class TelemetryTransport(Protocol):
    """Push-based telemetry source owned by the session manager."""

    name: str

    @property
    def connected(self) -> bool:
        ...

    async def connect(self, handler: TelemetryHandler) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    def subscribe(self, channels: Iterable[str]) -> None:
        ...

    def unsubscribe(self, channels: Iterable[str]) -> None:
        ...


__all__ = ["TelemetryHandler", "TelemetryTransport"]
