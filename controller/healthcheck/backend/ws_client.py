"""Sensor hub WebSocket client used during active sessions."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable
from typing import Any, Callable, Optional, Set, Tuple

import websockets

from ..errors import TransportError
from ..telemetry import SOCKET_TRANSPORT
from .transport import TelemetryHandler

logger = logging.getLogger(__name__)


class SensorWebSocketTransport:
    """Maintains the sensor hub connection with bounded reconnection.

    Messages are JSON envelopes ``{"event": <channel>, "data": <payload>}``;
    the two-element array form ``[<channel>, <payload>]`` is accepted as well.
    Only subscribed channels reach the handler.
    """

    name = SOCKET_TRANSPORT

    def __init__(
        self,
        url: str,
        *,
        reconnect_attempts: int = 20,
        reconnect_delay: float = 10.0,
        connector: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.url = url
        self.reconnect_attempts = reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self._connector = connector or websockets.connect
        self._conn: Optional[Any] = None
        self._runner_task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._handler: Optional[TelemetryHandler] = None
        self._subscriptions: Set[str] = set()
        self.failed_attempts = 0
        self.exhausted = False

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def subscriptions(self) -> Set[str]:
        return set(self._subscriptions)

    def subscribe(self, channels: Iterable[str]) -> None:
        self._subscriptions.update(channels)

    def unsubscribe(self, channels: Iterable[str]) -> None:
        self._subscriptions.difference_update(channels)

    async def connect(self, handler: TelemetryHandler) -> None:
        await self.disconnect()
        logger.info("Starting sensor websocket %s", self.url)
        self._stop_event = asyncio.Event()
        self._handler = handler
        self.failed_attempts = 0
        self.exhausted = False
        self._runner_task = asyncio.create_task(self._run(self._stop_event), name="sensor-ws-runner")

    async def disconnect(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        task, self._runner_task = self._runner_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error during sensor websocket cleanup: %s", e)
        # from inside our own handler the listener exits once the socket is closed
        await self._close_conn(self._conn)
        self._handler = None

    async def send(self, message: dict[str, Any]) -> None:
        if not self._conn:
            logger.warning("Cannot send message - sensor websocket not connected")
            return
        try:
            await self._conn.send(json.dumps(message))
        except websockets.ConnectionClosed:
            logger.warning("Cannot send message - websocket connection closed")
        except Exception as e:
            logger.error("Failed to send websocket message: %s", e)

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            conn = None
            try:
                conn = await self._open()
                if stop_event.is_set():
                    break
                self._conn = conn
                logger.info("Sensor websocket connected")
                self.failed_attempts = 0
                await self._listen(conn, stop_event)
            except asyncio.CancelledError:
                raise
            except TransportError as exc:
                logger.warning("Sensor websocket unavailable: %s", exc)
            except Exception as exc:
                logger.warning("Sensor websocket connection failed: %s", exc)
            finally:
                await self._close_conn(conn)

            if stop_event.is_set():
                break
            self.failed_attempts += 1
            if self.failed_attempts > self.reconnect_attempts:
                # silence from here on is left to the liveness monitor
                self.exhausted = True
                logger.error(
                    "Sensor websocket reconnection exhausted after %d attempts", self.reconnect_attempts
                )
                break
            logger.info(
                "Reconnecting sensor websocket in %.1fs (attempt %d/%d)",
                self.reconnect_delay,
                self.failed_attempts,
                self.reconnect_attempts,
            )
            await asyncio.sleep(self.reconnect_delay)

    async def _open(self) -> Any:
        try:
            return await self._connector(self.url, ping_interval=None, ping_timeout=None)
        except (OSError, asyncio.TimeoutError, websockets.InvalidHandshake) as exc:
            raise TransportError("sensor hub unavailable", log_message=f"cannot reach {self.url}: {exc}") from exc

    async def _listen(self, conn: Any, stop_event: asyncio.Event) -> None:
        try:
            async for message in conn:
                if stop_event.is_set():
                    break
                try:
                    payload = json.loads(message)
                except (json.JSONDecodeError, TypeError):
                    logger.warning("Invalid JSON from sensor hub: %r", message)
                    continue

                if isinstance(payload, dict) and payload.get("type") == "ping":
                    await self.send({"type": "pong"})
                    continue

                envelope = self._unwrap(payload)
                if envelope is None:
                    logger.warning("Unrecognised sensor envelope: %r", payload)
                    continue
                channel, data = envelope
                if channel not in self._subscriptions:
                    logger.debug("Ignoring unsubscribed channel %s", channel)
                    continue

                handler = self._handler
                if handler:
                    try:
                        await handler(self.name, channel, data)
                    except Exception as e:
                        logger.exception("Error in sensor message handler: %s", e)
        except websockets.ConnectionClosedOK:
            logger.info("Sensor websocket closed cleanly")
        except websockets.ConnectionClosedError as exc:
            logger.warning("Sensor websocket closed: %s", exc)

    @staticmethod
    def _unwrap(payload: Any) -> Optional[Tuple[str, Any]]:
        if isinstance(payload, dict):
            channel = payload.get("event")
            if isinstance(channel, str):
                return channel, payload.get("data")
            return None
        if isinstance(payload, list) and len(payload) == 2 and isinstance(payload[0], str):
            return payload[0], payload[1]
        return None

    async def _close_conn(self, conn: Any) -> None:
        if conn is None:
            return
        if self._conn is conn:
            self._conn = None
        try:
            await conn.close()
        except Exception as e:
            logger.warning("Error closing websocket connection: %s", e)


__all__ = ["SensorWebSocketTransport"]
