"""Session orchestration for the screening kiosk."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .backend.http_client import HealthApiClient
from .backend.push import PushTransport
from .backend.transport import TelemetryTransport
from .backend.ws_client import SensorWebSocketTransport
from .config import Settings, get_settings
from .errors import LivenessTimeout
from .liveness import LivenessMonitor
from .records import IdentityProvider, LocalRecordStore, RecordIdentityProvider
from .sequencer import StageSequencer
from .stability import StabilityEvaluator
from .state import ControllerEvent, SessionSnapshot, Stage, Verdict
from .submission import OutcomeKind, ResultsClient, SubmissionGuard, SubmissionOutcome
from .telemetry import Rejected, TelemetryNormalizer

logger = logging.getLogger(__name__)

# (channel, stage); stage None marks an auxiliary channel
SubscriptionKey = Tuple[str, Optional[Stage]]


@dataclass
class SessionResources:
    """Everything the manager must release when a session ends."""

    transports: List[TelemetryTransport] = field(default_factory=list)
    subscriptions: Dict[SubscriptionKey, TelemetryTransport] = field(default_factory=dict)
    subscribed_stage: Optional[Stage] = None
    countdown_task: Optional[asyncio.Task[None]] = None
    restart_task: Optional[asyncio.Task[None]] = None
    stage_started_at: float = 0.0


class SessionManager:
    """Coordinates transports, the stage sequencer, submission and UI updates."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        transports: Optional[Sequence[TelemetryTransport]] = None,
        identity_provider: Optional[IdentityProvider] = None,
        client: Optional[ResultsClient] = None,
        record_store: Optional[LocalRecordStore] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.record_store = record_store or LocalRecordStore(self.settings.record_path)
        self.identity_provider = identity_provider or RecordIdentityProvider(self.record_store)
        self._owns_client = client is None
        self._client = client or HealthApiClient(self.settings)

        if transports is None:
            transports = self._default_transports()
        self._resources = SessionResources(transports=list(transports))
        self.push_transport: Optional[PushTransport] = next(
            (t for t in self._resources.transports if isinstance(t, PushTransport)), None
        )

        self._normalizer = TelemetryNormalizer(on_auxiliary=self._handle_auxiliary_status)
        self._monitor = LivenessMonitor(self.settings.liveness.timeout_seconds, self._handle_liveness_timeout)
        self._sequencer = StageSequencer(
            self.settings.stability.stages,
            StabilityEvaluator(self.settings.stability.threshold),
            self._monitor,
            identity_provider=self.identity_provider,
            on_completed=self._handle_completed,
        )
        self._sequencer.add_listener(self._handle_state_change)
        self._guard = SubmissionGuard(self._client, self.record_store, self.settings.messages)

        self._ui_subscribers: List[asyncio.Queue[ControllerEvent]] = []
        self._active = False
        self._session_number = 0
        self._last_outcome: Optional[SubmissionOutcome] = None

    def _default_transports(self) -> List[TelemetryTransport]:
        transports: List[TelemetryTransport] = [PushTransport()]
        url = self.settings.transport.sensor_ws_url
        if url:
            transports.append(
                SensorWebSocketTransport(
                    url,
                    reconnect_attempts=self.settings.transport.reconnect_attempts,
                    reconnect_delay=self.settings.transport.reconnect_delay_seconds,
                )
            )
        else:
            logger.info("No sensor websocket configured; accepting pushed telemetry only")
        return transports

    # ------------------------------------------------------------------
    # Public surface

    @property
    def active(self) -> bool:
        return self._active

    @property
    def session_number(self) -> int:
        return self._session_number

    @property
    def sequencer(self) -> StageSequencer:
        return self._sequencer

    @property
    def monitor(self) -> LivenessMonitor:
        return self._monitor

    @property
    def guard(self) -> SubmissionGuard:
        return self._guard

    @property
    def last_outcome(self) -> Optional[SubmissionOutcome]:
        return self._last_outcome

    @property
    def subscription_table(self) -> Dict[SubscriptionKey, TelemetryTransport]:
        return dict(self._resources.subscriptions)

    def snapshot(self) -> SessionSnapshot:
        return dataclasses.replace(self._sequencer.snapshot(), submission_status=self._guard.status)

    def snapshot_dict(self) -> Dict[str, Any]:
        return self.snapshot().to_dict(self._verdict_labels())

    async def start(self) -> None:
        logger.info("Starting session manager")
        await self._start_session()

    async def stop(self) -> None:
        logger.info("Stopping session manager")
        await self._cancel_restart()
        await self._teardown()
        if self._owns_client and isinstance(self._client, HealthApiClient):
            await self._client.aclose()
        logger.info("Session manager stopped")

    async def restart(self) -> None:
        """Tear down whatever is running and begin a fresh session."""
        await self._cancel_restart()
        await self._teardown()
        await self._start_session()

    async def abort(self, reason: str) -> None:
        if not self._active:
            return
        logger.warning("Session %d aborted: %s", self._session_number, reason)
        await self._teardown()
        self._broadcast(
            ControllerEvent(type="session_aborted", stage=None, data={"reason": reason})
        )

    async def advance(self) -> bool:
        if not self._active:
            logger.info("advance() ignored: no active session")
            return False
        return await self._sequencer.advance()

    async def set_stage(self, stage: Stage) -> bool:
        if not self._active:
            logger.info("set_stage(%s) ignored: no active session", stage.value)
            return False
        await self._sequencer.set_stage(stage)
        return True

    async def submit(self) -> SubmissionOutcome:
        """Submit the completed session; also the operator retry path."""
        snapshot = self.snapshot()
        token = self.identity_provider.get_token()
        outcome = await self._guard.submit(snapshot, token)
        if outcome.kind in (OutcomeKind.IGNORED, OutcomeKind.STALE):
            # a stale outcome belongs to a session that was restarted meanwhile
            return outcome
        self._last_outcome = outcome
        await self._publish_outcome(outcome)
        return outcome

    def set_identity(self, token: Optional[str]) -> None:
        setter = getattr(self.identity_provider, "set_token", None)
        if setter is None:
            raise TypeError("identity provider is read-only")
        setter(token)
        logger.info("Identity token %s", "stored" if token else "cleared")

    def register_ui(self) -> asyncio.Queue[ControllerEvent]:
        queue: asyncio.Queue[ControllerEvent] = asyncio.Queue(maxsize=self.settings.performance.ui_event_queue_size)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[ControllerEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    # ------------------------------------------------------------------
    # Session lifecycle

    async def _start_session(self) -> None:
        self._session_number += 1
        self._sequencer.reset(session_number=self._session_number)
        self._guard.reset()
        self._monitor.reset()
        self._last_outcome = None
        self._resources.subscriptions.clear()
        self._resources.subscribed_stage = None
        self._resources.stage_started_at = time.monotonic()

        for transport in self._resources.transports:
            try:
                await transport.connect(self._handle_transport_event)
            except Exception as exc:
                # silence is caught by the liveness monitor
                logger.error("Failed to connect %s transport: %s", transport.name, exc)

        self._active = True
        self._sync_subscriptions()
        self._monitor.start()
        self._resources.countdown_task = asyncio.create_task(self._countdown_loop(), name="session-countdown")

        logger.info("Session %d started (stages=%s)", self._session_number,
                    ", ".join(stage.value for stage in self._sequencer.stages))
        snapshot = self.snapshot()
        self._broadcast(
            ControllerEvent(
                type="session_started",
                stage=snapshot.current_stage,
                data={"session_number": self._session_number},
            )
        )
        self._broadcast_state(snapshot)

    async def _teardown(self) -> None:
        self._active = False
        self._monitor.cancel()

        task = self._resources.countdown_task
        self._resources.countdown_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error stopping countdown task: %s", e)

        self._unsubscribe_all()
        for transport in self._resources.transports:
            try:
                await transport.disconnect()
            except Exception as exc:
                logger.warning("Error disconnecting %s transport: %s", transport.name, exc)

    def _schedule_restart(self) -> None:
        if not self.settings.lifecycle.auto_restart:
            return
        if self._resources.restart_task and not self._resources.restart_task.done():
            return
        self._resources.restart_task = asyncio.create_task(self._delayed_restart(), name="session-restart")

    async def _delayed_restart(self) -> None:
        delay = self.settings.lifecycle.settle_delay_seconds
        try:
            await asyncio.sleep(delay)
            self._resources.restart_task = None
            await self._teardown()
            await self._start_session()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Session restart failed: %s", exc)

    async def _cancel_restart(self) -> None:
        task = self._resources.restart_task
        self._resources.restart_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Subscriptions

    def _sync_subscriptions(self) -> None:
        """Rebuild the (channel, stage) table when the active stage changes."""
        stage = self._sequencer.current_stage
        if self._resources.subscriptions and stage is self._resources.subscribed_stage:
            return

        self._unsubscribe_all()
        if not self._active or stage is None:
            return

        table: Dict[SubscriptionKey, TelemetryTransport] = {}
        for transport in self._resources.transports:
            channels = self._normalizer.channels_for(transport.name, stage)
            aux = self._normalizer.auxiliary_channels(transport.name)
            for channel in channels:
                table[(channel, stage)] = transport
            for channel in aux:
                table[(channel, None)] = transport
            transport.subscribe(channels + aux)
        self._resources.subscriptions = table
        self._resources.subscribed_stage = stage
        logger.debug("Subscribed %d channel(s) for %s", len(table), stage.value)

    def _unsubscribe_all(self) -> None:
        for (channel, _), transport in self._resources.subscriptions.items():
            transport.unsubscribe([channel])
        self._resources.subscriptions = {}
        self._resources.subscribed_stage = None

    # ------------------------------------------------------------------
    # Callbacks

    async def _handle_transport_event(self, transport: str, channel: str, payload: Any) -> None:
        """Single entry point for every transport; never raises."""
        try:
            if not self._active:
                logger.debug("Dropping %s/%s event outside an active session", transport, channel)
                return
            event = self._normalizer.normalize(
                payload, transport, channel, prefer=self._sequencer.current_stage
            )
            if isinstance(event, Rejected):
                return
            await self._sequencer.receive(event)
        except Exception as exc:
            logger.exception("Error handling telemetry from %s/%s: %s", transport, channel, exc)

    def _handle_auxiliary_status(self, channel: str, payload: Any) -> None:
        logger.debug("Auxiliary status on %s: %s", channel, payload)
        self._broadcast(
            ControllerEvent(
                type="auxiliary",
                stage=self._sequencer.current_stage,
                data={"channel": channel, "status": dict(payload)},
            )
        )

    async def _handle_state_change(self, snapshot: SessionSnapshot) -> None:
        if snapshot.current_stage is not self._resources.subscribed_stage:
            self._resources.stage_started_at = time.monotonic()
        self._sync_subscriptions()
        self._broadcast_state(dataclasses.replace(snapshot, submission_status=self._guard.status))

    async def _handle_completed(self, snapshot: SessionSnapshot) -> None:
        logger.info("Session %d completed; submitting results", self._session_number)
        await self._teardown()
        await self.submit()

    async def _handle_liveness_timeout(self) -> None:
        if not self._active:
            return
        error = LivenessTimeout(self.settings.messages.timeout, log_message="telemetry silent")
        logger.error("Session %d timed out: %s", self._session_number, error)
        stage = self._sequencer.current_stage
        await self._teardown()
        self._broadcast(
            ControllerEvent(
                type="timed_out",
                stage=stage,
                data={"session_number": self._session_number},
                error=error.user_message,
            )
        )

    async def _publish_outcome(self, outcome: SubmissionOutcome) -> None:
        snapshot = self.snapshot()
        if outcome.kind is OutcomeKind.SUCCEEDED:
            ack = outcome.ack
            self._broadcast(
                ControllerEvent(
                    type="completed",
                    stage=None,
                    data={
                        "status_code": ack.status_code if ack else None,
                        "ack": ack.body if ack else {},
                        "results": outcome.record.model_dump(mode="json") if outcome.record else {},
                    },
                )
            )
            self._schedule_restart()
        elif outcome.kind is OutcomeKind.FAILED:
            self._broadcast(
                ControllerEvent(
                    type="submission_failed",
                    stage=None,
                    data={"retryable": getattr(outcome.error, "retryable", True)},
                    error=outcome.error.user_message if outcome.error else None,
                )
            )
        elif outcome.kind is OutcomeKind.PRECONDITION_FAILED:
            self._broadcast(
                ControllerEvent(
                    type="precondition_failed",
                    stage=snapshot.current_stage,
                    data={},
                    error=outcome.error.user_message if outcome.error else None,
                )
            )
        self._broadcast_state(snapshot)

    async def _countdown_loop(self) -> None:
        """Advisory per-stage countdown for the UI; never drives decisions."""
        total = self.settings.liveness.countdown_seconds
        tick = self.settings.liveness.tick_seconds
        try:
            while True:
                elapsed = time.monotonic() - self._resources.stage_started_at
                await self._sequencer.set_seconds_remaining(max(0, round(total - elapsed)))
                await asyncio.sleep(tick)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Countdown loop crashed: %s", exc)

    # ------------------------------------------------------------------
    # UI fan-out

    def _verdict_labels(self) -> Dict[Verdict, str]:
        messages = self.settings.messages
        return {
            Verdict.NORMAL: messages.verdict_normal,
            Verdict.ABNORMAL: messages.verdict_abnormal,
            Verdict.INDETERMINATE: messages.verdict_unknown,
        }

    def _broadcast_state(self, snapshot: SessionSnapshot) -> None:
        self._broadcast(
            ControllerEvent(
                type="state",
                stage=snapshot.current_stage,
                data=snapshot.to_dict(self._verdict_labels()),
            )
        )

    def _broadcast(self, event: ControllerEvent) -> None:
        """Broadcast event to all UI subscribers, dropping the oldest when full."""
        for queue in list(self._ui_subscribers):
            try:
                if queue.full():
                    try:
                        queue.get_nowait()
                    except QueueEmpty:
                        pass
                queue.put_nowait(event)
            except Exception as e:
                logger.warning("Failed to broadcast event to subscriber: %s", e)


__all__ = ["SessionManager", "SessionResources"]
