"""Ordered-stage state machine for one screening pass."""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from .liveness import LivenessMonitor
from .records import IdentityProvider
from .stability import StabilityEvaluator
from .state import SessionSnapshot, Stage, StageValue
from .telemetry import Reading

logger = logging.getLogger(__name__)

ChangeListener = Callable[[SessionSnapshot], Awaitable[None]]
CompletionHandler = Callable[[SessionSnapshot], Awaitable[None]]


@dataclass(frozen=True)
class ReceiveOutcome:
    accepted: bool
    stage_complete: bool = False
    completed: bool = False
    reason: Optional[str] = None


class StageSequencer:
    """Owns the session state and drives stage transitions.

    States are the entries of ``stages`` plus an implicit terminal
    "completed" state. Readings for any stage other than the active one are
    ignored without touching the state.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        evaluator: StabilityEvaluator,
        monitor: LivenessMonitor,
        *,
        identity_provider: Optional[IdentityProvider] = None,
        on_completed: Optional[CompletionHandler] = None,
    ) -> None:
        if not stages:
            raise ValueError("stage sequence must not be empty")
        if len(set(stages)) != len(stages):
            raise ValueError("stage sequence must not repeat a stage")
        self._stages: Tuple[Stage, ...] = tuple(stages)
        self._evaluator = evaluator
        self._monitor = monitor
        self._identity_provider = identity_provider
        self._on_completed = on_completed
        self._listeners: List[ChangeListener] = []

        self._current: Optional[Stage] = self._stages[0]
        self._counter = 0
        self._latest: Dict[Stage, StageValue] = {}
        self._finalized: Set[Stage] = set()
        self._completed = False
        self._seconds_remaining = 0
        self._session_number = 1

    # ------------------------------------------------------------------
    # Read side

    @property
    def stages(self) -> Tuple[Stage, ...]:
        return self._stages

    @property
    def current_stage(self) -> Optional[Stage]:
        return self._current

    @property
    def stability_counter(self) -> int:
        return self._counter

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def session_number(self) -> int:
        return self._session_number

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            stages=self._stages,
            current_stage=self._current,
            completed=self._completed,
            stability_counter=self._counter,
            stability_threshold=self._evaluator.threshold,
            latest_values=dict(self._latest),
            finalized=tuple(stage for stage in self._stages if stage in self._finalized),
            identity_token=self._identity_provider.get_token() if self._identity_provider else None,
            seconds_remaining=self._seconds_remaining,
            session_number=self._session_number,
        )

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Transitions

    async def receive(self, reading: Reading) -> ReceiveOutcome:
        if self._completed:
            return ReceiveOutcome(accepted=False, reason="session completed")
        if reading.stage is not self._current:
            logger.debug("Discarding %s reading while on %s", reading.stage.value, self._current.value)
            return ReceiveOutcome(accepted=False, reason="cross-stage")

        result = self._evaluator.evaluate(reading, self._counter, self._current)
        if not result.accepted:
            return ReceiveOutcome(accepted=False, reason="not accepted")

        # accept, liveness reset and counter update happen without yielding
        self._monitor.on_reading_accepted()
        self._counter = result.counter
        self._latest[reading.stage] = reading.value
        if result.stage_complete and reading.is_final:
            self._finalized.add(reading.stage)

        await self._notify()
        if not result.stage_complete:
            return ReceiveOutcome(accepted=True)

        logger.info("Stage %s converged (counter=%d, final=%s)", reading.stage.value, self._counter, reading.is_final)
        completed = await self.advance()
        return ReceiveOutcome(accepted=True, stage_complete=True, completed=completed)

    async def advance(self) -> bool:
        """Move to the next stage; returns True when the pass has completed."""
        if self._completed:
            logger.debug("advance() ignored: session already completed")
            return False

        index = self._stages.index(self._current)
        if index < len(self._stages) - 1:
            previous = self._current
            self._current = self._stages[index + 1]
            self._counter = 0
            logger.info("Stage %s -> %s", previous.value, self._current.value)
            await self._notify()
            return False

        self._completed = True
        self._current = None
        logger.info("All stages completed")
        snapshot = self.snapshot()
        await self._notify(snapshot)
        if self._on_completed is not None:
            await self._on_completed(snapshot)
        return True

    async def set_stage(self, stage: Stage) -> None:
        """Manual override; skips stability accounting for the left stage."""
        if stage not in self._stages:
            raise ValueError(f"stage {stage!r} is not part of this session")
        logger.info("Manual stage override -> %s", stage.value)
        self._current = stage
        self._counter = 0
        self._completed = False
        self._finalized.discard(stage)
        await self._notify()

    async def set_seconds_remaining(self, seconds: int) -> None:
        seconds = max(0, int(seconds))
        if seconds == self._seconds_remaining:
            return
        self._seconds_remaining = seconds
        await self._notify()

    def reset(self, *, session_number: Optional[int] = None) -> None:
        self._current = self._stages[0]
        self._counter = 0
        self._latest = {}
        self._finalized = set()
        self._completed = False
        self._seconds_remaining = 0
        if session_number is not None:
            self._session_number = session_number

    async def _notify(self, snapshot: Optional[SessionSnapshot] = None) -> None:
        if not self._listeners:
            return
        snapshot = snapshot or self.snapshot()
        for listener in list(self._listeners):
            try:
                await listener(snapshot)
            except Exception:
                logger.exception("Session state listener failed")


__all__ = ["ChangeListener", "CompletionHandler", "ReceiveOutcome", "StageSequencer"]
