"""Per-stage convergence policy."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .state import Stage
from .telemetry import Reading

DEFAULT_THRESHOLD = 7


@dataclass(frozen=True)
class StabilityResult:
    counter: int
    stage_complete: bool
    accepted: bool


class StabilityEvaluator:
    """Counts consecutive accepted readings for the active stage.

    Stability is a count of accepted events, not a statistical test: the
    stored value is always the latest reading. An authoritative reading
    (``is_final`` with a determinate value) completes the stage at once.
    """

    def __init__(self, threshold: int = DEFAULT_THRESHOLD) -> None:
        if threshold < 1:
            raise ValueError("stability threshold must be at least 1")
        self.threshold = threshold

    def evaluate(self, reading: Reading, counter: int, active_stage: Optional[Stage]) -> StabilityResult:
        counter = max(0, min(counter, self.threshold))
        if active_stage is None or reading.stage is not active_stage:
            return StabilityResult(counter=counter, stage_complete=False, accepted=False)

        if not reading.determinate:
            return StabilityResult(counter=counter, stage_complete=False, accepted=True)

        if reading.is_final:
            return StabilityResult(counter=counter, stage_complete=True, accepted=True)

        new_counter = min(counter + 1, self.threshold)
        return StabilityResult(
            counter=new_counter,
            stage_complete=new_counter >= self.threshold,
            accepted=True,
        )


__all__ = ["DEFAULT_THRESHOLD", "StabilityEvaluator", "StabilityResult"]
