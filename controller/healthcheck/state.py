"""Shared controller state definitions for the screening kiosk."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union


class Stage(str, enum.Enum):
    """
    Screening stages in their default order:

    1. TEMPERATURE - Contactless thermometer, numeric stream
    2. ALCOHOL     - Breathalyser, closed-set verdict
    """
    TEMPERATURE = "TEMPERATURE"
    ALCOHOL = "ALCOHOL"


class Verdict(str, enum.Enum):
    """Breathalyser verdict. Only NORMAL and ABNORMAL are determinate."""
    NORMAL = "normal"
    ABNORMAL = "abnormal"
    INDETERMINATE = "indeterminate"

    @property
    def determinate(self) -> bool:
        return self is not Verdict.INDETERMINATE


class SubmissionStatus(str, enum.Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


StageValue = Union[float, Verdict]


@dataclass
class ControllerEvent:
    """Event payload distributed to UI clients over the local WebSocket."""

    type: str
    data: Dict[str, Any]
    stage: Optional[Stage]
    error: Optional[str] = None


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only projection of the session, published on every change."""

    stages: Tuple[Stage, ...]
    current_stage: Optional[Stage]
    completed: bool
    stability_counter: int
    stability_threshold: int
    latest_values: Mapping[Stage, StageValue] = field(default_factory=dict)
    finalized: Tuple[Stage, ...] = ()
    identity_token: Optional[str] = None
    seconds_remaining: int = 0
    session_number: int = 1
    submission_status: SubmissionStatus = SubmissionStatus.IDLE

    @property
    def progress(self) -> float:
        """Fraction of the active stage that has converged (0.0 - 1.0)."""
        if self.completed:
            return 1.0
        if self.current_stage in self.finalized:
            return 1.0
        return min(self.stability_counter / self.stability_threshold, 1.0)

    def value_for(self, stage: Stage) -> Optional[StageValue]:
        return self.latest_values.get(stage)

    def to_dict(self, verdict_labels: Optional[Mapping[Verdict, str]] = None) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for stage, value in self.latest_values.items():
            if isinstance(value, Verdict):
                values[stage.value] = {
                    "value": value.value,
                    "label": (verdict_labels or {}).get(value, value.value),
                }
            else:
                values[stage.value] = {"value": value}
        return {
            "stages": [stage.value for stage in self.stages],
            "current_stage": self.current_stage.value if self.current_stage else None,
            "completed": self.completed,
            "stability_counter": self.stability_counter,
            "stability_threshold": self.stability_threshold,
            "progress": round(self.progress, 3),
            "values": values,
            "has_identity": self.identity_token is not None,
            "seconds_remaining": self.seconds_remaining,
            "session_number": self.session_number,
            "submission_status": self.submission_status.value,
        }


__all__ = [
    "ControllerEvent",
    "SessionSnapshot",
    "Stage",
    "StageValue",
    "SubmissionStatus",
    "Verdict",
]
