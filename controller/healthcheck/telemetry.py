"""Normalisation of raw transport payloads into stage-tagged readings.

Every transport speaks its own vocabulary: the sensor hub WebSocket emits
named events (``temperature``, ``alcohol``, ``camera``) while the push
transport delivers database-style paths (``sensors/temperature``). All of
that is mapped here so the sequencer only ever sees :class:`Reading`.
"""
from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from .state import Stage, StageValue, Verdict

logger = logging.getLogger(__name__)

SOCKET_TRANSPORT = "socket"
PUSH_TRANSPORT = "push"

AuxiliaryCallback = Callable[[str, Mapping[str, Any]], None]

_TEMPERATURE_KEYS: Tuple[str, ...] = ("temperature", "temp", "value")
_VERDICT_KEYS: Tuple[str, ...] = ("alcoholLevel", "alcohol", "verdict", "value")
_FINAL_FLAGS: Tuple[str, ...] = ("final", "isFinal", "complete", "measurementComplete")

_DETERMINATE_VERDICTS: Dict[str, Verdict] = {
    "normal": Verdict.NORMAL,
    "abnormal": Verdict.ABNORMAL,
}

# channel -> stage; None marks the auxiliary status channel
_CHANNELS: Dict[str, Dict[str, Optional[Stage]]] = {
    SOCKET_TRANSPORT: {
        "temperature": Stage.TEMPERATURE,
        "alcohol": Stage.ALCOHOL,
        "camera": None,
    },
    PUSH_TRANSPORT: {
        "sensors/temperature": Stage.TEMPERATURE,
        "sensors/alcohol": Stage.ALCOHOL,
        "sensors/camera": None,
    },
}


@dataclass(frozen=True)
class Reading:
    """Canonical measurement for one stage."""

    stage: Stage
    value: StageValue
    is_final: bool
    received_at: float
    transport: str = SOCKET_TRANSPORT
    channel: str = ""

    @property
    def determinate(self) -> bool:
        if isinstance(self.value, Verdict):
            return self.value.determinate
        return True


@dataclass(frozen=True)
class Rejected:
    """A payload that could not be turned into a reading."""

    reason: str
    transport: str
    channel: str


NormalizedEvent = Union[Reading, Rejected]


class TelemetryNormalizer:
    """Maps ``(payload, transport, channel)`` onto :class:`Reading` or :class:`Rejected`."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        on_auxiliary: Optional[AuxiliaryCallback] = None,
    ) -> None:
        self._clock = clock
        self._on_auxiliary = on_auxiliary

    @staticmethod
    def channels_for(transport: str, stage: Stage) -> List[str]:
        """Channels on ``transport`` that carry readings for ``stage``."""
        table = _CHANNELS.get(transport, {})
        return [channel for channel, bound in table.items() if bound is stage]

    @staticmethod
    def auxiliary_channels(transport: str) -> List[str]:
        table = _CHANNELS.get(transport, {})
        return [channel for channel, bound in table.items() if bound is None]

    def normalize(
        self,
        raw_event: Any,
        transport: str,
        channel: str,
        *,
        prefer: Optional[Stage] = None,
    ) -> NormalizedEvent:
        """Normalise one inbound event.

        ``prefer`` only matters for the auxiliary channel, whose payloads may
        embed measurements for more than one stage.
        """
        channel = self._canonical_channel(transport, channel)
        table = _CHANNELS.get(transport)
        if table is None:
            return self._reject("unknown transport", transport, channel)
        if channel not in table:
            return self._reject("unknown channel", transport, channel)
        if not isinstance(raw_event, Mapping) or not raw_event:
            return self._reject("empty or malformed payload", transport, channel)

        stage = table[channel]
        if stage is None:
            return self._normalize_auxiliary(raw_event, transport, channel, prefer)
        if stage is Stage.TEMPERATURE:
            return self._normalize_temperature(raw_event, transport, channel)
        return self._normalize_verdict(raw_event, transport, channel)

    # ------------------------------------------------------------------

    def _normalize_temperature(self, payload: Mapping[str, Any], transport: str, channel: str) -> NormalizedEvent:
        raw = _first_present(payload, _TEMPERATURE_KEYS)
        if raw is _MISSING:
            return self._reject("missing temperature", transport, channel)
        value = _coerce_float(raw)
        if value is None:
            return self._reject(f"temperature not numeric: {raw!r}", transport, channel)
        return Reading(
            stage=Stage.TEMPERATURE,
            value=value,
            is_final=_is_flagged_final(payload),
            received_at=self._clock(),
            transport=transport,
            channel=channel,
        )

    def _normalize_verdict(self, payload: Mapping[str, Any], transport: str, channel: str) -> NormalizedEvent:
        raw = _first_present(payload, _VERDICT_KEYS)
        if raw is _MISSING:
            return self._reject("missing verdict", transport, channel)
        verdict = _coerce_verdict(raw)
        if not verdict.determinate:
            logger.debug("Indeterminate verdict %r on %s/%s", raw, transport, channel)
        return Reading(
            stage=Stage.ALCOHOL,
            value=verdict,
            # a determinate verdict is authoritative on its own
            is_final=verdict.determinate,
            received_at=self._clock(),
            transport=transport,
            channel=channel,
        )

    def _normalize_auxiliary(
        self,
        payload: Mapping[str, Any],
        transport: str,
        channel: str,
        prefer: Optional[Stage],
    ) -> NormalizedEvent:
        if self._on_auxiliary is not None:
            try:
                self._on_auxiliary(channel, payload)
            except Exception:
                logger.exception("Auxiliary status callback failed")

        has_temperature = any(key in payload for key in ("temperature", "temp"))
        has_verdict = any(key in payload for key in ("alcoholLevel", "alcohol", "verdict"))
        if has_temperature and (prefer is Stage.TEMPERATURE or not has_verdict):
            return self._normalize_temperature(payload, transport, channel)
        if has_verdict:
            return self._normalize_verdict(payload, transport, channel)
        if has_temperature:
            return self._normalize_temperature(payload, transport, channel)
        return self._reject("auxiliary status", transport, channel, level=logging.DEBUG)

    @staticmethod
    def _canonical_channel(transport: str, channel: str) -> str:
        channel = (channel or "").strip()
        if transport == PUSH_TRANSPORT:
            return channel.strip("/")
        return channel

    @staticmethod
    def _reject(reason: str, transport: str, channel: str, *, level: int = logging.WARNING) -> Rejected:
        logger.log(level, "Rejected telemetry on %s/%s: %s", transport, channel or "<none>", reason)
        return Rejected(reason=reason, transport=transport, channel=channel)


_MISSING = object()


def _first_present(payload: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return _MISSING


def _coerce_float(raw: Any) -> Optional[float]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip().replace(",", "."))
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(value):
        return None
    return value


def _coerce_verdict(raw: Any) -> Verdict:
    if not isinstance(raw, str):
        return Verdict.INDETERMINATE
    return _DETERMINATE_VERDICTS.get(raw.strip().lower(), Verdict.INDETERMINATE)


def _is_flagged_final(payload: Mapping[str, Any]) -> bool:
    return any(payload.get(flag) is True for flag in _FINAL_FLAGS)


__all__ = [
    "NormalizedEvent",
    "PUSH_TRANSPORT",
    "Reading",
    "Rejected",
    "SOCKET_TRANSPORT",
    "TelemetryNormalizer",
]
