"""Central configuration for the health-screening kiosk controller."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .state import Stage

ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class StabilitySettings(BaseModel):
    """Stage ordering and convergence policy."""
    stages: List[Stage] = Field(
        default_factory=lambda: [Stage.TEMPERATURE, Stage.ALCOHOL],
        description="Ordered stage sequence for one screening pass",
    )
    threshold: int = Field(7, ge=1, description="Consecutive accepted readings needed to complete a stage")

    @field_validator("stages")
    @classmethod
    def _unique_stages(cls, value: List[Stage]) -> List[Stage]:
        if not value:
            raise ValueError("stage sequence must not be empty")
        if len(set(value)) != len(value):
            raise ValueError("stage sequence must not repeat a stage")
        return value


class LivenessSettings(BaseModel):
    """Telemetry silence detection."""
    timeout_seconds: float = Field(15.0, gt=0, description="Silence that aborts the session")
    countdown_seconds: int = Field(15, ge=0, description="Advisory countdown shown to the UI")
    tick_seconds: float = Field(1.0, gt=0, description="Countdown tick interval")


class TransportSettings(BaseModel):
    """Sensor transport connection policy."""
    sensor_ws_url: Optional[str] = Field(None, description="Sensor hub WebSocket URL (disabled when empty)")
    reconnect_attempts: int = Field(20, ge=0, description="Bounded automatic reconnection attempts")
    reconnect_delay_seconds: float = Field(10.0, ge=0, description="Fixed delay between reconnection attempts")


class SubmissionSettings(BaseModel):
    """Result submission endpoint."""
    path: str = Field("/health", description="Submission endpoint path on the backend")
    timeout_seconds: float = Field(15.0, gt=0, description="HTTP timeout for one submission attempt")


class LifecycleSettings(BaseModel):
    """Session restart behaviour."""
    auto_restart: bool = Field(True, description="Start a fresh session after a successful submission")
    settle_delay_seconds: float = Field(3.0, ge=0, description="Delay before the next session starts")


class MessageSettings(BaseModel):
    """Fixed user-facing strings."""
    timeout: str = Field(
        "Не удается отследить данные, попробуйте еще раз или свяжитесь с администрацией.",
        description="Shown when telemetry goes silent",
    )
    identity_missing: str = Field("Face ID не найден", description="Shown when no identity token is stored")
    not_completed: str = Field("Проверка еще не завершена", description="Shown when submit is called too early")
    submission_failed: str = Field(
        "Не удалось отправить результаты, попробуйте еще раз",
        description="Shown when the backend rejects or cannot be reached",
    )
    verdict_normal: str = Field("Трезвый", description="Display label for a normal verdict")
    verdict_abnormal: str = Field("Пьяный", description="Display label for an abnormal verdict")
    verdict_unknown: str = Field("Не определено", description="Display label for an indeterminate verdict")


class PerformanceSettings(BaseModel):
    """Queue tuning."""
    ui_event_queue_size: int = Field(16, ge=1, description="Max buffered UI events per subscriber")


class Settings(BaseSettings):
    """Environment-driven settings for controller subsystems."""

    # Backend & API
    backend_api_url: str = Field("http://localhost:8080", description="Backend REST base URL")

    # Controller HTTP Server
    controller_host: str = Field("0.0.0.0", description="Host interface for local FastAPI server")
    controller_port: int = Field(5000, description="Port for FastAPI server")

    # Local durable record
    record_path: Path = Field(ROOT_DIR / "tmp" / "kiosk.json", description="Local key-value record file")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    # Nested Configuration Objects
    stability: StabilitySettings = Field(default_factory=StabilitySettings, description="Stage sequence and stability")
    liveness: LivenessSettings = Field(default_factory=LivenessSettings, description="Liveness monitor")
    transport: TransportSettings = Field(default_factory=TransportSettings, description="Sensor transports")
    submission: SubmissionSettings = Field(default_factory=SubmissionSettings, description="Result submission")
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings, description="Session lifecycle")
    messages: MessageSettings = Field(default_factory=MessageSettings, description="User-facing messages")
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings, description="Performance tuning")

    @field_validator("backend_api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    model_config = SettingsConfigDict(
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()
