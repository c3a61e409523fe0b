"""Logging bootstrap for the controller service."""
from __future__ import annotations

from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# lifecycle and submission records also land in a separate audit file
AUDIT_LOGGERS = ("healthcheck.session_manager", "healthcheck.submission")


def _nightly_file(path: Path, level: str, retention_days: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "default",
        "level": level,
        "filename": str(path),
        "when": "midnight",
        "backupCount": max(int(retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> None:
    """Console plus nightly rotated runtime log; session outcomes also go to ``screening-sessions.log``."""

    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[2] / "logs"
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    level = level.upper()

    loggers: Dict[str, Any] = {
        # request/frame chatter from the client libraries
        "httpx": {"level": "WARNING"},
        "httpcore": {"level": "WARNING"},
        "websockets": {"level": "WARNING"},
    }
    for name in AUDIT_LOGGERS:
        loggers[name] = {"level": level, "handlers": ["session_audit"], "propagate": True}

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                },
                "runtime_file": _nightly_file(log_dir / "controller-runtime.log", level, retention_days),
                "session_audit": _nightly_file(log_dir / "screening-sessions.log", "INFO", retention_days),
            },
            "loggers": loggers,
            "root": {"level": level, "handlers": ["console", "runtime_file"]},
        }
    )


__all__ = ["AUDIT_LOGGERS", "configure_logging"]
