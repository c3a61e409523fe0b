"""Local durable record and identity-token lookup.

The kiosk keeps one small JSON document on disk holding flat keys: the
identity token stored by the face identification step (``faceId``) and the
results of the last successful submission (``results``).
"""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Union

from pydantic import BaseModel, Field, ValidationError

from .state import Verdict

logger = logging.getLogger(__name__)

IDENTITY_KEY = "faceId"
RESULTS_KEY = "results"


class ResultRecord(BaseModel):
    """Finalised per-stage results, as written after a successful submission."""

    temperature: Optional[float] = Field(None, description="Last accepted temperature")
    alcohol: Optional[Verdict] = Field(None, description="Breathalyser verdict")
    identity_token: str = Field(..., description="Subject the results belong to")
    session_number: int = Field(1, ge=1, description="Kiosk session counter")
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class IdentityProvider(Protocol):
    def get_token(self) -> Optional[str]:
        ...


class LocalRecordStore:
    """Flat key-value JSON document, cached in memory after the first read."""

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._data: Optional[Dict[str, Any]] = None
        self._write_lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data
        if not self.path.exists():
            self._data = {}
            return self._data
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("record root must be an object")
            self._data = data
        except (OSError, ValueError) as e:
            logger.error("Failed to load local record %s: %s", self.path, e)
            self.path.unlink(missing_ok=True)
            self._data = {}
        return self._data

    def _flush(self) -> None:
        # results are written from an executor thread; serialise a snapshot, not the live dict
        snapshot = dict(self._data or {})
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, indent=2, ensure_ascii=False)
        tmp_path.replace(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._write_lock:
            self._load()[key] = value
            self._flush()

    def delete(self, key: str) -> None:
        with self._write_lock:
            data = self._load()
            if key in data:
                del data[key]
                self._flush()

    def reload(self) -> None:
        self._data = None

    def write_results(self, record: ResultRecord) -> None:
        self.set(RESULTS_KEY, record.model_dump(mode="json"))
        logger.info("Saved results record for session %d", record.session_number)

    def read_results(self) -> Optional[ResultRecord]:
        raw = self.get(RESULTS_KEY)
        if raw is None:
            return None
        try:
            return ResultRecord.model_validate(raw)
        except ValidationError as e:
            logger.error("Stored results record is invalid: %s", e)
            return None


class RecordIdentityProvider:
    """Reads the identity token stored by the face identification step."""

    def __init__(self, store: LocalRecordStore, key: str = IDENTITY_KEY) -> None:
        self.store = store
        self.key = key

    def get_token(self) -> Optional[str]:
        token = self.store.get(self.key)
        if isinstance(token, str) and token.strip():
            return token
        return None

    def set_token(self, token: Optional[str]) -> None:
        if token:
            self.store.set(self.key, token)
        else:
            self.store.delete(self.key)


class StaticIdentityProvider:
    def __init__(self, token: Optional[str]) -> None:
        self.token = token

    def get_token(self) -> Optional[str]:
        return self.token


__all__ = [
    "IDENTITY_KEY",
    "IdentityProvider",
    "LocalRecordStore",
    "RESULTS_KEY",
    "RecordIdentityProvider",
    "ResultRecord",
    "StaticIdentityProvider",
]
