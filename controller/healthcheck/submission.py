"""Exactly-once submission of finalised screening results."""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from .backend.http_client import Ack
from .config import MessageSettings
from .errors import PreconditionError, SessionFlowError, SubmissionError
from .records import LocalRecordStore, ResultRecord
from .state import SessionSnapshot, Stage, SubmissionStatus, Verdict

logger = logging.getLogger(__name__)


class ResultsClient(Protocol):
    async def post_results(self, payload: Dict[str, Any]) -> Ack:
        ...


class OutcomeKind(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PRECONDITION_FAILED = "precondition_failed"
    IGNORED = "ignored"
    STALE = "stale"


@dataclass(frozen=True)
class SubmissionOutcome:
    kind: OutcomeKind
    ack: Optional[Ack] = None
    error: Optional[SessionFlowError] = None
    record: Optional[ResultRecord] = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.SUCCEEDED


def build_payload(snapshot: SessionSnapshot, identity_token: str) -> Dict[str, Any]:
    """Request body expected by the backend ``/health`` endpoint."""
    temperature = snapshot.value_for(Stage.TEMPERATURE)
    verdict = snapshot.value_for(Stage.ALCOHOL)
    return {
        "temperatureData": {"temperature": temperature},
        "alcoholData": {"alcoholLevel": verdict.value if isinstance(verdict, Verdict) else None},
        "faceId": identity_token,
    }


class SubmissionGuard:
    """Packages results and submits them at most once at a time.

    A second call while a submission is outstanding is a no-op. Failures
    release the guard so the operator can retry; nothing is retried
    automatically.
    """

    def __init__(
        self,
        client: ResultsClient,
        record_store: Optional[LocalRecordStore] = None,
        messages: Optional[MessageSettings] = None,
    ) -> None:
        self._client = client
        self._record_store = record_store
        self._messages = messages or MessageSettings()
        self._status = SubmissionStatus.IDLE
        self._in_flight = False
        self._epoch = 0
        self.attempts = 0

    @property
    def status(self) -> SubmissionStatus:
        return self._status

    @property
    def epoch(self) -> int:
        return self._epoch

    def reset(self) -> None:
        """Start a new session. An attempt still in flight is dropped when it returns."""
        if self._in_flight:
            logger.warning("Resetting submission guard while a submission is in flight")
        self._epoch += 1
        self._status = SubmissionStatus.IDLE
        self._in_flight = False
        self.attempts = 0

    async def submit(self, snapshot: SessionSnapshot, identity_token: Optional[str]) -> SubmissionOutcome:
        if self._in_flight:
            logger.info("Submission already in flight; ignoring duplicate request")
            return SubmissionOutcome(kind=OutcomeKind.IGNORED)
        if self._status is SubmissionStatus.SUCCEEDED:
            logger.info("Results already submitted for this session; ignoring")
            return SubmissionOutcome(kind=OutcomeKind.IGNORED)

        if not snapshot.completed:
            error = PreconditionError(self._messages.not_completed, log_message="session not completed")
            logger.warning("Submission refused: %s", error)
            return SubmissionOutcome(kind=OutcomeKind.PRECONDITION_FAILED, error=error)
        if not identity_token:
            error = PreconditionError(self._messages.identity_missing, log_message="identity token not found")
            logger.warning("Submission refused: %s", error)
            return SubmissionOutcome(kind=OutcomeKind.PRECONDITION_FAILED, error=error)

        epoch = self._epoch
        self._in_flight = True
        self._status = SubmissionStatus.IN_FLIGHT
        self.attempts += 1
        try:
            ack = await self._client.post_results(build_payload(snapshot, identity_token))
        except SubmissionError as exc:
            if epoch != self._epoch:
                return self._stale(snapshot, error=exc)
            self._status = SubmissionStatus.FAILED
            logger.error("Submission attempt %d failed: %s", self.attempts, exc)
            return SubmissionOutcome(kind=OutcomeKind.FAILED, error=exc)
        except Exception as exc:
            error = SubmissionError(self._messages.submission_failed, log_message=str(exc))
            if epoch != self._epoch:
                return self._stale(snapshot, error=error)
            self._status = SubmissionStatus.FAILED
            logger.exception("Unexpected submission error: %s", exc)
            return SubmissionOutcome(kind=OutcomeKind.FAILED, error=error)
        finally:
            # after a reset the flag belongs to the next session
            if epoch == self._epoch:
                self._in_flight = False

        if epoch != self._epoch:
            return self._stale(snapshot, ack=ack)

        self._status = SubmissionStatus.SUCCEEDED
        logger.info("Submission accepted (HTTP %d)", ack.status_code)
        record = ResultRecord(
            temperature=snapshot.value_for(Stage.TEMPERATURE),
            alcohol=snapshot.value_for(Stage.ALCOHOL),
            identity_token=identity_token,
            session_number=snapshot.session_number,
        )
        await self._persist(record)
        return SubmissionOutcome(kind=OutcomeKind.SUCCEEDED, ack=ack, record=record)

    @staticmethod
    def _stale(
        snapshot: SessionSnapshot,
        *,
        ack: Optional[Ack] = None,
        error: Optional[SessionFlowError] = None,
    ) -> SubmissionOutcome:
        logger.warning(
            "Dropping submission result for session %d: the guard was reset while it was in flight",
            snapshot.session_number,
        )
        return SubmissionOutcome(kind=OutcomeKind.STALE, ack=ack, error=error)

    async def _persist(self, record: ResultRecord) -> None:
        if self._record_store is None:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._record_store.write_results, record)
        except Exception:
            logger.exception("Failed to persist results record")


__all__ = ["OutcomeKind", "ResultsClient", "SubmissionGuard", "SubmissionOutcome", "build_payload"]
