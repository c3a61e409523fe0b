"""HTTP client for the screening results endpoint."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from ..config import Settings
from ..errors import SubmissionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Ack:
    """Backend acknowledgement of a submission."""

    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


class HealthApiClient:
    """Thin wrapper around the backend REST API."""

    def __init__(self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=self.settings.backend_api_url,
            timeout=self.settings.submission.timeout_seconds,
            transport=transport,
        )

    async def post_results(self, payload: Dict[str, Any]) -> Ack:
        """POST the finalised results; raises SubmissionError on any failure."""
        user_message = self.settings.messages.submission_failed
        path = self.settings.submission.path
        try:
            logger.info("backend.post_results: submitting results to %s", path)
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("backend.post_results: request timeout")
            raise SubmissionError(user_message, log_message="submission timed out") from e
        except httpx.NetworkError as e:
            logger.error("backend.post_results: network error - %s", e)
            raise SubmissionError(user_message, log_message=f"network error: {e}") from e
        except httpx.HTTPStatusError as e:
            logger.error("backend.post_results: HTTP %d - %s", e.response.status_code, e.response.text)
            raise SubmissionError(
                user_message,
                log_message=f"HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("backend.post_results: transport error - %s", e)
            raise SubmissionError(user_message, log_message=str(e)) from e

        body: Dict[str, Any] = {}
        if response.content:
            try:
                parsed = response.json()
                if isinstance(parsed, dict):
                    body = parsed
            except ValueError:
                logger.debug("backend.post_results: non-JSON acknowledgement body")
        return Ack(status_code=response.status_code, body=body)

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning("Error closing HTTP client: %s", e)


__all__ = ["Ack", "HealthApiClient"]
