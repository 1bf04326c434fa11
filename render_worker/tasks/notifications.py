"""
Webhook notifications for terminal job outcomes.

One delivery attempt per terminal transition, bounded by a timeout. Delivery
failures are logged and swallowed: a webhook never changes a job's outcome.

Payloads:
- completed: {"jobId": ..., "status": "completed", "outputUrl": ...}
- failed:    {"jobId": ..., "status": "failed", "error": {...}}
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ..schemas.job import JobError, JobStatus

logger = logging.getLogger(__name__)

USER_AGENT = "VideoRenderPlatform/1.0"
DEFAULT_TIMEOUT_SECONDS = 10.0


def completed_payload(job_id: str, output_url: str) -> Dict[str, Any]:
    return {
        "jobId": job_id,
        "status": JobStatus.COMPLETED.value,
        "outputUrl": output_url,
    }


def failed_payload(job_id: str, error: JobError) -> Dict[str, Any]:
    return {
        "jobId": job_id,
        "status": JobStatus.FAILED.value,
        "error": error.model_dump(exclude_none=True),
    }


class WebhookNotifier:
    """Best-effort JSON POST to a caller-supplied URL."""

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.Client] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.http_client = http_client or httpx.Client(
            timeout=timeout_seconds,
            headers={"User-Agent": USER_AGENT},
        )

    def notify(self, url: str, payload: Dict[str, Any]) -> bool:
        """
        Send one webhook.

        Returns:
            True if the endpoint answered 2xx, False otherwise. Never raises.
        """
        try:
            response = self.http_client.post(url, json=payload, timeout=self.timeout_seconds)
            response.raise_for_status()
        except Exception as e:
            logger.warning(f"Failed to send webhook to {url}: {e}")
            return False

        logger.info(f"Webhook sent to {url}")
        return True

    def close(self) -> None:
        self.http_client.close()
