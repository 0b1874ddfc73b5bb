"""Completion webhook delivery with bounded linear backoff.

Retry math (``retry_delay``/``should_retry``) is kept separate from the
sender so it can be tested without I/O. Delivery is best-effort: exhausting
the retries is logged and swallowed, it never changes a job's status.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from .config import WebhookConfig
from .errors import DeliveryFailure
from .models import GeneratedOutput, SourceMetadata

logger = logging.getLogger(__name__)


def retry_delay(attempt: int, base_delay_s: float, max_delay_s: float) -> float:
    """Seconds to wait after failed attempt ``attempt`` (1-based)."""
    return min(attempt * base_delay_s, max_delay_s)


def should_retry(attempt: int, max_retries: int) -> bool:
    """Whether failed attempt ``attempt`` (1-based) earns another try."""
    return attempt <= max_retries


def redact_url(url: str) -> str:
    """Drop credentials, query and fragment; callback secrets travel there."""
    parts = urlsplit(url)
    netloc = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit((parts.scheme, netloc, parts.path, "", ""))


def completed_payload(
    job_id: str,
    media_ref: str,
    outputs: List[GeneratedOutput],
    source_metadata: Optional[SourceMetadata],
) -> Dict[str, Any]:
    return {
        "jobId": job_id,
        "mediaRef": media_ref,
        "status": "completed",
        "outputs": [o.model_dump() for o in outputs],
        "metadata": {"source": source_metadata.model_dump() if source_metadata else None},
    }


def failed_payload(job_id: str, media_ref: str, error: str) -> Dict[str, Any]:
    return {
        "jobId": job_id,
        "mediaRef": media_ref,
        "status": "failed",
        "error": error,
    }


class WebhookNotifier:
    """POSTs JSON payloads to operator-supplied callback URLs.

    Example:
        >>> notifier = WebhookNotifier(WebhookConfig(max_retries=2))
        >>> notifier.notify("https://example.com/hook?secret=abc", {"jobId": "1"})
        True
    """

    def __init__(
        self,
        config: Optional[WebhookConfig] = None,
        client_factory: Optional[Callable[[], httpx.Client]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or WebhookConfig()
        self._client_factory = client_factory or (
            lambda: httpx.Client(timeout=self.config.timeout_s)
        )
        self._sleep = sleep

    def notify(self, url: Optional[str], payload: Dict[str, Any]) -> bool:
        """Deliver ``payload`` to ``url``.

        Returns:
            True if some attempt got a 2xx response, False otherwise
            (including when no URL was given or webhooks are disabled)
        """
        if not url or not self.config.enabled:
            return False

        safe_url = redact_url(url)
        attempt = 1
        with self._client_factory() as client:
            while True:
                try:
                    response = client.post(
                        url,
                        json=payload,
                        headers={"Content-Type": "application/json"},
                        timeout=self.config.timeout_s,
                    )
                    if response.is_success:
                        logger.debug(
                            "Webhook delivered", extra={"url": safe_url, "attempt": attempt}
                        )
                        return True
                    reason = f"Webhook responded with status {response.status_code}"
                except httpx.TimeoutException:
                    reason = f"Webhook timed out after {self.config.timeout_s}s"
                except httpx.HTTPError as e:
                    reason = f"{type(e).__name__}: {e}"

                if not should_retry(attempt, self.config.max_retries):
                    failure = DeliveryFailure(safe_url, attempt, reason)
                    logger.warning(str(failure), extra={"url": safe_url, "attempts": attempt})
                    return False

                delay = retry_delay(attempt, self.config.base_delay_s, self.config.max_delay_s)
                logger.info(
                    "Webhook attempt %d failed (%s), retrying in %.1fs", attempt, reason, delay
                )
                self._sleep(delay)
                attempt += 1
