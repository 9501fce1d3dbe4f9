"""Fire-and-forget telemetry for submission outcomes.

Every event is written as a structured log record. When TELEMETRY_URL is
configured the event is also POSTed as JSON from a small background pool,
so delivery never delays the HTTP response. Delivery failures are logged
and dropped.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from canvass.config import get_settings
from canvass.logging_config import get_logger, get_request_id

logger = get_logger(__name__)


class TelemetrySink:
    """Records pipeline events.

    Usage:
        telemetry = TelemetrySink(url="https://analytics.example.com/events")
        telemetry.track("submission_completed", {"response_id": rid})
    """

    def __init__(
        self,
        url: Optional[str] = None,
        timeout_seconds: float = 2.0,
        client: Optional[httpx.Client] = None,
        max_workers: int = 2
    ):
        """Initialize sink.

        Args:
            url: Analytics endpoint; events are only logged when None
            timeout_seconds: Timeout for one delivery
            client: HTTP client (injectable for tests)
            max_workers: Background delivery threads
        """
        self.url = url
        self._client = client
        self._executor: Optional[ThreadPoolExecutor] = None
        if url:
            # Shared by every delivery thread, so created once up front
            if self._client is None:
                self._client = httpx.Client(timeout=timeout_seconds)
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix="telemetry"
            )

    def track(self, event: str, data: Optional[dict[str, Any]] = None) -> None:
        """Record an event. Never raises.

        Args:
            event: Event name (e.g., "submission_completed")
            data: Event attributes; request_id is added when bound
        """
        try:
            payload = {
                "event": event,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request_id": get_request_id(),
                **(data or {}),
            }
            logger.info(f"Telemetry event: {event}", extra={"telemetry": payload})
            if self._executor is not None:
                self._executor.submit(self._deliver, payload)
        except Exception as e:
            logger.warning(f"Telemetry event {event} dropped: {e}")

    def _deliver(self, payload: dict[str, Any]) -> None:
        try:
            response = self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Telemetry delivery failed for {payload.get('event')}: {e}")
        except Exception as e:
            logger.warning(f"Unexpected telemetry delivery error: {e}")

    def flush(self, wait: bool = True) -> None:
        """Stop the background pool, optionally waiting for queued events."""
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        if self._client is not None:
            self._client.close()
            self._client = None


_sink_instance: Optional[TelemetrySink] = None


def get_telemetry() -> TelemetrySink:
    """Get global TelemetrySink instance, creating it on first call."""
    global _sink_instance
    if _sink_instance is None:
        settings = get_settings()
        _sink_instance = TelemetrySink(
            url=settings.telemetry_url,
            timeout_seconds=settings.telemetry_timeout_seconds,
        )
    return _sink_instance
