"""Webhook delivery of completed transcriptions.

POSTs the recording payload as JSON with a bearer token. Delivery never
raises: every outcome, including transport errors, comes back as a
WebhookAttempt. No configured URL is not an error and yields None.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from ramble_pipeline.config import SettingsStore
from ramble_pipeline.models import Recording, WebhookAttempt, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class WebhookSender:
    """Sends recording payloads to the user-configured webhook URL.

    Args:
        settings_store: Source of the webhook URL and auth token; read
            on every send.
        timeout: Request timeout in seconds.
        client: Optional shared httpx client (a short-lived one is
            created per request otherwise).
    """

    def __init__(
        self,
        settings_store: SettingsStore,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings_store = settings_store
        self.timeout = timeout
        self._client = client

    async def send_recording(self, recording: Recording) -> WebhookAttempt | None:
        """Deliver a recording using the current settings.

        Returns:
            The attempt record, or None if no webhook URL is configured.
        """
        settings = self.settings_store.load()
        if not settings.webhook_url or not settings.webhook_url.strip():
            logger.debug(
                "No webhook URL configured, skipping delivery",
                extra={"recording_id": recording.id},
            )
            return None
        return await self.send(
            recording.to_payload(),
            settings.webhook_url.strip(),
            settings.webhook_auth_token,
        )

    async def send(
        self, payload: dict[str, Any], url: str, auth_token: str | None
    ) -> WebhookAttempt:
        """POST ``payload`` to ``url`` and describe the outcome.

        Args:
            payload: JSON body.
            url: Target webhook URL.
            auth_token: Bearer token; omitted from headers when empty.

        Returns:
            WebhookAttempt with success set for any 2xx response.
        """
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"

        timestamp = utc_now()
        start = time.monotonic()
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=payload, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            latency_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Webhook request to %s failed: %s", url, exc)
            return WebhookAttempt(
                url=url,
                timestamp=timestamp,
                success=False,
                error_message=str(exc) or type(exc).__name__,
                latency_ms=latency_ms,
            )

        latency_ms = int((time.monotonic() - start) * 1000)
        success = 200 <= response.status_code < 300
        error_message = None
        if not success:
            error_message = f"HTTP {response.status_code}: {response.text[:500]}"

        logger.info("Webhook response: %d", response.status_code)
        return WebhookAttempt(
            url=url,
            timestamp=timestamp,
            success=success,
            status_code=response.status_code,
            error_message=error_message,
            latency_ms=latency_ms,
        )
