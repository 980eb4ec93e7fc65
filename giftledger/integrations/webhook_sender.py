"""
Outbound webhook HTTP sender.

Signs each payload with the endpoint secret and posts it with a bounded
timeout. Never raises on remote failure: the outcome is returned for the
caller to record.
"""
import time
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from giftledger.config import get_settings
from giftledger.core.codes import sign_payload
from giftledger.core.constants import WEBHOOK_RESPONSE_BODY_LIMIT, WEBHOOK_USER_AGENT

logger = structlog.get_logger(__name__)


@dataclass
class DeliveryResult:
    success: bool
    status_code: Optional[int] = None
    response_body: Optional[str] = None


class WebhookSender:
    """Posts signed webhook payloads."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.timeout_seconds = timeout_seconds or settings.webhook_timeout_seconds
        self._client = client or httpx.AsyncClient(timeout=self.timeout_seconds)

    async def send(
        self, url: str, secret: str, payload: str, timestamp: Optional[int] = None
    ) -> DeliveryResult:
        """
        POST a payload to a webhook endpoint.

        Args:
            url: Endpoint URL
            secret: Endpoint signing secret
            payload: Raw JSON payload, sent byte-for-byte as signed
            timestamp: Unix seconds used in the signature (defaults to now)

        Returns:
            DeliveryResult: Success only for a 2xx response
        """
        ts = int(time.time()) if timestamp is None else timestamp
        headers = {
            "Content-Type": "application/json",
            "X-Signature": sign_payload(secret, ts, payload),
            "X-Timestamp": str(ts),
            "User-Agent": WEBHOOK_USER_AGENT,
        }

        try:
            response = await self._client.post(
                url,
                content=payload.encode("utf-8"),
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("webhook_request_error", url=url, error=str(e) or type(e).__name__)
            return DeliveryResult(
                success=False,
                response_body=(str(e) or type(e).__name__)[:WEBHOOK_RESPONSE_BODY_LIMIT],
            )

        return DeliveryResult(
            success=200 <= response.status_code < 300,
            status_code=response.status_code,
            response_body=response.text[:WEBHOOK_RESPONSE_BODY_LIMIT],
        )

    async def close(self) -> None:
        await self._client.aclose()
