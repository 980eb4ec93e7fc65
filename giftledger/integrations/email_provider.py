"""
Email provider client with retry logic.

Implements:
- An EmailProvider protocol the email queue depends on
- A Resend HTTP client with exponential backoff for transient errors
"""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from giftledger.config import get_settings

logger = structlog.get_logger(__name__)


class EmailErrorType(Enum):
    """Classification of provider errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff


class EmailProviderError(Exception):
    """Raised when the provider rejects or cannot accept a message."""

    def __init__(
        self,
        message: str,
        error_type: EmailErrorType,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code


@dataclass
class EmailMessage:
    to: List[str]
    from_address: str
    subject: str
    html: str
    text: Optional[str] = None


class EmailProvider(Protocol):
    """Anything able to hand a message to a mail transport."""

    async def send(self, message: EmailMessage) -> str:
        """Send a message and return the provider's message id."""
        ...


def _is_retryable(error: BaseException) -> bool:
    return (
        isinstance(error, EmailProviderError)
        and error.error_type != EmailErrorType.PERMANENT
    )


class ResendClient:
    """
    Resend API client.

    Posts ``{from, to, subject, html, text}`` to ``/emails`` with bearer
    authentication.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Resend client.

        Args:
            api_key: Resend API key (defaults to settings)
            base_url: API base URL (defaults to settings)
            client: Optional pre-built httpx client
        """
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.base_url = (base_url or settings.resend_base_url).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=settings.email_timeout_seconds)

    @staticmethod
    def _classify_status(status_code: int) -> EmailErrorType:
        if status_code == 429:
            return EmailErrorType.RATE_LIMIT
        if status_code >= 500:
            return EmailErrorType.TRANSIENT
        return EmailErrorType.PERMANENT

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def send(self, message: EmailMessage) -> str:
        """
        Send an email through Resend.

        Args:
            message: Message to send

        Returns:
            str: Resend message id

        Raises:
            EmailProviderError: If the message could not be accepted
        """
        if not self.api_key:
            raise EmailProviderError("RESEND_API_KEY not configured", EmailErrorType.PERMANENT)

        body = {
            "from": message.from_address,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            body["text"] = message.text

        try:
            response = await self._client.post(
                f"{self.base_url}/emails",
                json=body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            logger.warning("resend_request_error", error=str(e))
            raise EmailProviderError(str(e), EmailErrorType.TRANSIENT)

        if response.status_code >= 400:
            error_type = self._classify_status(response.status_code)
            logger.warning(
                "resend_request_rejected",
                status_code=response.status_code,
                error_type=error_type.value,
            )
            raise EmailProviderError(
                f"Resend API error {response.status_code}: {response.text[:500]}",
                error_type,
                status_code=response.status_code,
            )

        try:
            message_id = str(response.json().get("id") or "")
        except (ValueError, AttributeError):
            # Accepted; the body just carries no readable id
            logger.warning("resend_response_unreadable", status_code=response.status_code)
            message_id = ""
        logger.info("resend_email_accepted", message_id=message_id)
        return message_id

    async def close(self) -> None:
        await self._client.aclose()
