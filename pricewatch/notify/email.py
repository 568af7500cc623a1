"""Email delivery through the Resend HTTP API."""

import logging
from typing import Optional

import httpx

from pricewatch.config import settings

logger = logging.getLogger(__name__)


class ResendEmailClient:
    """Resend API client for sending digest emails."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        sender: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.api_url = api_url or settings.resend_api_url
        self.sender = sender or settings.email_from
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=30.0,
                headers={"Authorization": f"Bearer {self.api_key}"},
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: Optional[str] = None,
    ) -> bool:
        """
        Send an email.

        Args:
            to: Recipient address
            subject: Subject line
            html: HTML body
            text: Optional plain-text body

        Returns:
            True if the provider accepted the message, False otherwise
        """
        if not self.api_key:
            logger.error("RESEND_API_KEY not configured, cannot send email")
            return False

        payload = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        try:
            client = await self._get_client()
            response = await client.post(self.api_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Error sending email to {to}: {e}")
            return False

        if response.status_code in (200, 201, 202):
            try:
                message_id = response.json().get("id")
            except (ValueError, AttributeError):
                message_id = None
            logger.info(f"Email sent to {to} (id: {message_id})")
            return True

        logger.error(f"Failed to send email: {response.status_code} - {response.text[:500]}")
        return False
