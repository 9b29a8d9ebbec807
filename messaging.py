"""Outbound WhatsApp message sink.

Sends text messages through a Whapi-style gateway. Delivery is best effort:
failures are logged and reported as False, never raised.
"""

from typing import Optional

import httpx

from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'whatsapp.log')


class WhatsAppSender:
    """Posts ``{"to": ..., "body": ...}`` to ``{WHATSAPP_API_URL}/messages/text``.

    Args:
        client: Optional shared AsyncClient (tests inject one with a MockTransport)
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None,
                 api_url: Optional[str] = None, token: Optional[str] = None):
        self._client = client
        self.api_url = (api_url or settings.WHATSAPP_API_URL).rstrip("/")
        self.token = token if token is not None else settings.WHATSAPP_API_TOKEN

    async def send(self, to: str, body: str) -> bool:
        """Send a text message.

        Returns:
            bool: True if the gateway accepted the message
        """
        url = f"{self.api_url}/messages/text"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        payload = {"to": to, "body": body}

        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=settings.WHATSAPP_TIMEOUT) as client:
                    response = await client.post(url, json=payload, headers=headers)

            if response.status_code >= 400:
                logger.error(
                    f"Failed to send WhatsApp message to {to}. "
                    f"Status: {response.status_code}, Response: {response.text}"
                )
                return False
            logger.info(f"Sent WhatsApp message to {to}")
            return True

        except httpx.TimeoutException:
            logger.error(f"Timeout while sending WhatsApp message to {to}")
            return False
        except httpx.RequestError as e:
            logger.error(f"Network error while sending WhatsApp message to {to}: {str(e)}")
            return False
