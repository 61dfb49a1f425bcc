import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

META_API_BASE_URL = "https://graph.facebook.com"


class WhatsAppSender:
    """Sends plain-text replies through the WhatsApp Cloud API."""

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        base_url: str = META_API_BASE_URL,
        api_version: str = "v18.0",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.api_version}/{self.phone_number_id}/messages"

    def send_text(self, to: str, body: str) -> bool:
        """
        Send a text message. Failures are logged and reported as False.
        """
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        try:
            with httpx.Client(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = client.post(
                    self.messages_url,
                    headers={
                        "Authorization": f"Bearer {self.access_token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"WhatsApp send to {to} failed: {e!r}")
            return False

        if response.status_code != 200:
            logger.error(f"WhatsApp send to {to}: unexpected status {response.status_code}: {response.text}")
            return False

        logger.info(f"WhatsApp message sent to {to}")
        return True
