"""Telegram notification channel.

send() never raises: missing configuration, network failures and rejected
messages all come back as a DeliveryOutcome with delivered=False.
"""
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel

log = structlog.get_logger()

TELEGRAM_API_URL = "https://api.telegram.org"
TEST_MESSAGE = "✅ This is a test message from TaskZen. Your Telegram integration is working!"


class DeliveryOutcome(BaseModel):
    delivered: bool
    detail: str = ""


class TelegramChannel:
    def __init__(
        self,
        bot_token: Optional[str],
        chat_id: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout
        # Tests inject httpx.MockTransport here
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def send(self, message: str) -> DeliveryOutcome:
        if not self.is_configured:
            log.error("telegram_not_configured")
            return DeliveryOutcome(delivered=False, detail="Not configured")

        url = f"{TELEGRAM_API_URL}/bot{self.bot_token}/sendMessage"
        payload = {"chat_id": self.chat_id, "text": message}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            log.error("telegram_send_failed", error=str(e) or type(e).__name__)
            return DeliveryOutcome(delivered=False, detail="Fetch failed")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_success and body.get("ok", False):
            return DeliveryOutcome(delivered=True, detail="sent")

        description = body.get("description") or f"HTTP {response.status_code}"
        log.error("telegram_rejected", status_code=response.status_code, description=description)
        return DeliveryOutcome(delivered=False, detail=description)


async def send_test_message(channel: TelegramChannel) -> dict:
    """Send a fixed message so the user can check the integration."""
    outcome = await channel.send(TEST_MESSAGE)
    if outcome.delivered:
        return {"success": True, "message": "Test message sent successfully!"}
    return {"success": False, "message": f"Failed to send message: {outcome.detail}"}
