"""
Outbound SMS through the Twilio REST API.

Sending is best-effort: send() returns False instead of raising, so a carrier
hiccup never holds up ingestion or onboarding.
"""

import logging
from typing import Optional

import httpx

from aside.config import Settings, settings as default_settings
from aside.errors import DeliveryFailure
from aside.metrics import record_sms_send

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class SmsSender:
    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        from_number: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self._transport = transport

        if not self.configured:
            logger.warning("Twilio credentials not configured; outbound SMS runs in dev mode")

    @classmethod
    def from_settings(cls, settings: Settings = default_settings) -> "SmsSender":
        return cls(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_PHONE_NUMBER,
            timeout=settings.SMS_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    async def _post(self, to: str, text: str) -> str:
        url = f"{TWILIO_API_BASE}/Accounts/{self.account_sid}/Messages.json"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    url,
                    auth=(self.account_sid, self.auth_token),
                    data={"From": self.from_number, "To": to, "Body": text},
                )
            except httpx.HTTPError as e:
                raise DeliveryFailure(f"transport error sending to {to}: {e}") from e

        if response.status_code >= 400:
            raise DeliveryFailure(f"Twilio returned {response.status_code} for {to}: {response.text[:200]}")
        try:
            return response.json().get("sid", "")
        except ValueError:
            return ""

    async def send(self, to: str, text: str) -> bool:
        """Send one SMS. True only if Twilio accepted it."""
        if not self.configured:
            logger.info(f"[SMS] DEV mode: would send to {to}: {text!r}")
            record_sms_send("dev_mode")
            return False

        try:
            sid = await self._post(to, text)
        except DeliveryFailure as e:
            logger.error(f"SMS delivery failed: {e}")
            record_sms_send("failed")
            return False

        logger.info(f"SMS sent to {to}: {sid}")
        record_sms_send("sent")
        return True


sms_sender = SmsSender.from_settings()
