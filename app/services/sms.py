"""SMS delivery through the NextSMS-style HTTP gateway.

Configuration via environment variables:
- SMS_ENABLED
- SMS_BASE_URL
- SMS_USERNAME, SMS_PASSWORD (basic auth)
- SMS_SENDER_ID
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from app.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

SINGLE_SMS_PATH = "/api/sms/v1/text/single"


@dataclass(frozen=True)
class SmsResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


def normalize_phone(phone: str) -> str:
    """Normalize a Tanzanian number to 255XXXXXXXXX."""
    normalized = "".join(ch for ch in phone if ch.isdigit())
    if normalized.startswith("0"):
        normalized = "255" + normalized[1:]
    elif len(normalized) == 9:
        normalized = "255" + normalized
    return normalized


class SmsSender:
    def __init__(self, config: Settings | None = None, client: httpx.Client | None = None):
        self.config = config or default_settings
        self._client = client

    def _post(self, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, **kwargs)
        return httpx.post(url, **kwargs)

    def send(self, phone: str, message: str, reference: str | None = None) -> SmsResult:
        """Send one SMS. Transport errors are returned, not raised."""
        if not self.config.sms_enabled:
            logger.info("SMS disabled; skipping message to %s", phone)
            return SmsResult(success=False, error="sms_disabled")
        if not phone:
            return SmsResult(success=False, error="missing_phone")
        try:
            self.config.validate_sms_config()
        except ValueError as exc:
            return SmsResult(success=False, error=str(exc))

        payload = {
            "from": self.config.sms_sender_id,
            "to": normalize_phone(phone),
            "text": message,
        }
        if reference:
            payload["reference"] = reference

        url = f"{self.config.sms_base_url.rstrip('/')}{SINGLE_SMS_PATH}"
        try:
            response = self._post(
                url,
                json=payload,
                auth=(self.config.sms_username, self.config.sms_password),
                headers={"Accept": "application/json"},
                timeout=self.config.sms_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("sms_send_failed to=%s error=%s", payload["to"], exc)
            return SmsResult(success=False, error=str(exc))

        if response.status_code in (200, 201, 202):
            message_id = None
            try:
                data = response.json()
                message_id = data.get("messageId") or data.get("id")
            except ValueError:
                pass
            return SmsResult(success=True, message_id=message_id)
        if response.status_code in (401, 403):
            logger.error(
                "sms_auth_failed status=%s body=%s",
                response.status_code,
                response.text,
            )
        return SmsResult(success=False, error=f"HTTP {response.status_code}")
