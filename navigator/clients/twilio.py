"""Twilio Programmable Messaging over the REST API."""

import base64
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass

import httpx

from navigator.core.config import settings

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def format_phone_e164(phone: str) -> str:
    """Normalise a US phone number to E.164 (+1XXXXXXXXXX).

    Numbers that already carry a country code are kept as dialled.
    """
    digits = _NON_DIGITS.sub("", phone or "")
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return f"+{digits}" if digits else ""


@dataclass
class SendResult:
    success: bool
    sid: str | None = None
    status: str | None = None
    error: str | None = None


class TwilioClient:
    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        api_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.account_sid = account_sid if account_sid is not None else settings.twilio_account_sid
        self.auth_token = auth_token if auth_token is not None else settings.twilio_auth_token
        self.api_url = (api_url or settings.twilio_api_url).rstrip("/")
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token)

    async def send_message(
        self,
        to: str,
        body: str,
        from_: str,
        status_callback: str | None = None,
    ) -> SendResult:
        if not self.configured:
            logger.warning("SMS send skipped: Twilio not configured")
            return SendResult(success=False, error="Twilio not configured")

        data = {"To": format_phone_e164(to), "From": from_, "Body": body}
        if status_callback:
            data["StatusCallback"] = status_callback

        url = f"{self.api_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
                resp = await client.post(url, data=data, auth=(self.account_sid, self.auth_token))
        except httpx.HTTPError as e:
            logger.error("Twilio send error: %s", e)
            return SendResult(success=False, error=str(e))

        payload = resp.json() if resp.headers.get("content-type", "").startswith("application/json") else {}
        if resp.status_code >= 400:
            error = payload.get("message") or f"HTTP {resp.status_code}"
            logger.error("Twilio send failed (%d): %s", resp.status_code, error)
            return SendResult(success=False, error=error)

        logger.info("SMS sent sid=%s status=%s", payload.get("sid"), payload.get("status"))
        return SendResult(success=True, sid=payload.get("sid"), status=payload.get("status"))

    def validate_signature(self, url: str, params: dict[str, str], signature: str) -> bool:
        """Check X-Twilio-Signature (HMAC-SHA1 over URL + sorted form params)."""
        if not self.auth_token:
            return False
        message = url + "".join(f"{key}{params[key]}" for key in sorted(params))
        digest = hmac.new(self.auth_token.encode("utf-8"), message.encode("utf-8"), hashlib.sha1).digest()
        expected = base64.b64encode(digest).decode("ascii")
        return hmac.compare_digest(expected, signature or "")


def get_twilio_client() -> TwilioClient:
    return TwilioClient()
