"""SMS conversations over Twilio: outbound sends, inbound webhook handling,
delivery status callbacks and per-tenant number configuration."""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.clients.twilio import SendResult, TwilioClient, format_phone_e164
from navigator.core.config import settings
from navigator.core.encryption import decrypt_value, encrypt_value
from navigator.core.metrics import SMS_MESSAGES
from navigator.efile.types import utcnow
from navigator.models.sms import SmsConversation, SmsMessage, SmsTenantConfig
from navigator.sms.rate_limiter import SmsRateLimiter, hash_phone, sms_rate_limiter

logger = logging.getLogger(__name__)

UNKNOWN_NUMBER_REPLY = "Service not available for this number."
ACK_REPLY = (
    "Thanks for contacting the Maryland Benefits & Tax Navigator. "
    "A navigator will follow up with you soon. Reply STOP to opt out."
)
STOP_REPLY = "You are unsubscribed and will receive no more messages. Reply START to resubscribe."
STOP_KEYWORDS = frozenset({"STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})
CLOSED_STATES = frozenset({"completed", "stopped", "abandoned"})


class SmsRateLimitedError(Exception):
    def __init__(self, retry_after: int):
        super().__init__(f"SMS rate limit exceeded, retry after {retry_after}s")
        self.retry_after = retry_after


@dataclass
class IncomingResult:
    reply: str
    conversation_id: int | None = None
    delivered_via_api: bool = False  # False: caller must answer with the reply in TwiML


class SmsService:
    def __init__(self, db: AsyncSession, twilio: TwilioClient | None = None, limiter: SmsRateLimiter | None = None):
        self.db = db
        self._twilio = twilio
        self.limiter = limiter or sms_rate_limiter

    # ------------------------------------------------------------------
    # Tenant configuration
    # ------------------------------------------------------------------

    async def get_tenant_config(self, tenant_id: uuid.UUID) -> SmsTenantConfig | None:
        result = await self.db.execute(select(SmsTenantConfig).where(SmsTenantConfig.tenant_id == tenant_id))
        return result.scalar_one_or_none()

    async def get_config_by_number(self, phone_number: str) -> SmsTenantConfig | None:
        result = await self.db.execute(
            select(SmsTenantConfig).where(
                SmsTenantConfig.phone_number == format_phone_e164(phone_number),
                SmsTenantConfig.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def upsert_tenant_config(
        self,
        tenant_id: uuid.UUID,
        *,
        phone_number: str,
        is_active: bool = True,
        twilio_account_sid: str | None = None,
        twilio_auth_token: str | None = None,
    ) -> SmsTenantConfig:
        config = await self.get_tenant_config(tenant_id)
        if config is None:
            config = SmsTenantConfig(tenant_id=tenant_id, phone_number=format_phone_e164(phone_number))
            self.db.add(config)
        config.phone_number = format_phone_e164(phone_number)
        config.is_active = is_active
        if twilio_account_sid is not None:
            config.twilio_account_sid = twilio_account_sid or None
        if twilio_auth_token:
            config.twilio_auth_token_encrypted = encrypt_value(twilio_auth_token)
        await self.db.flush()
        return config

    async def is_sms_enabled_for_tenant(self, tenant_id: uuid.UUID) -> bool:
        config = await self.get_tenant_config(tenant_id)
        return bool(config and config.is_active and self._client_for(config).configured)

    def _client_for(self, config: SmsTenantConfig | None) -> TwilioClient:
        if self._twilio is not None:
            return self._twilio
        if config and config.twilio_account_sid and config.twilio_auth_token_encrypted:
            return TwilioClient(
                account_sid=config.twilio_account_sid,
                auth_token=decrypt_value(config.twilio_auth_token_encrypted),
            )
        return TwilioClient(account_sid=settings.twilio_account_sid, auth_token=settings.twilio_auth_token)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send_sms(self, to: str, body: str, tenant_id: uuid.UUID, kind: str = "general") -> SendResult:
        """Send `body` to `to` from the tenant's number.

        Raises SmsRateLimitedError when the recipient hit its limit.
        """
        config = await self.get_tenant_config(tenant_id)
        if not config or not config.is_active:
            logger.warning("SMS send failed: no active Twilio number for tenant %s", tenant_id)
            return SendResult(success=False, error="No Twilio number configured for tenant")

        client = self._client_for(config)
        if not client.configured:
            return SendResult(success=False, error="Twilio not configured")

        to_number = format_phone_e164(to)
        decision = self.limiter.consume(to_number, kind)
        if not decision.allowed:
            SMS_MESSAGES.labels(direction="outbound", status="rate_limited").inc()
            raise SmsRateLimitedError(decision.retry_after)

        result = await client.send_message(to_number, body, from_=config.phone_number)
        SMS_MESSAGES.labels(direction="outbound", status="sent" if result.success else "failed").inc()

        conversation = await self.get_or_create_conversation(to_number, tenant_id)
        await self._store_message(conversation, "outbound", body, result)
        return result

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def get_or_create_conversation(self, phone_number: str, tenant_id: uuid.UUID) -> SmsConversation:
        """Latest open conversation for this phone, or a new one."""
        phone = format_phone_e164(phone_number)
        result = await self.db.execute(
            select(SmsConversation)
            .where(SmsConversation.tenant_id == tenant_id, SmsConversation.phone_hash == hash_phone(phone))
            .order_by(SmsConversation.created_at.desc(), SmsConversation.id.desc())
            .limit(1)
        )
        conversation = result.scalar_one_or_none()
        if conversation is not None and conversation.state not in CLOSED_STATES:
            return conversation

        conversation = SmsConversation(
            tenant_id=tenant_id, phone_hash=hash_phone(phone), phone_number=phone, state="active", context={}
        )
        self.db.add(conversation)
        await self.db.flush()
        return conversation

    async def handle_incoming_message(self, from_number: str, body: str, to_number: str) -> IncomingResult:
        config = await self.get_config_by_number(to_number)
        if config is None:
            logger.warning("Inbound SMS to unconfigured number %s", to_number)
            return IncomingResult(reply=UNKNOWN_NUMBER_REPLY)

        phone = format_phone_e164(from_number)
        conversation = await self.get_or_create_conversation(phone, config.tenant_id)
        await self._store_message(conversation, "inbound", body, status="received")
        SMS_MESSAGES.labels(direction="inbound", status="received").inc()

        if body.strip().upper() in STOP_KEYWORDS:
            conversation.state = "stopped"
            reply = STOP_REPLY
        else:
            reply = ACK_REPLY

        if not self.limiter.consume(phone, "general").allowed:
            # Still record the inbound text, but stay silent
            await self.db.flush()
            return IncomingResult(reply="", conversation_id=conversation.id, delivered_via_api=True)

        client = self._client_for(config)
        if client.configured:
            result = await client.send_message(phone, reply, from_=config.phone_number)
        else:
            result = SendResult(success=False, error="Twilio not configured")
        await self._store_message(conversation, "outbound", reply, result)
        SMS_MESSAGES.labels(direction="outbound", status="sent" if result.success else "failed").inc()

        return IncomingResult(reply=reply, conversation_id=conversation.id, delivered_via_api=result.success)

    async def update_message_status(self, sid: str, status: str, error_message: str | None = None) -> bool:
        result = await self.db.execute(select(SmsMessage).where(SmsMessage.twilio_sid == sid))
        message = result.scalar_one_or_none()
        if message is None:
            logger.info("Status callback for unknown message sid=%s", sid)
            return False
        message.status = status
        if error_message:
            message.error_message = error_message
        await self.db.flush()
        return True

    async def _store_message(
        self,
        conversation: SmsConversation,
        direction: str,
        body: str,
        result: SendResult | None = None,
        status: str | None = None,
    ) -> SmsMessage:
        if result is not None:
            status = (result.status or "sent") if result.success else "failed"
        message = SmsMessage(
            conversation_id=conversation.id,
            direction=direction,
            body=body,
            twilio_sid=result.sid if result else None,
            status=status or "received",
            error_message=result.error if result else None,
        )
        self.db.add(message)
        conversation.message_count = (conversation.message_count or 0) + 1
        conversation.last_message_at = utcnow()
        await self.db.flush()
        return message

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_conversation_stats(self, tenant_id: uuid.UUID, days: int = 30) -> dict[str, Any]:
        since = utcnow() - timedelta(days=days)

        state_rows = await self.db.execute(
            select(SmsConversation.state, func.count(SmsConversation.id))
            .where(SmsConversation.tenant_id == tenant_id, SmsConversation.created_at >= since)
            .group_by(SmsConversation.state)
        )
        by_state = {state: count for state, count in state_rows.all()}

        message_rows = await self.db.execute(
            select(SmsMessage.direction, SmsMessage.status, func.count(SmsMessage.id))
            .join(SmsConversation, SmsConversation.id == SmsMessage.conversation_id)
            .where(SmsConversation.tenant_id == tenant_id, SmsMessage.created_at >= since)
            .group_by(SmsMessage.direction, SmsMessage.status)
        )
        inbound = outbound = failed = 0
        for direction, status, count in message_rows.all():
            if direction == "inbound":
                inbound += count
            else:
                outbound += count
                if status in ("failed", "undelivered"):
                    failed += count

        return {
            "days": days,
            "total_conversations": sum(by_state.values()),
            "conversations_by_state": by_state,
            "inbound_messages": inbound,
            "outbound_messages": outbound,
            "failed_messages": failed,
        }
