"""SMS API: Twilio webhooks, staff outbound messages, tenant number configuration."""

import logging
import uuid
import xml.etree.ElementTree as ET

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.clients.twilio import format_phone_e164, get_twilio_client
from navigator.core.dependencies import get_current_tenant_id, require_role
from navigator.core.exceptions import BadRequestError, ConflictError, ForbiddenError, NotFoundError, TooManyRequestsError
from navigator.db.postgres import get_db
from navigator.models.sms import SmsTenantConfig
from navigator.models.user import User
from navigator.schemas.sms import SendSmsRequest, SendSmsResponse, SmsConfigResponse, SmsConfigUpdate
from navigator.sms.service import SmsRateLimitedError, SmsService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sms", tags=["sms"])

TWIML_MEDIA_TYPE = "application/xml"


def get_sms_service(db: AsyncSession = Depends(get_db)) -> SmsService:
    return SmsService(db)


def twiml(message: str | None = None) -> Response:
    root = ET.Element("Response")
    if message:
        ET.SubElement(root, "Message").text = message
    body = '<?xml version="1.0" encoding="UTF-8"?>' + ET.tostring(root, encoding="unicode")
    return Response(content=body, media_type=TWIML_MEDIA_TYPE)


async def _twilio_form(request: Request) -> dict[str, str]:
    """Read the webhook form, rejecting forged requests when an auth token is configured."""
    form = {key: str(value) for key, value in (await request.form()).items()}
    client = get_twilio_client()
    if client.auth_token and not client.validate_signature(
        str(request.url), form, request.headers.get("X-Twilio-Signature", "")
    ):
        logger.warning("Rejected Twilio webhook with invalid signature from %s", request.client)
        raise ForbiddenError("Invalid Twilio signature")
    return form


@router.post("/webhook/incoming")
async def incoming_message(request: Request, service: SmsService = Depends(get_sms_service)):
    form = await _twilio_form(request)
    sender, recipient = form.get("From", ""), form.get("To", "")
    if not sender or not recipient:
        raise BadRequestError("Missing From or To")

    result = await service.handle_incoming_message(sender, form.get("Body", ""), recipient)
    # Replies already sent over the REST API must not be repeated in TwiML
    return twiml(None if result.delivered_via_api else result.reply)


@router.post("/webhook/status")
async def message_status(request: Request, service: SmsService = Depends(get_sms_service)):
    form = await _twilio_form(request)
    sid = form.get("MessageSid") or form.get("SmsSid")
    status = form.get("MessageStatus") or form.get("SmsStatus")
    if not sid or not status:
        raise BadRequestError("Missing MessageSid or MessageStatus")

    await service.update_message_status(sid, status, form.get("ErrorMessage") or form.get("ErrorCode"))
    return Response(status_code=204)


@router.post("/send", response_model=SendSmsResponse)
async def send_message(
    body: SendSmsRequest,
    user: User = Depends(require_role("navigator")),
    service: SmsService = Depends(get_sms_service),
):
    """Send a text from the tenant's number. Requires navigator role."""
    try:
        result = await service.send_sms(body.to, body.body, user.tenant_id, kind=body.kind)
    except SmsRateLimitedError as e:
        raise TooManyRequestsError(str(e), retry_after=e.retry_after)
    return SendSmsResponse(success=result.success, sid=result.sid, status=result.status, error=result.error)


@router.get("/stats", dependencies=[Depends(require_role("navigator"))])
async def conversation_stats(
    days: int = Query(30, ge=1, le=365),
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    service: SmsService = Depends(get_sms_service),
):
    return await service.get_conversation_stats(tenant_id, days=days)


async def _config_response(service: SmsService, tenant_id: uuid.UUID) -> SmsConfigResponse:
    config = await service.get_tenant_config(tenant_id)
    if config is None:
        raise NotFoundError("SMS is not configured for this tenant")
    return SmsConfigResponse(
        phone_number=config.phone_number,
        is_active=config.is_active,
        twilio_account_sid=config.twilio_account_sid,
        has_custom_credentials=config.twilio_auth_token_encrypted is not None,
        sms_enabled=await service.is_sms_enabled_for_tenant(tenant_id),
        updated_at=config.updated_at,
    )


@router.get("/config", response_model=SmsConfigResponse, dependencies=[Depends(require_role("admin"))])
async def get_config(
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    service: SmsService = Depends(get_sms_service),
):
    return await _config_response(service, tenant_id)


@router.put("/config", response_model=SmsConfigResponse, dependencies=[Depends(require_role("admin"))])
async def update_config(
    body: SmsConfigUpdate,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    service: SmsService = Depends(get_sms_service),
):
    owner = await service.db.execute(
        select(SmsTenantConfig.tenant_id).where(SmsTenantConfig.phone_number == format_phone_e164(body.phone_number))
    )
    owner_id = owner.scalar_one_or_none()
    if owner_id is not None and owner_id != tenant_id:
        raise ConflictError("Phone number is already assigned to another organisation")

    await service.upsert_tenant_config(
        tenant_id,
        phone_number=body.phone_number,
        is_active=body.is_active,
        twilio_account_sid=body.twilio_account_sid,
        twilio_auth_token=body.twilio_auth_token,
    )
    logger.info("SMS config updated for tenant %s", tenant_id)
    return await _config_response(service, tenant_id)
