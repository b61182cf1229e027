from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class SendSmsRequest(BaseModel):
    to: str = Field(min_length=7, max_length=20)
    body: str = Field(min_length=1, max_length=1600)
    kind: Literal["general", "screening_link"] = "general"


class SendSmsResponse(BaseModel):
    success: bool
    sid: str | None = None
    status: str | None = None
    error: str | None = None


class SmsConfigUpdate(BaseModel):
    phone_number: str = Field(min_length=7, max_length=20)
    is_active: bool = True
    twilio_account_sid: str | None = Field(None, max_length=64)
    twilio_auth_token: str | None = Field(None, max_length=128)  # stored encrypted, never returned


class SmsConfigResponse(BaseModel):
    phone_number: str
    is_active: bool
    twilio_account_sid: str | None
    has_custom_credentials: bool
    sms_enabled: bool
    updated_at: datetime | None = None
