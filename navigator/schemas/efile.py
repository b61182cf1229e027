from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class SubmitRequest(BaseModel):
    priority: int | None = Field(None, ge=1, le=5)


class SubmitResponse(BaseModel):
    success: bool
    message: str
    queue_position: int | None = None
    requires_federal_first: bool = False
    errors: list[str] = []


class BatchSubmitRequest(BaseModel):
    return_ids: list[int] = Field(min_length=1, max_length=100)
    priority: int | None = Field(None, ge=1, le=5)


class BatchSubmitResponse(BaseModel):
    success: bool
    batch_id: str
    submitted: list[int]
    failed: list[dict]


class RetryRequest(BaseModel):
    priority: int | None = Field(None, ge=1, le=5)


class StatusOverrideRequest(BaseModel):
    status: Literal["transmitted", "accepted", "rejected"]
    dcn: str | None = Field(None, max_length=40)
    transmission_id: str | None = Field(None, max_length=100)
    rejection_reason: str | None = None


class SubmissionLogResponse(BaseModel):
    id: int
    return_type: str
    federal_return_id: int | None
    maryland_return_id: int | None
    action: str
    details: dict | None
    transmission_id: str | None
    submission_id: str | None
    response_code: str | None
    error_type: str | None
    error_message: str | None
    is_mock: bool
    circuit_breaker_status: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class MarylandSubmitRequest(BaseModel):
    priority: int | None = Field(None, ge=1, le=5)
    requires_federal_acceptance: bool = True
    validate_county_tax: bool = True


class MarylandValidateRequest(BaseModel):
    county_tax: bool = True
    credits: bool = True
    residency: bool = True


class MockAcknowledgmentRequest(BaseModel):
    status: Literal["accepted", "rejected"] = "accepted"
    confirmation_number: str | None = Field(None, max_length=40)
    errors: list[dict] | None = None


class CountyResponse(BaseModel):
    code: str
    name: str
    rate: float
    is_special_district: bool
