from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class HouseholdMember(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    age: int | None = Field(None, ge=0, le=130)
    relationship: str | None = Field(None, max_length=50)


class HouseholdCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    county: str | None = Field(None, max_length=50)
    household_size: int = Field(1, ge=1, le=30)
    monthly_income: float = Field(0, ge=0)
    members: list[HouseholdMember] | None = None
    notes: str | None = None
    user_id: UUID | None = None  # staff may create on behalf of a taxpayer


class HouseholdUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    county: str | None = Field(None, max_length=50)
    household_size: int | None = Field(None, ge=1, le=30)
    monthly_income: float | None = Field(None, ge=0)
    members: list[HouseholdMember] | None = None
    notes: str | None = None


class HouseholdResponse(BaseModel):
    id: int
    user_id: UUID
    name: str
    county: str | None
    household_size: int
    monthly_income: float
    members: list[dict] | None
    notes: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
