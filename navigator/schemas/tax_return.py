from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

FilingStatus = Literal["single", "married_joint", "married_separate", "head_of_household", "qualifying_surviving_spouse"]


class FederalReturnCreate(BaseModel):
    tax_year: int = Field(ge=2000, le=2100)
    household_id: int | None = None
    filing_status: FilingStatus | None = None
    form_1040_data: dict | None = None
    adjusted_gross_income: float = 0
    taxable_income: float = 0
    total_tax: float = 0
    refund_amount: float = 0
    amount_owed: float = 0
    federal_withholding: float = 0
    is_amended_return: bool = False
    notify_on_status_change: bool = True
    user_id: UUID | None = None  # staff may prepare on behalf of a taxpayer


class FederalReturnUpdate(BaseModel):
    household_id: int | None = None
    filing_status: FilingStatus | None = None
    form_1040_data: dict | None = None
    adjusted_gross_income: float | None = None
    taxable_income: float | None = None
    total_tax: float | None = None
    refund_amount: float | None = None
    amount_owed: float | None = None
    federal_withholding: float | None = None
    is_amended_return: bool | None = None
    notify_on_status_change: bool | None = None


class FederalReturnResponse(BaseModel):
    id: int
    user_id: UUID
    household_id: int | None
    tax_year: int
    filing_status: str | None
    form_1040_data: dict | None
    adjusted_gross_income: float
    taxable_income: float
    total_tax: float
    refund_amount: float
    amount_owed: float
    federal_withholding: float
    is_amended_return: bool
    validation_status: str
    validation_errors: list | None
    efile_status: str
    queue_status: str | None
    submission_priority: int
    submission_attempts: int
    dcn: str | None
    rejection_reason: str | None
    notify_on_status_change: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MarylandReturnCreate(BaseModel):
    tax_year: int = Field(ge=2000, le=2100)
    federal_return_id: int | None = None
    filing_status: FilingStatus | None = None
    county: str | None = Field(None, max_length=50)
    maryland_resident: bool = True
    state_of_residence: str = Field("MD", min_length=2, max_length=2)
    maryland_taxable_income: float = 0
    county_tax: float = 0
    pension_income: float = 0
    maryland_eitc: float = 0
    poverty_level_credit: float = 0
    property_tax_credit: float = 0
    preparer_name: str | None = Field(None, max_length=255)
    preparer_ptin: str | None = Field(None, max_length=20)
    preparer_ein: str | None = Field(None, max_length=20)
    user_id: UUID | None = None


class MarylandReturnUpdate(BaseModel):
    federal_return_id: int | None = None
    filing_status: FilingStatus | None = None
    county: str | None = Field(None, max_length=50)
    maryland_resident: bool | None = None
    state_of_residence: str | None = Field(None, min_length=2, max_length=2)
    maryland_taxable_income: float | None = None
    county_tax: float | None = None
    pension_income: float | None = None
    maryland_eitc: float | None = None
    poverty_level_credit: float | None = None
    property_tax_credit: float | None = None
    preparer_name: str | None = Field(None, max_length=255)
    preparer_ptin: str | None = Field(None, max_length=20)
    preparer_ein: str | None = Field(None, max_length=20)


class MarylandReturnResponse(BaseModel):
    id: int
    user_id: UUID
    federal_return_id: int | None
    tax_year: int
    filing_status: str | None
    county: str | None
    maryland_resident: bool
    state_of_residence: str
    maryland_taxable_income: float
    county_tax: float
    pension_income: float
    maryland_eitc: float
    poverty_level_credit: float
    property_tax_credit: float
    validation_status: str
    validation_errors: list | None
    validation_warnings: list | None
    queue_status: str | None
    efile_status: str
    priority: int
    attempts: int
    confirmation_number: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
