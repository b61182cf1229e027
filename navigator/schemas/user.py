from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

Role = Literal["taxpayer", "navigator", "admin", "super_admin"]


class CreateUserRequest(BaseModel):
    email: EmailStr
    full_name: str | None = Field(None, max_length=255)
    phone_number: str | None = Field(None, max_length=20)
    role: Role = "taxpayer"


class CreateUserResponse(BaseModel):
    id: UUID
    email: str
    role: str
    temporary_password: str


class UpdateUserRequest(BaseModel):
    full_name: str | None = Field(None, max_length=255)
    phone_number: str | None = Field(None, max_length=20)
    role: Role | None = None
    is_active: bool | None = None


class UserListItem(BaseModel):
    id: UUID
    email: str
    full_name: str | None
    role: str
    is_active: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class UserListPaginated(BaseModel):
    items: list[UserListItem]
    total: int
