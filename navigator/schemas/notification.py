from datetime import datetime

from pydantic import BaseModel, Field


class NotificationResponse(BaseModel):
    id: int
    title: str
    message: str
    type: str
    metadata: dict | None = Field(None, validation_alias="extra")
    is_read: bool
    created_at: datetime

    model_config = {"from_attributes": True, "populate_by_name": True}
