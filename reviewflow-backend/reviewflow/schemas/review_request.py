from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from reviewflow.schemas.common import PaginationMeta

ReviewChannel = Literal["email", "sms"]
ReviewRequestStatus = Literal["pending", "sent", "delivered", "opened", "clicked", "completed", "bounced", "failed"]


class ReviewRequestSendIn(BaseModel):
    customer_id: str = Field(min_length=1, max_length=36)
    channel: ReviewChannel
    subject: str | None = Field(default=None, max_length=255)
    body: str | None = Field(default=None, max_length=4000)
    start_default_campaign: bool = False

    @model_validator(mode="after")
    def validate_template_pair(self) -> "ReviewRequestSendIn":
        if self.subject is not None and self.body is None:
            raise ValueError("body is required when subject is provided")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "customer_id": "1b2c3d4e-0000-4000-8000-000000000001",
                "channel": "sms",
                "body": "Hi {{customer_first_name}}, how did we do? {{review_link}}",
                "start_default_campaign": False,
            }
        }
    )


class ReviewRequestOut(BaseModel):
    id: str
    customer_id: str
    channel: ReviewChannel
    recipient: str
    subject: str | None = None
    body: str
    provider: str
    status: ReviewRequestStatus
    provider_message_id: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    opened_at: datetime | None = None
    clicked_at: datetime | None = None
    completed_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    last_provider_event: str | None = None
    campaign_execution_id: str | None = None
    created_at: datetime
    updated_at: datetime


class ReviewRequestListOut(BaseModel):
    items: list[ReviewRequestOut]
    pagination: PaginationMeta
    status: ReviewRequestStatus | None = None
    customer_id: str | None = None
