from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from reviewflow.schemas.common import PaginationMeta


CampaignChannel = Literal["email", "sms"]
ExecutionStatus = Literal["active", "completed", "stopped", "cancelled", "failed"]
StepExecutionStatus = Literal["pending", "sent", "failed", "skipped"]


class CampaignStepIn(BaseModel):
    step_number: int = Field(ge=1)
    delay_hours: int = Field(default=0, ge=0)
    message_type: CampaignChannel
    subject_template: str | None = Field(default=None, max_length=255)
    body_template: str = Field(min_length=1, max_length=4000)
    is_active: bool = True


class CampaignSequenceCreateIn(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    is_default: bool = False
    is_active: bool = True
    steps: list[CampaignStepIn] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Post-service follow up",
                "is_default": True,
                "steps": [
                    {
                        "step_number": 1,
                        "delay_hours": 0,
                        "message_type": "sms",
                        "body_template": "Hi {{customer_first_name}}! How did we do? {{review_link}}",
                    },
                    {
                        "step_number": 2,
                        "delay_hours": 48,
                        "message_type": "email",
                        "subject_template": "How was your {{service_type}}?",
                        "body_template": "Tell us here: {{review_link}}",
                    },
                ],
            }
        }
    )


class CampaignSequenceUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    description: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None

    @model_validator(mode="after")
    def validate_has_field(self) -> "CampaignSequenceUpdateIn":
        if self.name is None and self.description is None and self.is_active is None:
            raise ValueError("At least one field must be provided")
        return self


class CampaignStepOut(BaseModel):
    id: str
    step_number: int
    delay_hours: int
    message_type: CampaignChannel
    subject_template: str | None = None
    body_template: str
    is_active: bool


class CampaignSequenceOut(BaseModel):
    id: str
    name: str
    description: str | None = None
    is_default: bool
    is_active: bool
    steps: list[CampaignStepOut]
    created_at: datetime
    updated_at: datetime


class CampaignSequenceListOut(BaseModel):
    items: list[CampaignSequenceOut]
    pagination: PaginationMeta


class CampaignExecutionStartIn(BaseModel):
    review_request_id: str = Field(min_length=1, max_length=36)
    sequence_id: str = Field(min_length=1, max_length=36)


class CampaignExecutionStartDefaultIn(BaseModel):
    review_request_id: str = Field(min_length=1, max_length=36)


class CampaignExecutionStopIn(BaseModel):
    reason: str = Field(default="Stopped by user", min_length=1, max_length=255)


class CampaignStepExecutionOut(BaseModel):
    id: str
    step_id: str
    step_number: int
    status: StepExecutionStatus
    attempt_count: int
    last_error: str | None = None
    provider_message_id: str | None = None
    sent_at: datetime | None = None


class CampaignExecutionOut(BaseModel):
    id: str
    review_request_id: str
    sequence_id: str
    current_step: int
    status: ExecutionStatus
    started_at: datetime
    last_step_fired_at: datetime | None = None
    next_fire_at: datetime | None = None
    completed_at: datetime | None = None
    stop_reason: str | None = None
    steps: list[CampaignStepExecutionOut] = Field(default_factory=list)
    created_at: datetime


class CampaignExecutionListOut(BaseModel):
    items: list[CampaignExecutionOut]
    pagination: PaginationMeta
    status: ExecutionStatus | None = None


class ExecutionRunIn(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=1000)


class ExecutionRunOut(BaseModel):
    processed: int
    dispatched: int
    completed: int
    skipped: int
    retried: int
    failed: int
    stopped: int
    not_due: int
    claim_lost: int
    errors: int
