from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator

from reviewflow.schemas.business import PlatformLinkOut


class FeedbackGateInfoOut(BaseModel):
    customer_id: str
    customer_name: str
    business_name: str
    already_used: bool
    rating: int | None = None


class RatingSubmitIn(BaseModel):
    # Range is checked by the rating gate so out-of-range values surface as invalid_rating.
    rating: StrictInt
    comment: str | None = Field(default=None, max_length=2000)

    model_config = ConfigDict(
        json_schema_extra={"example": {"rating": 5, "comment": "Spotless job, thank you!"}}
    )


class RatingDecisionOut(BaseModel):
    submission_id: str
    outcome: Literal["route_public", "route_private"]
    rating: int
    threshold: int
    platform: PlatformLinkOut | None = None
    offered_platforms: list[PlatformLinkOut]
    private_feedback_url: str | None = None
    redirect_url: str | None = None


class PrivateFeedbackIn(BaseModel):
    comment: str = Field(min_length=1, max_length=4000)
    contact_requested: bool = False

    @field_validator("comment")
    @classmethod
    def validate_comment(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("comment is required")
        return cleaned


class PrivateFeedbackOut(BaseModel):
    id: str
    submission_id: str | None = None
    contact_requested: bool
    created_at: datetime
