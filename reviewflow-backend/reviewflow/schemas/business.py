from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PlatformLinkOut(BaseModel):
    type: str
    url: str


class ReviewSettingsOut(BaseModel):
    business_id: str
    business_name: str
    public_rating_threshold: int
    google_review_short_url: str | None = None
    google_place_id: str | None = None
    facebook_page_url: str | None = None
    yelp_page_url: str | None = None
    platforms: list[PlatformLinkOut]
    updated_at: datetime


class ReviewSettingsUpdateIn(BaseModel):
    public_rating_threshold: int | None = Field(default=None, ge=1, le=5)
    google_review_short_url: str | None = Field(default=None, max_length=500)
    google_place_id: str | None = Field(default=None, max_length=255)
    facebook_page_url: str | None = Field(default=None, max_length=500)
    yelp_page_url: str | None = Field(default=None, max_length=500)

    @field_validator("google_review_short_url", "facebook_page_url", "yelp_page_url")
    @classmethod
    def validate_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        if cleaned and not cleaned.lower().startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return cleaned

    @field_validator("google_place_id")
    @classmethod
    def normalize_place_id(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip()

    @model_validator(mode="after")
    def validate_any_field_present(self) -> "ReviewSettingsUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "public_rating_threshold": 4,
                "google_review_short_url": "https://g.page/r/abc123/review",
                "facebook_page_url": "https://www.facebook.com/janesdetailing",
            }
        }
    )
