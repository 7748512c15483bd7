from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from reviewflow.schemas.common import PaginationMeta

ConsentChannel = Literal["email", "sms"]
ConsentStatus = Literal["subscribed", "unsubscribed"]


class CustomerCreateIn(BaseModel):
    name: str
    phone: str | None = None
    email: EmailStr | None = None
    service_type: str | None = Field(default=None, max_length=120)
    service_date: date | None = None
    note: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name is required")
        return cleaned

    @field_validator("phone", "note", "service_type")
    @classmethod
    def normalize_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: EmailStr | None) -> EmailStr | None:
        if value is None:
            return None
        return str(value).strip().lower()

    @model_validator(mode="after")
    def validate_has_contact(self) -> "CustomerCreateIn":
        if self.phone is None and self.email is None:
            raise ValueError("phone or email is required")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Aisha Bello",
                "phone": "+15551234567",
                "email": "aisha@example.com",
                "service_type": "Full detail",
                "service_date": "2026-10-12",
                "note": "Prefers text messages",
            }
        }
    )


class CustomerCreateOut(BaseModel):
    id: str


class CustomerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    phone: str | None = None
    email: EmailStr | None = None
    service_type: str | None = None
    service_date: date | None = None
    note: str | None = None
    created_at: datetime
    updated_at: datetime


class CustomerListOut(BaseModel):
    items: list[CustomerOut]
    pagination: PaginationMeta
    q: str | None = None


class CustomerConsentUpsertIn(BaseModel):
    channel: ConsentChannel
    status: ConsentStatus
    source: str | None = Field(default=None, max_length=60)
    note: str | None = Field(default=None, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "channel": "sms",
                "status": "unsubscribed",
                "source": "front_desk",
                "note": "Asked not to be texted",
            }
        }
    )


class CustomerConsentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    channel: ConsentChannel
    status: ConsentStatus
    source: str | None = None
    note: str | None = None
    opted_at: datetime
    created_at: datetime
    updated_at: datetime


class CustomerConsentListOut(BaseModel):
    items: list[CustomerConsentOut]
