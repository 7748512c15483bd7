from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class RegisterIn(BaseModel):
    """Opens a business; the registering user becomes its owner."""

    email: EmailStr
    full_name: str = Field(max_length=100)
    password: str = Field(min_length=8, max_length=128)
    business_name: str = Field(max_length=255)
    username: Optional[str] = Field(default=None, max_length=50)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "email": "dana@sparkle-detailing.com",
                "full_name": "Dana Reyes",
                "password": "correct-horse-battery",
                "business_name": "Sparkle Auto Detailing",
                "username": "dana",
            }
        }
    )

    @field_validator("full_name", "business_name")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    @field_validator("username")
    @classmethod
    def blank_username_is_none(cls, value: Optional[str]) -> Optional[str]:
        return (value or "").strip() or None


class LoginIn(BaseModel):
    identifier: str = Field(description="Email or username")
    password: str

    model_config = ConfigDict(
        json_schema_extra={"example": {"identifier": "dana@sparkle-detailing.com", "password": "correct-horse-battery"}}
    )

    @field_validator("identifier")
    @classmethod
    def identifier_present(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserProfileOut(BaseModel):
    id: str
    email: EmailStr
    username: str
    full_name: Optional[str] = None
    business_id: Optional[str] = None
    business_name: Optional[str] = None
    role: Optional[str] = Field(default=None, description="owner, admin or staff")
    last_login_at: Optional[datetime] = None
    created_at: datetime
