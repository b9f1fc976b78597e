from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from card_activation.config import settings
from card_activation.services.hashing import MAX_SECRET_BYTES, fits_bcrypt

OTP_LENGTH = settings.otp_length


def _check_pin_bytes(value: str) -> str:
    if not fits_bcrypt(value):
        raise ValueError(f"PIN must be at most {MAX_SECRET_BYTES} bytes")
    return value


class CardCreateRequest(BaseModel):
    owner_profile_id: Optional[str] = Field(default=None, max_length=255)
    pin: Optional[str] = Field(default=None, max_length=32)

    @field_validator("pin")
    @classmethod
    def normalize_pin(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            return None
        return _check_pin_bytes(cleaned)


class CardCreateResponse(BaseModel):
    card_id: str
    card_token: str
    pin: str


class OtpRequest(BaseModel):
    card_token: str = Field(min_length=1, max_length=64)
    pin: str = Field(min_length=1, max_length=32)
    channel: str = Field(max_length=16)
    destination: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("pin")
    @classmethod
    def limit_pin_bytes(cls, value: str) -> str:
        return _check_pin_bytes(value)

    def resolved_destination(self) -> Optional[str]:
        if self.destination:
            return self.destination
        if self.channel == "email":
            return self.email
        if self.channel == "sms":
            return self.phone
        return None


class OtpResponse(BaseModel):
    ok: bool
    message: str
    delivered: bool
    expires_in_seconds: int
    otp: Optional[str] = None


class OtpVerifyRequest(BaseModel):
    card_token: str = Field(min_length=1, max_length=64)
    otp: str = Field(min_length=1, max_length=OTP_LENGTH)
    activated_by: Optional[str] = Field(default=None, max_length=255)

    @field_validator("otp", mode="before")
    @classmethod
    def normalize_otp(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value


class OtpVerifyResponse(BaseModel):
    ok: bool
    message: str
    activated_at: datetime


class CardStatusResponse(BaseModel):
    card_token: str
    is_active: bool
    activated_at: Optional[datetime] = None
