import re
from typing import Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, field_validator

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _normalize_email(value: object) -> str:
    email = str(value or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise ValueError("Valid email is required")
    return email


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=8)
    full_name: str = Field(min_length=1, validation_alias=AliasChoices("fullName", "full_name"))
    phone: Optional[str] = None
    company_name: str = Field(min_length=2, validation_alias=AliasChoices("companyName", "company_name"))

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: object) -> str:
        return _normalize_email(value)

    @field_validator("full_name", "company_name", mode="before")
    @classmethod
    def strip_text(cls, value: object) -> str:
        return str(value or "").strip()


class LoginRequest(BaseModel):
    email: str
    password: str = Field(min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: object) -> str:
        return _normalize_email(value)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: object) -> str:
        return _normalize_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=8)


class UserOut(BaseModel):
    id: UUID
    email: str
    fullName: str
    phone: Optional[str] = None
    companyName: Optional[str] = None
    role: str


class AuthResponse(BaseModel):
    user: UserOut
    token: str


class ForgotPasswordResponse(BaseModel):
    message: str
    resetToken: Optional[str] = None
