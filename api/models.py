"""
API request and response models for the portal auth endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Flows map between the two.

Every response body is validated here at the boundary instead of being read
ad hoc from a dict. Unknown fields are ignored so backend additions never
break the client.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    def to_body(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class LoginRequest(_Request):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RegisterRequest(_Request):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    role: str = "job_seeker"


class VerifyOtpRequest(_Request):
    email: str = Field(min_length=1)
    otp: str = Field(pattern=r"^\d+$")


class EmailRequest(_Request):
    """Body for resend-otp, resend-verification and forgot-password."""

    email: str = Field(min_length=1)


class OnboardingRequest(_Request):
    role: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class _Response(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class UserPayload(_Response):
    """The user object returned by login, verify-otp and /api/auth/me."""

    id: str
    email: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    role: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Union[str, int]) -> str:
        return str(value)


class AuthSuccessResponse(_Response):
    """Success payload of POST /api/auth/login and POST /api/auth/verify-otp."""

    token: str = Field(min_length=1)
    user: UserPayload
    message: Optional[str] = None


class RegisterResponse(_Response):
    message: str = ""
    email: Optional[str] = None
    requires_otp: bool = Field(default=False, alias="requiresOTP")


class MessageResponse(_Response):
    """Acknowledgement-only responses (resend, logout, forgot-password, onboarding)."""

    message: str = ""
