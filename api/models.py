"""
API request and response models for the Portcullis auth endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
separate from the dataclasses in auth/models.py, which own the domain shape.
Route handlers map between the two.

Input rules live in auth/validators.py; the field validators here only call
them, so a bad field becomes a 400 VALIDATION_ERROR before any flow runs.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import Identity
from auth.validators import check_email_typo, require_email, validate_name, validate_password

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _EmailBody(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def normalise_email(cls, value) -> str:
        return require_email(str(value or ""))

    @field_validator("email")
    @classmethod
    def check_typo(cls, value: str) -> str:
        return check_email_typo(value)


class SignupRequest(_EmailBody):
    """Request body for POST /api/auth/signup."""

    password: str
    name: Optional[str] = None
    profilePictureUrl: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return validate_password(value)

    @field_validator("name")
    @classmethod
    def check_name(cls, value: Optional[str]) -> Optional[str]:
        return validate_name(value)


class EmailRequest(_EmailBody):
    """Request body for POST /api/auth/forgot-password and /signin/email."""

    callbackUrl: Optional[str] = Field(default=None, max_length=2048)


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/auth/reset-password."""

    token: str = Field(min_length=1, max_length=128)
    password: str

    @field_validator("password")
    @classmethod
    def check_password(cls, value: str) -> str:
        return validate_password(value)


class ResendVerificationRequest(_EmailBody):
    """Request body for POST /api/auth/resend-verification.

    password is optional here: a signed-in caller is identified by the session.
    """

    password: Optional[str] = Field(default=None, max_length=255)


class CredentialsRequest(_EmailBody):
    """Request body for POST /api/auth/callback/credentials and /trigger-verification."""

    password: str = Field(min_length=1, max_length=255)


class OnboardingRequest(BaseModel):
    """Request body for POST /api/user/onboarding. All fields optional."""

    model_config = ConfigDict(str_strip_whitespace=True)

    bio: Optional[str] = Field(default=None, max_length=500)
    occupation: Optional[str] = Field(default=None, max_length=100)
    company: Optional[str] = Field(default=None, max_length=100)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str] = None
    image: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserOut":
        return cls(id=identity.id, email=identity.email, name=identity.name, image=identity.image)


class SignupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserOut
    verificationEmailSent: bool


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class SessionUser(BaseModel):
    """The user block of GET /api/auth/session -- derived from claims only."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    image: Optional[str] = None
    emailVerified: Optional[str] = None
    onboardingCompleted: bool = False

    @classmethod
    def from_claims(cls, claims: dict) -> "SessionUser":
        return cls(
            id=claims["sub"],
            email=claims.get("email", ""),
            name=claims.get("name"),
            image=claims.get("picture"),
            emailVerified=claims.get("email_verified"),
            onboardingCompleted=bool(claims.get("onboarding_completed")),
        )


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: SessionUser
    provider: Optional[str] = None
    expires: str


class SignInResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    user: UserOut
    url: str = "/"


class ProviderOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: str
    signinUrl: str


class SignalResponse(BaseModel):
    """Response for GET /api/auth/error -- a redirect-signal code described."""

    model_config = ConfigDict(frozen=True)

    error: str
    title: str
    message: str


class ErrorResponse(BaseModel):
    """Error envelope returned on 4xx/5xx responses. details only in debug mode."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: str
    code: str
    details: Optional[str] = None


class HealthCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    checks: dict[str, HealthCheck]
    breakers: dict[str, dict]
