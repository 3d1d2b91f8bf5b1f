"""
API request and response models for Keygate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request fields are all optional on purpose. Missing or blank values are
reported by the auth layer as DATA_INCOMPLETE inside the normal
{"errno", "data"} envelope, not as a FastAPI 422, so clients see one error
vocabulary for every failure.
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /login."""

    uname: Optional[str] = Field(default=None, max_length=255)
    upass: Optional[str] = Field(default=None, max_length=255)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /chpasswd. pass0 is the current password."""

    pass0: Optional[str] = Field(default=None, max_length=255)
    pass1: Optional[str] = Field(default=None, max_length=255)
    pass2: Optional[str] = Field(default=None, max_length=255)


class BioChangeRequest(BaseModel):
    """Request body for POST /chbio."""

    fname: Optional[str] = Field(default=None, max_length=128)
    site: Optional[str] = Field(default=None, max_length=255)


class RegisterRequest(BaseModel):
    """Request body for POST /register and POST /useradd."""

    addname: Optional[str] = Field(default=None, max_length=255)
    addpass1: Optional[str] = Field(default=None, max_length=255)
    addpass2: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)


class UserDeleteRequest(BaseModel):
    """Request body for POST /userdel."""

    uid: Optional[Union[int, str]] = None


class UserListRequest(BaseModel):
    """Request body for POST /userlist. Out-of-range values fall back to defaults."""

    page: Optional[Union[int, str]] = None
    limit: Optional[Union[int, str]] = None
    order: Optional[str] = None


class BywayRequest(BaseModel):
    """Request body for POST /byway.

    In production uservice must come from a verified identity assertion,
    never from the client. See api/routes/v1/auth.py.
    """

    uname: Optional[str] = Field(default=None, max_length=255)
    uservice: Optional[str] = Field(default=None, max_length=64)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class ResultResponse(BaseModel):
    """Envelope for every auth operation: errno 0 on success, payload in data."""

    model_config = ConfigDict(frozen=True)

    errno: int
    data: Any = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on unexpected 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    cache: bool = False
