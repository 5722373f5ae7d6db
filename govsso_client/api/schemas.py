from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# OAuth2 error codes and our own stable codes share one shape
_ERROR_CODE = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not _ERROR_CODE.match(value):
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class TokenSummary(BaseModel):
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class DashboardResponse(BaseModel):
    subject: str
    issuer: str
    session_id: str
    provider_session_id: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    birthdate: Optional[str] = None
    acr: Optional[str] = None
    amr: Optional[list[str]] = None
    id_token: TokenSummary
    access_token: TokenSummary
    has_refresh_token: bool
    last_access_time: datetime


class LandingResponse(BaseModel):
    authenticated: bool
    error: Optional[str] = None
    show_post_logout_message: bool = False
    login_url: str = "/oauth2/authorization/govsso"


class HealthResponse(BaseModel):
    status: str
    registered_sessions: int
    timestamp: datetime
