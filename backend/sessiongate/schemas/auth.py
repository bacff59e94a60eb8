"""Pydantic schemas for session API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SessionCreateRequest(BaseModel):
    """Request to exchange an identity token for a session."""

    model_config = ConfigDict(populate_by_name=True)

    # Non-string tokens are rejected by the endpoint with 400
    id_token: Any = Field(
        None,
        alias="idToken",
        description="ID token issued by the identity provider",
    )


class SessionCreateResponse(BaseModel):
    """Response after a session was issued (credential travels in the cookie)."""

    success: bool = True
    uid: str


class VerifyResponse(BaseModel):
    """Response for a live session."""

    valid: bool = True
    uid: str
    email: str | None = None


class LogoutResponse(BaseModel):
    success: bool = True
