"""Request/response bodies for the auth endpoints."""
from typing import Optional

from pydantic import BaseModel, Field


class SignupRequest(BaseModel):
    email: str = Field(..., description="Unique email address (case-insensitive)")
    password: str = Field(..., description="Plaintext password, hashed before storage")
    displayName: str = Field(..., description="Display name shown in UI")
    avatarRef: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class SessionResponse(BaseModel):
    userId: str
    sessionToken: str
