"""FastAPI dependencies shared by the HTTP routers."""
from typing import Optional

from fastapi import Header, Request

from app.chat.services import ChatServices
from app.errors import Unauthenticated


def get_services(request: Request) -> ChatServices:
    return request.app.state.chat


def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    """Extract the session token from an ``Authorization: Bearer`` header."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("Missing bearer session token")
    return token.strip()


def get_current_user_id(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    token = bearer_token(authorization)
    return get_services(request).sessions.resolve(token)
