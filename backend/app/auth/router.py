"""Auth router for account and session endpoints.

Endpoints:
    POST /auth/signup      - Create an account and start a session
    POST /auth/login       - Exchange email + password for a session token
    POST /auth/logout      - Revoke the bearer token and close its sockets
    POST /auth/deactivate  - Soft-delete the calling account
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from app.chat.services import ChatServices
from app.dependencies import bearer_token, get_current_user_id, get_services

from .schemas import LoginRequest, SessionResponse, SignupRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/signup", status_code=201, response_model=SessionResponse)
async def signup(
    request: SignupRequest,
    services: ChatServices = Depends(get_services),
) -> SessionResponse:
    """Create an account.

    Returns 409 ``conflict`` if the email is already registered and 422
    ``invalid_input`` for a malformed email, short password or blank name.
    """
    user, token = services.router.signup(
        request.email, request.password, request.displayName, request.avatarRef
    )
    return SessionResponse(userId=user.id, sessionToken=token)


@router.post("/login", response_model=SessionResponse)
async def login(
    request: LoginRequest,
    services: ChatServices = Depends(get_services),
) -> SessionResponse:
    """Returns 401 ``unauthenticated`` and no token on a wrong credential."""
    user_id, token = services.router.authenticate(request.email, request.password)
    return SessionResponse(userId=user_id, sessionToken=token)


@router.post("/logout")
async def logout(
    authorization: Optional[str] = Header(default=None),
    services: ChatServices = Depends(get_services),
) -> dict:
    await services.router.deauthenticate(bearer_token(authorization))
    return {"status": "ok"}


@router.post("/deactivate")
async def deactivate(
    user_id: str = Depends(get_current_user_id),
    services: ChatServices = Depends(get_services),
) -> dict:
    user = await services.router.deactivate(user_id)
    return {"userId": user.id, "active": user.active}
