"""Account, credential and session services.

Implements the identity side of the messaging core:
1. UserDirectory owns User records (signup, profile edits, presence fields)
2. CredentialVerifier maps an opaque credential to a user ID
3. SessionManager issues, resolves and revokes session tokens

Passwords are stored as bcrypt hashes; nothing in this module
keeps a plaintext password after the call that received it returns.
"""
import logging
import secrets
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import bcrypt

from app.chat.schemas import User, UserStatus
from app.config import AuthSettings, SeedAccount
from app.errors import Conflict, InvalidInput, InvalidToken, NotFound, Unauthenticated
from app.storage import MessageLog

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a plaintext password using bcrypt.

    Returns a UTF-8 decoded hash string suitable for storage.
    """
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


# =============================================================================
# Users
# =============================================================================


class UserDirectory:
    """Shared-read store of User records.

    ``set_presence`` is called only by the PresenceTracker; ``update_profile``
    only by the profile endpoint. Users are never deleted, only deactivated,
    so message history never points at a missing sender.
    """

    def __init__(self, backend: MessageLog, settings: Optional[AuthSettings] = None) -> None:
        self._backend = backend
        self._settings = settings or AuthSettings()

    def signup(
        self,
        email: str,
        password: str,
        display_name: str,
        avatar_ref: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> User:
        """Create an account.

        Raises:
            InvalidInput: malformed email, bad password length or blank display name.
            Conflict: the email (case-insensitive) is already registered.
        """
        email = normalize_email(email)
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            raise InvalidInput("A valid email address is required")
        if len(password or "") < self._settings.min_password_length:
            raise InvalidInput(
                f"Password must be at least {self._settings.min_password_length} characters"
            )
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise InvalidInput(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
        display_name = (display_name or "").strip()
        if not display_name:
            raise InvalidInput("Display name is required")
        if self._backend.get_credential(email) is not None:
            raise Conflict("Email already in use")

        user = User(
            id=user_id or f"user-{uuid.uuid4().hex[:12]}",
            email=email,
            displayName=display_name,
            avatarRef=avatar_ref,
        )
        self._backend.save_user(user)
        self._backend.save_credential(
            email, user.id, hash_password(password, self._settings.bcrypt_rounds)
        )
        logger.info(f"[Auth] New account {user.id} ({email})")
        return user

    def seed(self, accounts: List[SeedAccount]) -> None:
        """Provision configured accounts that don't exist yet."""
        for account in accounts:
            if self._backend.get_credential(normalize_email(account.email)) is not None:
                continue
            self.signup(
                email=account.email,
                password=account.password,
                display_name=account.display_name,
                avatar_ref=account.avatar_ref,
                user_id=account.user_id,
            )

    def get(self, user_id: str) -> Optional[User]:
        return self._backend.get_user(user_id)

    def require(self, user_id: str) -> User:
        user = self._backend.get_user(user_id)
        if user is None:
            raise NotFound(f"Unknown user: {user_id}")
        return user

    def search(self, query: Optional[str] = None) -> List[User]:
        """Active users whose display name or email contains ``query``."""
        users = [u for u in self._backend.list_users() if u.active]
        if query:
            needle = query.strip().lower()
            users = [
                u for u in users
                if needle in u.displayName.lower() or needle in u.email
            ]
        return sorted(users, key=lambda u: u.displayName.lower())

    def update_profile(
        self,
        user_id: str,
        display_name: Optional[str] = None,
        avatar_ref: Optional[str] = None,
    ) -> User:
        user = self.require(user_id)
        if display_name is not None:
            display_name = display_name.strip()
            if not display_name:
                raise InvalidInput("Display name cannot be blank")
            user.displayName = display_name
        if avatar_ref is not None:
            user.avatarRef = avatar_ref or None
        self._backend.save_user(user)
        return user

    def set_presence(self, user_id: str, status: UserStatus, last_seen_at: Optional[int]) -> None:
        user = self._backend.get_user(user_id)
        if user is None:
            return
        user.status = status
        if last_seen_at is not None:
            user.lastSeenAt = last_seen_at
        self._backend.save_user(user)

    def deactivate(self, user_id: str) -> User:
        user = self.require(user_id)
        user.active = False
        self._backend.save_user(user)
        logger.info(f"[Auth] Deactivated account {user_id}")
        return user


# =============================================================================
# Credentials
# =============================================================================


class CredentialVerifier(ABC):
    """External collaborator that maps an opaque credential to a user ID."""

    @abstractmethod
    def verify(self, email: str, password: str) -> str:
        """Return the user ID, or raise Unauthenticated."""


class PasswordCredentialVerifier(CredentialVerifier):
    """Email + password verification against stored bcrypt hashes."""

    def __init__(self, backend: MessageLog) -> None:
        self._backend = backend

    def verify(self, email: str, password: str) -> str:
        record = self._backend.get_credential(normalize_email(email))
        if record is None or not verify_password(password or "", record[1]):
            raise Unauthenticated("Invalid email or password")
        user = self._backend.get_user(record[0])
        if user is None or not user.active:
            raise Unauthenticated("Account is deactivated")
        return record[0]


# =============================================================================
# Sessions
# =============================================================================


@dataclass
class Session:
    token: str
    user_id: str
    expires_at: float


class SessionManager:
    """Opaque bearer tokens with a fixed lifetime."""

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, Session] = {}

    def issue(self, user_id: str) -> Session:
        self.prune()
        session = Session(
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            expires_at=self._clock() + self._ttl,
        )
        self._sessions[session.token] = session
        return session

    def resolve(self, token: Optional[str]) -> str:
        """Return the user ID for a live token, or raise InvalidToken."""
        session = self._sessions.get(token or "")
        if session is None:
            raise InvalidToken("Unknown or revoked session token")
        if session.expires_at <= self._clock():
            del self._sessions[session.token]
            raise InvalidToken("Session token has expired")
        return session.user_id

    def revoke(self, token: str) -> Optional[str]:
        """Drop a token; returns its user ID if it existed."""
        session = self._sessions.pop(token, None)
        return session.user_id if session else None

    def revoke_user(self, user_id: str) -> int:
        tokens = [t for t, s in self._sessions.items() if s.user_id == user_id]
        for token in tokens:
            del self._sessions[token]
        return len(tokens)

    def prune(self) -> int:
        """Drop every expired session; returns how many were dropped."""
        now = self._clock()
        expired = [t for t, s in self._sessions.items() if s.expires_at <= now]
        for token in expired:
            del self._sessions[token]
        if expired:
            logger.debug(f"[Auth] Pruned {len(expired)} expired sessions")
        return len(expired)

    def __len__(self) -> int:
        return len(self._sessions)
