"""Tests for accounts, password credentials and sessions."""
import pytest

from app.auth.service import (
    PasswordCredentialVerifier,
    SessionManager,
    UserDirectory,
    hash_password,
    verify_password,
)
from app.config import AuthSettings, SeedAccount
from app.errors import Conflict, InvalidInput, InvalidToken, NotFound, Unauthenticated
from app.storage import InMemoryMessageLog


@pytest.fixture
def backend():
    return InMemoryMessageLog()


@pytest.fixture
def users(backend):
    return UserDirectory(backend, AuthSettings(bcrypt_rounds=4))


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestPasswordHashing:
    def test_hash_round_trip(self):
        encoded = hash_password("correct-horse", rounds=4)
        assert encoded.startswith("$2b$04$")
        assert verify_password("correct-horse", encoded)
        assert not verify_password("wrong-horse", encoded)

    def test_hash_is_salted(self):
        assert hash_password("same", 4) != hash_password("same", 4)

    def test_garbage_hash_never_verifies(self):
        assert not verify_password("anything", "not-a-hash")
        assert not verify_password("anything", "pbkdf2_sha256$1$salt$abc")


class TestUserDirectory:
    def test_signup_normalizes_email(self, users):
        user = users.signup("  Ada@Example.COM ", "correct-horse", "Ada")

        assert user.email == "ada@example.com"
        assert user.id.startswith("user-")
        assert users.get(user.id).displayName == "Ada"

    def test_duplicate_email_is_conflict(self, users):
        """Email uniqueness is case-insensitive."""
        users.signup("ada@example.com", "correct-horse", "Ada")
        with pytest.raises(Conflict):
            users.signup("ADA@example.com", "another-pass", "Other Ada")

    @pytest.mark.parametrize("email,password,name", [
        ("not-an-email", "correct-horse", "Ada"),
        ("ada@example.com", "short", "Ada"),
        ("ada@example.com", "correct-horse", "   "),
        ("ada@example.com", "x" * 73, "Ada"),
    ])
    def test_signup_validation(self, users, email, password, name):
        with pytest.raises(InvalidInput):
            users.signup(email, password, name)

    def test_seed_is_idempotent(self, users):
        accounts = [SeedAccount(email="ada@example.com", password="correct-horse",
                                display_name="Ada", user_id="user-ada")]
        users.seed(accounts)
        users.seed(accounts)

        assert [u.id for u in users.search()] == ["user-ada"]

    def test_search_excludes_deactivated(self, users):
        ada = users.signup("ada@example.com", "correct-horse", "Ada")
        users.signup("grace@example.com", "correct-horse", "Grace")
        users.deactivate(ada.id)

        assert [u.displayName for u in users.search()] == ["Grace"]
        assert [u.displayName for u in users.search("GRA")] == ["Grace"]
        # Deactivated users still resolve, so history keeps its senders
        assert users.require(ada.id).active is False

    def test_update_profile(self, users):
        ada = users.signup("ada@example.com", "correct-horse", "Ada")

        updated = users.update_profile(ada.id, display_name=" Countess ", avatar_ref="a.png")
        assert updated.displayName == "Countess"
        assert users.get(ada.id).avatarRef == "a.png"

        with pytest.raises(InvalidInput):
            users.update_profile(ada.id, display_name="  ")

    def test_require_unknown(self, users):
        with pytest.raises(NotFound):
            users.require("user-missing")


class TestPasswordCredentialVerifier:
    def test_verify(self, backend, users):
        ada = users.signup("ada@example.com", "correct-horse", "Ada")
        verifier = PasswordCredentialVerifier(backend)

        assert verifier.verify("ADA@example.com", "correct-horse") == ada.id

    @pytest.mark.parametrize("email,password", [
        ("ada@example.com", "wrong-horse"),
        ("nobody@example.com", "correct-horse"),
        ("ada@example.com", ""),
    ])
    def test_wrong_credential(self, backend, users, email, password):
        users.signup("ada@example.com", "correct-horse", "Ada")
        with pytest.raises(Unauthenticated):
            PasswordCredentialVerifier(backend).verify(email, password)

    def test_deactivated_cannot_log_in(self, backend, users):
        ada = users.signup("ada@example.com", "correct-horse", "Ada")
        users.deactivate(ada.id)
        with pytest.raises(Unauthenticated):
            PasswordCredentialVerifier(backend).verify("ada@example.com", "correct-horse")


class TestSessionManager:
    def test_issue_and_resolve(self):
        sessions = SessionManager(ttl_seconds=60)
        session = sessions.issue("user-1")
        assert sessions.resolve(session.token) == "user-1"

    def test_tokens_are_unique(self):
        sessions = SessionManager(ttl_seconds=60)
        assert sessions.issue("user-1").token != sessions.issue("user-1").token

    def test_unknown_token(self):
        with pytest.raises(InvalidToken):
            SessionManager(ttl_seconds=60).resolve("forged")
        with pytest.raises(InvalidToken):
            SessionManager(ttl_seconds=60).resolve(None)

    def test_expiry(self):
        clock = FakeClock()
        sessions = SessionManager(ttl_seconds=60, clock=clock)
        token = sessions.issue("user-1").token

        clock.now += 59
        assert sessions.resolve(token) == "user-1"
        clock.now += 1
        with pytest.raises(InvalidToken):
            sessions.resolve(token)

    def test_revoke(self):
        sessions = SessionManager(ttl_seconds=60)
        token = sessions.issue("user-1").token

        assert sessions.revoke(token) == "user-1"
        assert sessions.revoke(token) is None
        with pytest.raises(InvalidToken):
            sessions.resolve(token)

    def test_revoke_user(self):
        sessions = SessionManager(ttl_seconds=60)
        first = sessions.issue("user-1").token
        second = sessions.issue("user-1").token
        other = sessions.issue("user-2").token

        assert sessions.revoke_user("user-1") == 2
        for token in (first, second):
            with pytest.raises(InvalidToken):
                sessions.resolve(token)
        assert sessions.resolve(other) == "user-2"

    def test_issue_prunes_expired_sessions(self):
        clock = FakeClock()
        sessions = SessionManager(ttl_seconds=60, clock=clock)
        for _ in range(3):
            sessions.issue("user-1")
        assert len(sessions) == 3

        clock.now += 60
        fresh = sessions.issue("user-2").token

        assert len(sessions) == 1
        assert sessions.resolve(fresh) == "user-2"
        assert sessions.prune() == 0
