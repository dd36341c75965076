"""Unit tests for the login orchestrator."""

import pytest

from sevr.config import AuthConfig
from sevr.service.auth import AuthService, validate_email_address
from sevr.service.errors import (
    AuthenticationError,
    CodeNotFound,
    InvalidToken,
    NotFoundError,
    ValidationError,
)
from sevr.service.otp import OTPManager
from sevr.service.tokens import TokenService
from sevr.storage.errors import ConstraintViolation
from sevr.storage.memory import MemoryStore


class RecordingNotifier:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def user_signed_up(self, email, timestamp):
        self.calls.append((email, timestamp))
        if self.error is not None:
            raise self.error


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def config():
    return AuthConfig(
        signing_secret="auth-service-test-secret-abcdefghij",
        admin_allowlist=frozenset({"admin@example.com"}),
    )


@pytest.fixture
def auth(store, config, notifier):
    return AuthService(
        store, OTPManager(store), TokenService(store, config), config, notifier=notifier
    )


def _login(auth, store, email):
    auth.request_code(email)
    otp = store.get_latest_otp(email.strip().lower())
    return auth.verify_code(email, otp.code)


class TestValidateEmail:
    @pytest.mark.parametrize("email", [None, "", "   "])
    def test_missing(self, email):
        with pytest.raises(ValidationError) as exc_info:
            validate_email_address(email)
        assert exc_info.value.message == "Email is required"

    @pytest.mark.parametrize(
        "email", ["plain", "no-at.example.com", "a@b", "a b@example.com", "a@@example.com"]
    )
    def test_bad_format(self, email):
        with pytest.raises(ValidationError) as exc_info:
            validate_email_address(email)
        assert exc_info.value.message == "Invalid email format"

    def test_too_long(self):
        with pytest.raises(ValidationError):
            validate_email_address("a" * 250 + "@example.com")

    def test_normalizes(self):
        assert validate_email_address("  Mixed@Example.COM ") == "mixed@example.com"


class TestLogin:
    def test_first_login_creates_user(self, auth, store, notifier):
        result = _login(auth, store, "a@x.com")
        assert result.is_new_user is True
        assert result.user.email == "a@x.com"
        assert store.get_user_by_email("a@x.com").id == result.user.id
        assert [email for email, _ in notifier.calls] == ["a@x.com"]

    def test_second_login_reuses_user(self, auth, store, notifier):
        first = _login(auth, store, "a@x.com")
        second = _login(auth, store, "A@X.com")
        assert second.is_new_user is False
        assert second.user.id == first.user.id
        assert len(notifier.calls) == 1

    def test_tokens_are_usable(self, auth, store):
        result = _login(auth, store, "a@x.com")
        claims = auth.authenticate(f"Bearer {result.access_token}")
        assert claims.user_id == result.user.id
        access, user = auth.refresh(result.refresh_token)
        assert user.id == result.user.id
        assert auth.authenticate(f"Bearer {access}").email == "a@x.com"

    def test_reused_code_fails(self, auth, store):
        auth.request_code("a@x.com")
        code = store.get_latest_otp("a@x.com").code
        auth.verify_code("a@x.com", code)
        with pytest.raises(CodeNotFound):
            auth.verify_code("a@x.com", code)

    def test_request_code_rejects_bad_email(self, auth, store):
        with pytest.raises(ValidationError):
            auth.request_code("not-an-email")
        assert store.otps == {}

    def test_admin_allowlist_escalates(self, auth, store):
        result = _login(auth, store, "Admin@Example.com")
        assert result.user.is_admin is True
        assert auth.authenticate(f"Bearer {result.access_token}").is_admin is True

    def test_existing_user_escalated_on_next_login(self, auth, store):
        store.create_user("admin@example.com")
        result = _login(auth, store, "admin@example.com")
        assert result.is_new_user is False
        assert result.user.is_admin is True

    def test_notifier_failure_does_not_block_login(self, store, config):
        failing = RecordingNotifier(error=RuntimeError("webhook down"))
        auth = AuthService(
            store, OTPManager(store), TokenService(store, config), config, notifier=failing
        )
        result = _login(auth, store, "b@x.com")
        assert result.is_new_user is True

    def test_concurrent_creation_race(self, auth, store, monkeypatch):
        existing = store.create_user("race@x.com")
        calls = {"count": 0}
        original = store.get_user_by_email

        def miss_first_time(email):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return original(email)

        monkeypatch.setattr(store, "get_user_by_email", miss_first_time)
        auth.request_code("race@x.com")
        code = next(o.code for o in store.otps.values() if o.email == "race@x.com")
        result = auth.verify_code("race@x.com", code)
        assert result.user.id == existing.id
        assert result.is_new_user is False

    def test_duplicate_create_raises_constraint(self, store):
        store.create_user("dup@x.com")
        with pytest.raises(ConstraintViolation):
            store.create_user("DUP@x.com")


class TestLogout:
    def test_logout_revokes_refresh(self, auth, store):
        result = _login(auth, store, "a@x.com")
        auth.logout(result.refresh_token)
        with pytest.raises(InvalidToken):
            auth.refresh(result.refresh_token)

    def test_logout_unknown_token_is_fine(self, auth):
        auth.logout("unknown-token")


class TestAuthenticate:
    @pytest.mark.parametrize("header", [None, "", "Token abc", "Bearer ", "Bearer not.a.jwt"])
    def test_rejects(self, auth, header):
        with pytest.raises(AuthenticationError):
            auth.authenticate(header)


class TestAccount:
    def test_get_profile(self, auth, store):
        result = _login(auth, store, "a@x.com")
        assert auth.get_profile(result.user.id).email == "a@x.com"
        with pytest.raises(NotFoundError):
            auth.get_profile("missing")

    def test_delete_account(self, auth, store):
        result = _login(auth, store, "a@x.com")
        store.put_vault_blob(result.user.id, "cipher", "iv")
        auth.delete_account(result.user.id)
        assert store.get_user(result.user.id) is None
        assert store.get_vault_blob(result.user.id) is None
        with pytest.raises(InvalidToken):
            auth.refresh(result.refresh_token)
        with pytest.raises(NotFoundError):
            auth.delete_account(result.user.id)
