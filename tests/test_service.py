"""
tests/test_service.py -- Orchestrator tests for auth/service.py.

These run the real store, limiter and token service on in-memory SQLite, and
swap in a MagicMock store only where a backend misbehaviour has to be staged
(timeouts, a conflict whose record then cannot be read back).

Coverage:
  - Register -> login -> wrong password -> 6th rapid register rate limited
  - Unknown email, wrong password and malformed login input fail identically
  - Validation: email shape, password policy (including the 72-byte bcrypt
    ceiling), role allow-list, registration switch
  - Duplicate registration: same credentials converge, different ones conflict
  - Conflict with no readable record -> BackendInconsistency (retryable)
  - Store timeouts -> ServiceUnavailable (retryable)
  - Legacy hash migration on successful login, under the service's own
    Settings (plaintext flag, bcrypt cost)
  - Inactive accounts cannot log in or refresh
  - OAuth: create on first login, link by email, unverified email refused,
    create-conflict recovery
  - Refresh rotation and every failure mapped to SessionExpired
  - change_password() and authenticate()
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from auth.models import ExternalIdentity, StoreResult, StoreStatus, TokenType, User
from auth.passwords import BCRYPT, hash_legacy_sha256, hash_password, identify_scheme
from auth.service import AuthService
from core.errors import (
    BackendInconsistency,
    InvalidCredentials,
    RateLimited,
    RegistrationConflict,
    ServiceUnavailable,
    SessionExpired,
    TokenWrongType,
    ValidationError,
)

IP = "203.0.113.7"
PASSWORD = "Secret1!"


def _stub_service(service: AuthService, store: MagicMock) -> AuthService:
    """Same limiter and token service, staged store."""
    return AuthService(store, service.limiter, service.tokens, service.settings)


# ---------------------------------------------------------------------------
# The canonical flow
# ---------------------------------------------------------------------------


class TestRegisterLoginFlow:
    def test_register_then_login(self, service: AuthService) -> None:
        """Register succeeds, login yields a token for the subject, wrong password is refused."""
        registered = service.register("a@test.com", PASSWORD, "customer", caller_ip=IP)
        assert registered.user.email == "a@test.com"
        assert registered.user.role == "customer"
        assert not hasattr(registered.user, "password_hash")

        result = service.login("a@test.com", PASSWORD, caller_ip=IP)
        claims = service.tokens.verify(result.tokens.access_token, TokenType.ACCESS)
        assert claims.subject == "a@test.com"
        assert claims.role == "customer"

        with pytest.raises(InvalidCredentials):
            service.login("a@test.com", "wrong", caller_ip=IP)

    def test_sixth_rapid_register_is_rate_limited(self, service: AuthService) -> None:
        for i in range(5):
            service.register(f"user{i}@test.com", PASSWORD, "customer", caller_ip=IP)
        with pytest.raises(RateLimited) as exc_info:
            service.register("user5@test.com", PASSWORD, "customer", caller_ip=IP)
        assert exc_info.value.retry_after_ms > 0
        # The sixth account was never created.
        assert service.store.find_by_email("user5@test.com").status is StoreStatus.NOT_FOUND

    def test_register_limit_resets_after_window(self, service: AuthService, clock) -> None:
        for i in range(5):
            service.register(f"user{i}@test.com", PASSWORD, caller_ip=IP)
        clock.advance(service.settings.register_window_ms / 1000)
        assert service.register("late@test.com", PASSWORD, caller_ip=IP).user.email == "late@test.com"

    def test_login_rate_limited_even_with_right_password(self, service: AuthService) -> None:
        service.register("a@test.com", PASSWORD, caller_ip=IP)
        for _ in range(5):
            service.login("a@test.com", PASSWORD, caller_ip=IP)
        with pytest.raises(RateLimited):
            service.login("a@test.com", PASSWORD, caller_ip=IP)

    def test_limit_falls_back_to_email_without_ip(self, service: AuthService) -> None:
        service.register("a@test.com", PASSWORD)
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login("A@test.com", "Wrong1!x")
        with pytest.raises(RateLimited):
            service.login("a@test.com", PASSWORD)
        # A different caller IP has its own window.
        assert service.login("a@test.com", PASSWORD, caller_ip=IP).user.email == "a@test.com"

    def test_default_role_and_email_normalization(self, service: AuthService) -> None:
        result = service.register("  New.User@Test.COM ", PASSWORD, caller_ip=IP)
        assert result.user.email == "new.user@test.com"
        assert result.user.role == service.settings.default_role
        assert service.login("NEW.USER@test.com", PASSWORD, caller_ip=IP).user.id == result.user.id


# ---------------------------------------------------------------------------
# Enumeration resistance
# ---------------------------------------------------------------------------


class TestEnumerationResistance:
    def test_unknown_email_and_wrong_password_identical(self, service: AuthService) -> None:
        service.register("a@test.com", PASSWORD, caller_ip=IP)
        with pytest.raises(InvalidCredentials) as unknown:
            service.login("ghost@test.com", PASSWORD, caller_ip=IP)
        with pytest.raises(InvalidCredentials) as wrong:
            service.login("a@test.com", "Wrong1!x", caller_ip=IP)
        assert type(unknown.value) is type(wrong.value)
        assert unknown.value.to_dict() == wrong.value.to_dict()
        assert "ghost" not in unknown.value.message

    @pytest.mark.parametrize(
        ("email", "password"),
        [("no-at-sign", PASSWORD), ("", PASSWORD), (42, PASSWORD), ("a@test.com", ""), ("a@test.com", "Aa1!" + "x" * 96)],
    )
    def test_malformed_login_input_is_invalid_credentials(self, service: AuthService, email, password) -> None:
        service.register("a@test.com", PASSWORD, caller_ip=IP)
        with pytest.raises(InvalidCredentials) as malformed:
            service.login(email, password, caller_ip=IP)
        with pytest.raises(InvalidCredentials) as wrong:
            service.login("a@test.com", "Wrong1!x", caller_ip=IP)
        assert malformed.value.to_dict() == wrong.value.to_dict()

    def test_oauth_only_account_rejects_password(self, service: AuthService) -> None:
        service.store.create("o@test.com", None, "customer", "github", "1")
        with pytest.raises(InvalidCredentials):
            service.login("o@test.com", PASSWORD, caller_ip=IP)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    @pytest.mark.parametrize("email", ["", "no-at-sign", "a@b", "two@@test.com", "sp ace@test.com", 42])
    def test_bad_email(self, service: AuthService, email) -> None:
        with pytest.raises(ValidationError):
            service.register(email, PASSWORD, caller_ip=IP)

    @pytest.mark.parametrize("password", ["short1!", "alllowercase1!", "NoDigits!!", "NoSpecial11", ""])
    def test_weak_password(self, service: AuthService, password: str) -> None:
        with pytest.raises(ValidationError):
            service.register("a@test.com", password, caller_ip=IP)

    def test_password_over_bcrypt_byte_limit(self, service: AuthService) -> None:
        # 44 characters, 84 UTF-8 bytes: short enough by count, too long for bcrypt.
        password = "Aa1!" + "\u00e9" * 40
        with pytest.raises(ValidationError, match="72 bytes"):
            service.register("long@test.com", password, caller_ip=IP)

    def test_password_at_byte_limit_registers_and_logs_in(self, service: AuthService) -> None:
        password = "Aa1!" + "x" * 68
        assert len(password.encode("utf-8")) == 72
        service.register("edge@test.com", password, caller_ip=IP)
        assert service.login("edge@test.com", password, caller_ip=IP).user.email == "edge@test.com"

    def test_role_outside_allow_list(self, service: AuthService) -> None:
        with pytest.raises(ValidationError, match="Role"):
            service.register("a@test.com", PASSWORD, "admin", caller_ip=IP)

    def test_registration_disabled(self, service_factory) -> None:
        closed = service_factory(self_registration_enabled=False)
        with pytest.raises(ValidationError, match="disabled"):
            closed.register("a@test.com", PASSWORD, caller_ip=IP)

    def test_validation_is_not_retryable(self) -> None:
        assert ValidationError().retryable is False


# ---------------------------------------------------------------------------
# Duplicate registration and race recovery
# ---------------------------------------------------------------------------


class TestRegistrationConflicts:
    def test_retry_with_same_credentials_converges(self, service: AuthService) -> None:
        """A resubmitted registration (timeout + retry, double click) succeeds on the same account."""
        first = service.register("a@test.com", PASSWORD, "seller", caller_ip=IP)
        second = service.register("A@test.com", PASSWORD, "seller", caller_ip=IP)
        assert second.user.id == first.user.id
        assert second.tokens.access_token != first.tokens.access_token
        assert len(service.store.list_users()) == 1

    def test_different_password_conflicts(self, service: AuthService) -> None:
        service.register("a@test.com", PASSWORD, caller_ip=IP)
        with pytest.raises(RegistrationConflict) as exc_info:
            service.register("a@test.com", "Other1!pass", caller_ip=IP)
        assert exc_info.value.status_code == 409
        assert exc_info.value.retryable is False

    def test_different_role_conflicts(self, service: AuthService) -> None:
        service.register("a@test.com", PASSWORD, "customer", caller_ip=IP)
        with pytest.raises(RegistrationConflict):
            service.register("a@test.com", PASSWORD, "seller", caller_ip=IP)

    def test_conflict_without_readable_record(self, service: AuthService) -> None:
        store = MagicMock()
        store.create.return_value = StoreResult(StoreStatus.CONFLICT)
        store.find_by_email.return_value = StoreResult(StoreStatus.NOT_FOUND)
        with pytest.raises(BackendInconsistency) as exc_info:
            _stub_service(service, store).register("a@test.com", PASSWORD, caller_ip=IP)
        assert exc_info.value.retryable is True

    @pytest.mark.parametrize("status", [StoreStatus.TIMEOUT, StoreStatus.UNKNOWN])
    def test_create_failure_is_service_unavailable(self, service: AuthService, status: StoreStatus) -> None:
        store = MagicMock()
        store.create.return_value = StoreResult(status)
        with pytest.raises(ServiceUnavailable) as exc_info:
            _stub_service(service, store).register("a@test.com", PASSWORD, caller_ip=IP)
        assert exc_info.value.retryable is True

    def test_login_store_timeout(self, service: AuthService) -> None:
        store = MagicMock()
        store.find_by_email.return_value = StoreResult(StoreStatus.TIMEOUT)
        with pytest.raises(ServiceUnavailable):
            _stub_service(service, store).login("a@test.com", PASSWORD, caller_ip=IP)


# ---------------------------------------------------------------------------
# Legacy hashes and account status
# ---------------------------------------------------------------------------


class TestLegacyMigration:
    def test_sha256_hash_migrated_on_login(self, service: AuthService) -> None:
        service.store.create("old@test.com", hash_legacy_sha256(PASSWORD, "s4lt"), "customer")
        service.login("old@test.com", PASSWORD, caller_ip=IP)
        stored = service.store.find_by_email("old@test.com").user.password_hash
        assert identify_scheme(stored) == BCRYPT
        # Still the same password afterwards.
        assert service.login("old@test.com", PASSWORD, caller_ip=IP).user.email == "old@test.com"

    def test_plaintext_migrated_when_enabled(self, service_factory) -> None:
        legacy = service_factory(legacy_plaintext_passwords=True)
        legacy.store.create("plain@test.com", PASSWORD, "customer")
        assert legacy.login("plain@test.com", PASSWORD, caller_ip=IP).user.email == "plain@test.com"
        assert identify_scheme(legacy.store.find_by_email("plain@test.com").user.password_hash) == BCRYPT

    def test_plaintext_flag_comes_from_service_settings(self, service_factory, legacy_plaintext) -> None:
        """The environment says yes, this service's Settings say no: the service wins."""
        strict = service_factory(legacy_plaintext_passwords=False)
        strict.store.create("plain@test.com", PASSWORD, "customer")
        with pytest.raises(InvalidCredentials):
            strict.login("plain@test.com", PASSWORD, caller_ip=IP)

    def test_bcrypt_cost_comes_from_service_settings(self, service_factory) -> None:
        costly = service_factory(bcrypt_rounds=5)
        costly.register("cost@test.com", PASSWORD, caller_ip=IP)
        stored = costly.store.find_by_email("cost@test.com").user.password_hash
        assert stored.split("$")[2] == "05"

    def test_under_cost_hash_upgraded_to_service_cost(self, service_factory) -> None:
        costly = service_factory(bcrypt_rounds=5)
        costly.store.create("old@test.com", hash_password(PASSWORD, rounds=4), "customer")
        costly.login("old@test.com", PASSWORD, caller_ip=IP)
        stored = costly.store.find_by_email("old@test.com").user.password_hash
        assert stored.split("$")[2] == "05"

    def test_plaintext_refused_by_default(self, service: AuthService) -> None:
        service.store.create("plain@test.com", PASSWORD, "customer")
        with pytest.raises(InvalidCredentials):
            service.login("plain@test.com", PASSWORD, caller_ip=IP)

    def test_failed_migration_write_still_logs_in(self, service: AuthService) -> None:
        legacy = User(email="old@test.com", role="customer", password_hash=hash_legacy_sha256(PASSWORD, "s"))
        store = MagicMock()
        store.find_by_email.return_value = StoreResult(StoreStatus.OK, legacy)
        store.update_password.return_value = StoreResult(StoreStatus.TIMEOUT)
        result = _stub_service(service, store).login("old@test.com", PASSWORD, caller_ip=IP)
        assert result.user.email == "old@test.com"


class TestInactiveAccounts:
    def test_inactive_cannot_log_in(self, service: AuthService) -> None:
        service.register("a@test.com", PASSWORD, caller_ip=IP)
        service.store.update_status("a@test.com", "inactive")
        with pytest.raises(InvalidCredentials):
            service.login("a@test.com", PASSWORD, caller_ip=IP)

    def test_inactive_cannot_refresh(self, service: AuthService) -> None:
        pair = service.register("a@test.com", PASSWORD, caller_ip=IP).tokens
        service.store.update_status("a@test.com", "inactive")
        with pytest.raises(SessionExpired):
            service.refresh(pair.refresh_token)


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


def _identity(email: str = "o@test.com", subject: str = "4242", verified: bool = True) -> ExternalIdentity:
    return ExternalIdentity(provider="github", subject=subject, email=email, email_verified=verified)


class TestOAuthLogin:
    def test_first_login_creates_oauth_only_account(self, service: AuthService) -> None:
        result = service.oauth_login(_identity(), caller_ip=IP)
        assert result.user.email == "o@test.com"
        assert result.user.oauth_provider == "github"
        stored = service.store.find_by_email("o@test.com").user
        assert stored.password_hash is None

    def test_second_login_reuses_account(self, service: AuthService) -> None:
        first = service.oauth_login(_identity(), caller_ip=IP)
        # The provider may report a changed email; the linked subject wins.
        second = service.oauth_login(_identity(email="renamed@test.com"), caller_ip=IP)
        assert second.user.id == first.user.id

    def test_existing_password_account_is_linked(self, service: AuthService) -> None:
        registered = service.register("a@test.com", PASSWORD, caller_ip=IP)
        result = service.oauth_login(_identity(email="A@test.com"), caller_ip=IP)
        assert result.user.id == registered.user.id
        assert service.store.find_by_oauth("github", "4242").user.email == "a@test.com"
        # Password login keeps working.
        assert service.login("a@test.com", PASSWORD, caller_ip=IP).user.id == registered.user.id

    def test_unverified_email_refused(self, service: AuthService) -> None:
        with pytest.raises(ValidationError):
            service.oauth_login(_identity(verified=False), caller_ip=IP)
        assert service.store.find_by_email("o@test.com").status is StoreStatus.NOT_FOUND

    def test_create_conflict_recovers(self, service: AuthService) -> None:
        """A concurrent first login created the account between our lookup and our create."""
        winner = User(email="o@test.com", role="customer", id=7)
        store = MagicMock()
        store.find_by_oauth.return_value = StoreResult(StoreStatus.NOT_FOUND)
        store.find_by_email.side_effect = [StoreResult(StoreStatus.NOT_FOUND), StoreResult(StoreStatus.OK, winner)]
        store.create.return_value = StoreResult(StoreStatus.CONFLICT)
        store.link_oauth.return_value = StoreResult(StoreStatus.OK)
        result = _stub_service(service, store).oauth_login(_identity(), caller_ip=IP)
        assert result.user.id == 7
        store.link_oauth.assert_called_once_with("o@test.com", "github", "4242")

    def test_create_conflict_without_record(self, service: AuthService) -> None:
        store = MagicMock()
        store.find_by_oauth.return_value = StoreResult(StoreStatus.NOT_FOUND)
        store.find_by_email.return_value = StoreResult(StoreStatus.NOT_FOUND)
        store.create.return_value = StoreResult(StoreStatus.CONFLICT)
        with pytest.raises(BackendInconsistency):
            _stub_service(service, store).oauth_login(_identity(), caller_ip=IP)

    def test_oauth_rate_limited(self, service: AuthService) -> None:
        for _ in range(service.settings.oauth_max_attempts):
            service.oauth_login(_identity(), caller_ip=IP)
        with pytest.raises(RateLimited):
            service.oauth_login(_identity(), caller_ip=IP)


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_returns_new_pair(self, service: AuthService, clock) -> None:
        pair = service.register("a@test.com", PASSWORD, caller_ip=IP).tokens
        clock.advance(600)
        rotated = service.refresh(pair.refresh_token)
        assert rotated.refresh_token != pair.refresh_token
        assert service.authenticate(rotated.access_token).subject == "a@test.com"

    def test_reused_refresh_token_expires_session(self, service: AuthService) -> None:
        pair = service.register("a@test.com", PASSWORD, caller_ip=IP).tokens
        service.refresh(pair.refresh_token)
        with pytest.raises(SessionExpired):
            service.refresh(pair.refresh_token)

    @pytest.mark.parametrize("token", ["", "garbage", None])
    def test_unusable_token(self, service: AuthService, token) -> None:
        with pytest.raises(SessionExpired):
            service.refresh(token)

    def test_access_token_is_not_a_refresh_token(self, service: AuthService) -> None:
        pair = service.register("a@test.com", PASSWORD, caller_ip=IP).tokens
        with pytest.raises(SessionExpired):
            service.refresh(pair.access_token)

    def test_expired_refresh_token(self, service: AuthService, clock) -> None:
        pair = service.register("a@test.com", PASSWORD, caller_ip=IP).tokens
        clock.advance(service.settings.refresh_token_expire_seconds + 1)
        with pytest.raises(SessionExpired):
            service.refresh(pair.refresh_token)

    def test_session_expired_is_not_retryable(self) -> None:
        assert SessionExpired().to_dict()["code"] == "session_expired"
        assert SessionExpired().retryable is False


# ---------------------------------------------------------------------------
# Password change, authenticate, maintenance
# ---------------------------------------------------------------------------


class TestChangePassword:
    def test_change_password(self, service: AuthService) -> None:
        service.register("a@test.com", PASSWORD, caller_ip=IP)
        user = service.change_password("a@test.com", PASSWORD, "Newer2@pass", caller_ip=IP)
        assert user.email == "a@test.com"
        with pytest.raises(InvalidCredentials):
            service.login("a@test.com", PASSWORD, caller_ip=IP)
        assert service.login("a@test.com", "Newer2@pass", caller_ip=IP).user.email == "a@test.com"

    def test_wrong_current_password(self, service: AuthService) -> None:
        service.register("a@test.com", PASSWORD, caller_ip=IP)
        with pytest.raises(InvalidCredentials):
            service.change_password("a@test.com", "Wrong1!x", "Newer2@pass", caller_ip=IP)

    def test_new_password_policy_applies(self, service: AuthService) -> None:
        service.register("a@test.com", PASSWORD, caller_ip=IP)
        with pytest.raises(ValidationError):
            service.change_password("a@test.com", PASSWORD, "weak", caller_ip=IP)

    def test_over_long_current_password(self, service: AuthService) -> None:
        service.register("a@test.com", PASSWORD, caller_ip=IP)
        with pytest.raises(InvalidCredentials):
            service.change_password("a@test.com", "Aa1!" + "x" * 96, "Newer2@pass", caller_ip=IP)

    def test_unknown_account(self, service: AuthService) -> None:
        with pytest.raises(InvalidCredentials):
            service.change_password("ghost@test.com", PASSWORD, "Newer2@pass", caller_ip=IP)


class TestAuthenticate:
    def test_access_token_accepted(self, service: AuthService) -> None:
        pair = service.register("a@test.com", PASSWORD, "seller", caller_ip=IP).tokens
        claims = service.authenticate(pair.access_token)
        assert claims.role == "seller"

    def test_refresh_token_refused(self, service: AuthService) -> None:
        pair = service.register("a@test.com", PASSWORD, caller_ip=IP).tokens
        with pytest.raises(TokenWrongType):
            service.authenticate(pair.refresh_token)


class TestMaintenance:
    def test_purge_expired(self, service: AuthService, clock) -> None:
        pair = service.register("a@test.com", PASSWORD, caller_ip=IP).tokens
        service.refresh(pair.refresh_token)
        assert service.purge_expired() == (0, 0)

        clock.advance(service.settings.refresh_token_expire_seconds + 1)
        rate_rows, ledger_rows = service.purge_expired()
        assert rate_rows == 1  # the register window
        assert ledger_rows == 1
