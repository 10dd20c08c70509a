"""
auth/service.py -- Registration / login orchestrator.

Composes the Rate Limiter, the Credential Store and the Token Service into the
four public operations: register, login, oauth_login, refresh (plus
change_password and authenticate for the HTTP adapter).

Control flow for every entry point:
  rate limit -> validate / normalize -> store read or write -> issue tokens

Race safety:
  Nothing here trusts an earlier existence check over the outcome of a write.
  register() does not even look before it leaps: it calls store.create() and
  lets the UNIQUE(email) constraint pick the winner. On a CONFLICT tag it
  re-reads the record:

    record found and the caller's credentials match it
        -> the duplicate was this caller's own retry (timeout + resubmit,
           double click). Succeed exactly as if this call had created it.
    record found, credentials differ
        -> a genuinely different registration owns the email:
           RegistrationConflict.
    no record
        -> the store's create and find views disagree. Logged as a warning,
           surfaced as retryable BackendInconsistency.

  oauth_login() applies the same recovery to its create-on-first-login step.
  There is no multi-step transaction: if a caller disappears after create()
  and before token issue, its retry lands in the "credentials match" branch
  and converges on the same account.

Error policy:
  Store results arrive as tags; timeout/unknown become ServiceUnavailable.
  Hashing and signing exceptions are caught here and mapped to
  ServiceUnavailable. Login never distinguishes unknown email from wrong
  password -- both get the same InvalidCredentials after the same bcrypt work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from jose import JWTError

from auth.models import (
    AuthResult,
    ExternalIdentity,
    PublicUser,
    StoreResult,
    StoreStatus,
    TokenClaims,
    TokenPair,
    TokenType,
    User,
)
from auth.passwords import dummy_verify, hash_password, identify_scheme, needs_rehash, verify_password
from auth.ratelimit import RateLimiter, RateLimitStore
from auth.store import UserStore, normalize_email
from auth.tokens import TokenService
from auth.validation import validate_email, validate_login_password, validate_new_password, validate_role
from core.config import Settings, get_settings
from core.errors import (
    BackendInconsistency,
    InvalidCredentials,
    RegistrationConflict,
    ServiceUnavailable,
    SessionExpired,
    TokenError,
    ValidationError,
)

logger = logging.getLogger("identity.auth")


class AuthService:
    """Stateless orchestrator: safe to run as many independent instances.

    Usage:
        service = AuthService(user_store, RateLimiter(rate_store), TokenService(store=user_store))
        result = service.register("a@test.com", "Secret1!", "customer", caller_ip="203.0.113.7")
        result.user, result.tokens.access_token
    """

    def __init__(
        self,
        store: UserStore,
        limiter: RateLimiter,
        tokens: TokenService,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.tokens = tokens
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        role: str | None = None,
        caller_ip: str | None = None,
    ) -> AuthResult:
        self._enforce_limit("register", caller_ip, email)
        if not self.settings.self_registration_enabled:
            raise ValidationError("Registration is disabled.")

        normalized = validate_email(email)
        role = validate_role(role or self.settings.default_role, self.settings)
        validate_new_password(password, self.settings)

        created = self.store.create(normalized, self._hash(password), role)
        if created.status is StoreStatus.OK:
            logger.info("Registered %s (%s)", normalized, role)
            user = created.user
        elif created.status is StoreStatus.CONFLICT:
            user = self._resolve_registration_conflict(normalized, password, role)
        else:
            raise self._unavailable("create", created)
        return self._authenticated(user)

    def _resolve_registration_conflict(self, email: str, password: str, role: str) -> User:
        found = self.store.find_by_email(email)
        if found.status is StoreStatus.NOT_FOUND:
            logger.warning("Registration conflict for %s but no record is readable -- store views out of sync", email)
            raise BackendInconsistency()
        if not found.ok:
            raise self._unavailable("find_by_email", found)

        user = found.user
        if user.role == role and user.is_active and self._verify(password, user.password_hash):
            logger.info("Registration for %s resolved idempotently", email)
            return user
        raise RegistrationConflict()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, caller_ip: str | None = None) -> AuthResult:
        """Authenticate with email + password [C1].

        Always runs one bcrypt verification, whether or not the user exists,
        so response time does not reveal registered emails either. Malformed
        input fails with the same InvalidCredentials before any lookup.
        """
        self._enforce_limit("login", caller_ip, email)
        normalized = self._login_input(email, password)

        found = self.store.find_by_email(normalized)
        if found.status is StoreStatus.NOT_FOUND:
            user = None
        elif found.ok:
            user = found.user
        else:
            raise self._unavailable("find_by_email", found)

        if user is None or user.password_hash is None:
            # Equalize timing -- do NOT return before running bcrypt.
            dummy_verify(password, rounds=self.settings.bcrypt_rounds)
            raise InvalidCredentials()
        if not self._verify(password, user.password_hash):
            raise InvalidCredentials()
        if not user.is_active:
            raise InvalidCredentials()

        if needs_rehash(user.password_hash, rounds=self.settings.bcrypt_rounds):
            self._migrate_hash(user, password)
        return self._authenticated(user)

    def _migrate_hash(self, user: User, password: str) -> None:
        """Re-hash a deprecated or under-cost hash with the current scheme.

        Best effort: the login already succeeded, so a failed write is logged
        and retried naturally on the next login.
        """
        old_scheme = identify_scheme(user.password_hash)
        try:
            new_hash = hash_password(password, rounds=self.settings.bcrypt_rounds)
        except ValueError as exc:
            logger.warning("Password hash migration for %s skipped (%s)", user.email, type(exc).__name__)
            return
        result = self.store.update_password(user.email, new_hash)
        if result.ok:
            user.password_hash = new_hash
            logger.info("Migrated password hash for %s from %s", user.email, old_scheme)
        else:
            logger.warning("Password hash migration for %s deferred (%s)", user.email, result.status.value)

    # ------------------------------------------------------------------
    # OAuth login
    # ------------------------------------------------------------------

    def oauth_login(
        self,
        identity: ExternalIdentity,
        role: str | None = None,
        caller_ip: str | None = None,
    ) -> AuthResult:
        """Sign in (creating the account on first use) from a provider-asserted identity.

        Lookup order: linked (provider, subject) -> email (link on first use)
        -> create an OAuth-only account. Creation collisions get the same
        re-check-and-proceed recovery as register().
        """
        self._enforce_limit("oauth", caller_ip, identity.email)
        if not identity.email_verified:
            raise ValidationError("The provider did not confirm this email address.")
        email = validate_email(identity.email)
        role = validate_role(role or self.settings.default_role, self.settings)

        linked = self.store.find_by_oauth(identity.provider, identity.subject)
        if linked.ok:
            user = linked.user
        elif linked.status is StoreStatus.NOT_FOUND:
            user = self._oauth_find_or_create(email, role, identity)
        else:
            raise self._unavailable("find_by_oauth", linked)

        if not user.is_active:
            raise InvalidCredentials()
        return self._authenticated(user)

    def _oauth_find_or_create(self, email: str, role: str, identity: ExternalIdentity) -> User:
        found = self.store.find_by_email(email)
        if found.ok:
            return self._link(found.user, identity)
        if found.status is not StoreStatus.NOT_FOUND:
            raise self._unavailable("find_by_email", found)

        created = self.store.create(email, None, role, identity.provider, identity.subject)
        if created.ok:
            logger.info("Created %s via %s", email, identity.provider)
            return created.user
        if created.status is not StoreStatus.CONFLICT:
            raise self._unavailable("create", created)

        recheck = self.store.find_by_email(email)
        if recheck.ok:
            logger.info("OAuth registration for %s resolved idempotently", email)
            return self._link(recheck.user, identity)
        if recheck.status is StoreStatus.NOT_FOUND:
            logger.warning("OAuth conflict for %s but no record is readable -- store views out of sync", email)
            raise BackendInconsistency()
        raise self._unavailable("find_by_email", recheck)

    def _link(self, user: User, identity: ExternalIdentity) -> User:
        if user.oauth_subject is not None:
            return user
        result = self.store.link_oauth(user.email, identity.provider, identity.subject)
        if result.ok:
            user.oauth_provider = identity.provider
            user.oauth_subject = identity.subject
        else:
            logger.warning("Linking %s to %s deferred (%s)", user.email, identity.provider, result.status.value)
        return user

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token into a new pair, or fail with SessionExpired.

        The account is re-read first so a deleted or deactivated user cannot
        keep a session alive by rotating.
        """
        if not isinstance(refresh_token, str) or not refresh_token:
            raise SessionExpired()
        try:
            claims = self.tokens.verify(refresh_token, TokenType.REFRESH)
        except TokenError as exc:
            logger.debug("Refresh rejected: %s", exc.code)
            raise SessionExpired() from None

        found = self.store.find_by_email(claims.subject)
        if found.status is StoreStatus.NOT_FOUND or (found.ok and not found.user.is_active):
            raise SessionExpired()
        if not found.ok:
            raise self._unavailable("find_by_email", found)

        try:
            return self.tokens.refresh(refresh_token)
        except TokenError as exc:
            logger.debug("Refresh rejected: %s", exc.code)
            raise SessionExpired() from None

    # ------------------------------------------------------------------
    # Password change / request authentication
    # ------------------------------------------------------------------

    def change_password(
        self,
        email: str,
        current_password: str,
        new_password: str,
        caller_ip: str | None = None,
    ) -> PublicUser:
        # Counts against the login limit: it is another way to guess a password.
        self._enforce_limit("login", caller_ip, email)
        normalized = self._login_input(email, current_password)
        validate_new_password(new_password, self.settings)

        found = self.store.find_by_email(normalized)
        if not found.ok and found.status is not StoreStatus.NOT_FOUND:
            raise self._unavailable("find_by_email", found)
        user = found.user
        if user is None or user.password_hash is None:
            dummy_verify(current_password, rounds=self.settings.bcrypt_rounds)
            raise InvalidCredentials()
        if not self._verify(current_password, user.password_hash) or not user.is_active:
            raise InvalidCredentials()

        updated = self.store.update_password(normalized, self._hash(new_password))
        if updated.status is StoreStatus.NOT_FOUND:
            raise InvalidCredentials()
        if not updated.ok:
            raise self._unavailable("update_password", updated)
        logger.info("Password changed for %s", normalized)
        return PublicUser.from_user(user)

    def authenticate(self, access_token: str) -> TokenClaims:
        """Verify a bearer access token. Token errors propagate unchanged.

        TokenExpired tells the client to refresh and retry; TokenInvalid and
        TokenWrongType mean it must authenticate again.
        """
        return self.tokens.verify(access_token, TokenType.ACCESS)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enforce_limit(self, action: str, caller_ip: str | None, email) -> None:
        if caller_ip:
            subject = caller_ip
        else:
            subject = normalize_email(email) if isinstance(email, str) else ""
        window_ms, max_count = {
            "register": (self.settings.register_window_ms, self.settings.register_max_attempts),
            "login": (self.settings.login_window_ms, self.settings.login_max_attempts),
            "oauth": (self.settings.oauth_window_ms, self.settings.oauth_max_attempts),
        }[action]
        self.limiter.enforce(RateLimiter.key(subject, action), window_ms, max_count)

    def _login_input(self, email, password) -> str:
        """Normalize login input. Malformed input is just another failed login."""
        try:
            normalized = validate_email(email)
            validate_login_password(password, self.settings)
        except ValidationError:
            raise InvalidCredentials() from None
        return normalized

    def _hash(self, password: str) -> str:
        try:
            return hash_password(password, rounds=self.settings.bcrypt_rounds)
        except ValueError as exc:
            logger.error("Password hashing failed (%s)", type(exc).__name__)
            raise ServiceUnavailable() from None

    def _verify(self, password: str, hashed: str | None) -> bool:
        return verify_password(password, hashed, allow_plaintext=self.settings.legacy_plaintext_passwords)

    def _authenticated(self, user: User) -> AuthResult:
        try:
            tokens = self.tokens.issue(user)
        except JWTError as exc:
            logger.error("Token signing failed (%s)", type(exc).__name__)
            raise ServiceUnavailable() from None
        return AuthResult(user=PublicUser.from_user(user), tokens=tokens)

    @staticmethod
    def _unavailable(operation: str, result: StoreResult) -> ServiceUnavailable:
        logger.warning("Store %s unavailable (%s)", operation, result.status.value)
        return ServiceUnavailable()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self) -> tuple[int, int]:
        """One physical eviction pass: stale rate-limit rows and spent refresh-token ledger rows.

        Correctness never depends on this running; it only bounds storage.
        Returns (rate_limit_rows, ledger_rows) removed.
        """
        return self.limiter.purge_expired(), self.store.purge_consumed_tokens(self.tokens.now())

    def close(self) -> None:
        self.store.close()
        self.limiter.store.close()


def create_auth_service(settings: Settings | None = None, clock: Callable[[], float] = time.time) -> AuthService:
    """Wire stores, limiter and token service from Settings. Used by the API lifespan and the CLI."""
    cfg = settings or get_settings()
    user_store = UserStore(cfg.database_url, cfg.store_timeout_seconds)
    rate_store = RateLimitStore(cfg.database_url, cfg.store_timeout_seconds, cfg.rate_limit_ttl_seconds)
    tokens = TokenService(store=user_store, settings=cfg, clock=clock)
    return AuthService(user_store, RateLimiter(rate_store, clock=clock), tokens, settings=cfg)
