from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.email import EmailService
from authcore.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
)
from authcore.service.permissions import PermissionResolver
from authcore.service.tokens import (
    IssuedSession,
    TokenService,
    TokenStore,
    hash_token,
)
from authcore.service.two_factor import TwoFactorController, TwoFactorSetup, TwoFactorStore
from authcore.storage.models import PasswordResetToken, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
RESET_TOKEN_BYTES = 32


class CredentialStore(TokenStore, TwoFactorStore, Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def change_credentials(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> int: ...

    def get_user_role_names(self, user_id: str) -> List[str]: ...

    def get_role_permission_names(self, role_name: str) -> List[str]: ...

    def create_password_reset_token(self, record: PasswordResetToken) -> None: ...

    def consume_password_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[str]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    roles: Tuple[str, ...]
    permissions: Tuple[str, ...]
    token_id: Optional[str] = None


@dataclass
class LoginResult:
    requires_two_factor: bool
    session: Optional[IssuedSession] = None
    two_factor_token: Optional[str] = None


class AuthService:
    """Login, session refresh, password and two-factor flows."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        permissions: PermissionResolver,
        *,
        email: Optional[EmailService] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.permissions = permissions
        self.email = email or EmailService.from_settings(settings)
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.tokens = TokenService(store, settings, clock=clock)
        self.two_factor = TwoFactorController(
            store,
            self.tokens,
            settings,
            verify_password=self.verify_password,
            clock=clock,
        )
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------ passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            self.logger.info("password_verification_failed", user_id=user_id)
            return False

    def _burn_dummy_verify(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerificationError):
            pass

    def hash_new_password(self, password: str) -> Tuple[str, str]:
        return self._hash_password(password)

    # ---------------------------------------------------------------- login
    async def login(self, email: str, password: str) -> LoginResult:
        normalized = (email or "").strip().lower()
        user = self.store.get_user_by_email(normalized)
        if user is None:
            self._burn_dummy_verify(password)
            self.logger.info("login_rejected", reason="unknown_email")
            raise InvalidCredentialsError()

        password_ok = self.verify_password(user.id, password)
        if not user.is_active:
            self.logger.warning("login_rejected", reason="inactive", user_id=user.id)
            raise InvalidCredentialsError()
        if not password_ok:
            self.logger.info("login_rejected", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()

        if self._two_factor_enabled(user.id):
            token = self.two_factor.issue_challenge(user)
            self.logger.info("login_challenge_issued", user_id=user.id)
            return LoginResult(requires_two_factor=True, two_factor_token=token)

        session = await self._issue_session(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(requires_two_factor=False, session=session)

    async def refresh_session(
        self, expired_access_token: str, refresh_token: str
    ) -> IssuedSession:
        return await self.tokens.rotate_refresh_token(
            expired_access_token, refresh_token, self._load_subject
        )

    async def logout(self, user_id: str, refresh_token: Optional[str]) -> bool:
        if not refresh_token:
            return False
        return self.tokens.revoke_refresh_token(refresh_token, user_id)

    # ------------------------------------------------------ password change
    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        user = self._require_user(user_id)
        if not self.verify_password(user.id, current_password):
            self.logger.warning("password_change_rejected", user_id=user.id)
            raise AuthenticationError("invalid password")
        return self.replace_password(user, new_password, reason="change")

    async def forgot_password(self, email: str) -> None:
        """Start a reset; silent for unknown or inactive accounts."""
        normalized = (email or "").strip().lower()
        user = self.store.get_user_by_email(normalized)
        if user is None or not user.is_active:
            self.logger.info("password_reset_ignored")
            return
        token = secrets.token_urlsafe(RESET_TOKEN_BYTES)
        ttl = self.settings.password_reset_ttl_minutes
        self.store.create_password_reset_token(
            PasswordResetToken(
                token_hash=hash_token(token),
                user_id=user.id,
                expires_at=self._now() + timedelta(minutes=ttl),
            )
        )
        sent = await asyncio.to_thread(
            self.email.send_password_reset, user.email, token, ttl
        )
        self.logger.info("password_reset_requested", user_id=user.id, delivered=sent)

    async def reset_password(self, token: str, new_password: str) -> int:
        if not token:
            raise InvalidTokenError()
        user_id = self.store.consume_password_reset_token(hash_token(token), self._now())
        if not user_id:
            self.logger.warning("password_reset_token_rejected")
            raise InvalidTokenError()
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise InvalidTokenError()
        return self.replace_password(user, new_password, reason="reset")

    def replace_password(self, user: User, new_password: str, *, reason: str) -> int:
        pwd_hash, algo = self._hash_password(new_password)
        revoked = self.store.change_credentials(user.id, pwd_hash, algo)
        self.logger.info(
            "password_changed", user_id=user.id, reason=reason, revoked_tokens=revoked
        )
        return revoked

    # ------------------------------------------------------------ two-factor
    async def setup_two_factor(self, user_id: str) -> TwoFactorSetup:
        return self.two_factor.begin_setup(self._require_user(user_id))

    async def enable_two_factor(self, user_id: str, code: str) -> List[str]:
        return self.two_factor.confirm_setup(self._require_user(user_id), code)

    async def disable_two_factor(self, user_id: str, password: str) -> None:
        self.two_factor.disable(self._require_user(user_id), password)

    async def verify_two_factor(self, challenge_token: str, code: str) -> IssuedSession:
        user = self.two_factor.redeem_challenge(
            challenge_token, code, self._load_active_user
        )
        self.logger.info("two_factor_login_succeeded", user_id=user.id)
        return await self._issue_session(user)

    async def recovery_login(
        self, challenge_token: str, recovery_code: str
    ) -> IssuedSession:
        user = self.two_factor.redeem_challenge_with_recovery_code(
            challenge_token, recovery_code, self._load_active_user
        )
        return await self._issue_session(user)

    async def two_factor_status(self, user_id: str) -> dict[str, Any]:
        user = self._require_user(user_id)
        cfg = self.store.get_two_factor(user.id)
        return {
            "enabled": bool(cfg and cfg.enabled),
            "setup_pending": bool(cfg and cfg.pending_secret),
            "recovery_codes_remaining": self.two_factor.remaining_recovery_codes(user),
        }

    # ------------------------------------------------------- authentication
    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise InvalidTokenError()
        claims = self.tokens.validate_access_token(token)
        user = self.store.get_user(str(claims["sub"]))
        if not user or not user.is_active:
            raise InvalidTokenError()
        if claims.get("stamp") != user.security_stamp:
            self.logger.info("access_token_stale_credentials", user_id=user.id)
            raise InvalidTokenError()
        roles = claims.get("roles") or []
        permissions = claims.get("permissions") or []
        return AuthContext(
            user_id=user.id,
            email=user.email,
            roles=tuple(str(r) for r in roles),
            permissions=tuple(str(p) for p in permissions),
            token_id=claims.get("jti"),
        )

    async def has_permission(self, ctx: AuthContext, permission: str) -> bool:
        return await self.permissions.has_permission(ctx.roles, permission)

    async def current_user(self, user_id: str) -> dict[str, Any]:
        user = self._require_user(user_id)
        roles = self.store.get_user_role_names(user.id)
        permissions = await self.permissions.resolve(roles)
        return self.describe_user(user, roles, permissions)

    def describe_user(
        self, user: User, roles: Sequence[str], permissions: Sequence[str] | frozenset
    ) -> dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email,
            "full_name": user.full_name,
            "avatar_url": user.avatar_url,
            "roles": sorted(set(roles)),
            "permissions": sorted(set(permissions)),
            "two_factor_enabled": self._two_factor_enabled(user.id),
        }

    # --------------------------------------------------------------- helpers
    def _two_factor_enabled(self, user_id: str) -> bool:
        cfg = self.store.get_two_factor(user_id)
        return bool(cfg and cfg.enabled and cfg.secret)

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def _load_active_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            self.logger.warning("auth_subject_unavailable", user_id=user_id)
            raise InvalidTokenError()
        return user

    async def _load_subject(self, user_id: str) -> Tuple[User, List[str], frozenset]:
        user = self._load_active_user(user_id)
        roles = self.store.get_user_role_names(user.id)
        permissions = await self.permissions.resolve(roles)
        return user, roles, permissions

    async def _issue_session(self, user: User) -> IssuedSession:
        roles = self.store.get_user_role_names(user.id)
        permissions = await self.permissions.resolve(roles)
        return self.tokens.issue_session(user, roles, permissions)
