from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Sequence, Tuple

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import InvalidTokenError
from authcore.storage.models import RefreshToken, User

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"
TOKEN_TYPE_ACCESS = "access"
CHALLENGE_PURPOSE = "2fa"

# 64 random bytes before encoding
REFRESH_TOKEN_BYTES = 64


def hash_token(value: str) -> str:
    """Digest stored in place of an opaque credential."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class TokenStore(Protocol):
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        old_hash: str,
        user_id: str,
        security_stamp: str,
        replacement: RefreshToken,
        now: datetime,
    ) -> bool: ...

    def revoke_refresh_token(self, token_hash: str, user_id: str) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...


@dataclass
class IssuedSession:
    access_token: str
    refresh_token: str
    expires_at: datetime
    token_id: str
    user: User
    roles: Tuple[str, ...]
    permissions: Tuple[str, ...]


SubjectLoader = Callable[[str], Awaitable[Tuple[User, Sequence[str], Iterable[str]]]]


class TokenService:
    """Signed access/challenge tokens and opaque, single-use refresh tokens."""

    def __init__(
        self,
        store: TokenStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._leeway = timedelta(seconds=settings.token_clock_skew_seconds)

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------------ issue
    def issue_session(
        self, user: User, roles: Iterable[str], permissions: Iterable[str]
    ) -> IssuedSession:
        refresh_value = self._new_refresh_value()
        record = RefreshToken.new(
            user.id,
            hash_token(refresh_value),
            self.settings.refresh_token_ttl_days,
            now=self._now(),
        )
        self.store.create_refresh_token(record)
        session = self._build_session(user, roles, permissions, refresh_value)
        logger.info("session_issued", user_id=user.id, jti=session.token_id)
        return session

    def issue_challenge(self, user: User) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "purpose": CHALLENGE_PURPOSE,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.settings.challenge_token_ttl_minutes * 60,
        }
        return self._encode_jwt(payload)

    # --------------------------------------------------------------- validate
    def validate_access_token(self, token: str) -> dict[str, Any]:
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidTokenError()
        self._require_access(payload)
        return payload

    def validate_challenge_token(self, token: str) -> dict[str, Any]:
        payload = self._decode_jwt(token)
        if payload is None:
            raise InvalidTokenError()
        if payload.get("purpose") != CHALLENGE_PURPOSE or "token_type" in payload:
            logger.warning("challenge_token_purpose_mismatch", jti=payload.get("jti"))
            raise InvalidTokenError()
        if not payload.get("sub"):
            raise InvalidTokenError()
        return payload

    def read_expired_access_token(self, token: str) -> dict[str, Any]:
        """Verify signature, algorithm, issuer and audience while ignoring expiry."""
        payload = self._decode_jwt(token, verify_exp=False)
        if payload is None:
            raise InvalidTokenError()
        self._require_access(payload)
        return payload

    # ----------------------------------------------------------------- rotate
    async def rotate_refresh_token(
        self,
        expired_access_token: str,
        refresh_token: str,
        load_subject: SubjectLoader,
    ) -> IssuedSession:
        """Exchange a refresh token for a new pair, consuming it.

        All awaiting happens before the store's single conditional
        revoke-and-insert, so a cancelled caller leaves either the old token
        live or the new one issued, never both and never neither.
        """
        claims = self.read_expired_access_token(expired_access_token)
        user_id = str(claims.get("sub") or "")
        if not user_id or not refresh_token:
            raise InvalidTokenError()

        old_hash = hash_token(refresh_token)
        record = self.store.get_refresh_token(old_hash)
        now = self._now()
        if record is None or record.user_id != user_id:
            logger.warning("refresh_token_unknown", user_id=user_id)
            raise InvalidTokenError()
        if record.revoked:
            logger.warning(
                "refresh_token_reuse_detected", user_id=user_id, token_id=record.id
            )
            raise InvalidTokenError()
        if record.expires_at <= now:
            logger.info("refresh_token_expired", user_id=user_id, token_id=record.id)
            raise InvalidTokenError()

        user, roles, permissions = await load_subject(user_id)
        if claims.get("stamp") != user.security_stamp:
            logger.warning("refresh_token_stale_credentials", user_id=user_id)
            raise InvalidTokenError()

        refresh_value = self._new_refresh_value()
        replacement = RefreshToken.new(
            user.id,
            hash_token(refresh_value),
            self.settings.refresh_token_ttl_days,
            now=now,
        )
        rotated = self.store.rotate_refresh_token(
            old_hash, user.id, user.security_stamp, replacement, now
        )
        if not rotated:
            # Lost a race against another rotation, a logout or a credential change
            logger.warning(
                "refresh_token_reuse_detected", user_id=user_id, token_id=record.id
            )
            raise InvalidTokenError()

        session = self._build_session(user, roles, permissions, refresh_value)
        logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            previous_id=record.id,
            replacement_id=replacement.id,
        )
        return session

    def revoke_refresh_token(self, refresh_token: str, user_id: str) -> bool:
        revoked = self.store.revoke_refresh_token(hash_token(refresh_token), user_id)
        if revoked:
            logger.info("refresh_token_revoked", user_id=user_id)
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked_all", user_id=user_id, count=count)
        return count

    # ---------------------------------------------------------------- helpers
    def _new_refresh_value(self) -> str:
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)

    def _build_session(
        self,
        user: User,
        roles: Iterable[str],
        permissions: Iterable[str],
        refresh_value: str,
    ) -> IssuedSession:
        now = int(self._clock())
        exp = now + self.settings.access_token_ttl_minutes * 60
        jti = str(uuid.uuid4())
        role_list = tuple(sorted(set(roles)))
        permission_list = tuple(sorted(set(permissions)))
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "email": user.email,
            "name": user.full_name,
            "roles": list(role_list),
            "permissions": list(permission_list),
            "stamp": user.security_stamp,
            "token_type": TOKEN_TYPE_ACCESS,
            "jti": jti,
            "iat": now,
            "exp": exp,
        }
        return IssuedSession(
            access_token=self._encode_jwt(payload),
            refresh_token=refresh_value,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=jti,
            user=user,
            roles=role_list,
            permissions=permission_list,
        )

    def _require_access(self, payload: dict[str, Any]) -> None:
        if payload.get("token_type") != TOKEN_TYPE_ACCESS or "purpose" in payload:
            logger.warning("access_token_purpose_mismatch", jti=payload.get("jti"))
            raise InvalidTokenError()
        if not payload.get("sub"):
            raise InvalidTokenError()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> bytes:
        return hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": JWT_ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._encode_segment(self._sign(signing_input))}"

    def _decode_jwt(self, token: str, *, verify_exp: bool = True) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but the one configured algorithm before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != JWT_ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._encode_segment(self._sign(f"{header_b64}.{payload_b64}"))
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None

        now = self._clock()
        leeway = self._leeway.total_seconds()
        nbf = payload.get("nbf")
        if nbf is not None:
            try:
                if float(nbf) > now + leeway:
                    return None
            except (TypeError, ValueError):
                return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if verify_exp and exp_ts <= now - leeway:
            return None
        return payload
