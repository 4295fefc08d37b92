from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence
from urllib.parse import quote

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError, InvalidCodeError, ValidationError
from authcore.service.tokens import TokenService, hash_token
from authcore.storage.models import TwoFactorConfig, User

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_SKEW_STEPS = 1
SECRET_BYTES = 20
RECOVERY_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"
RECOVERY_CODE_HALF = 5
AUTHENTICATOR_URI_FORMAT = "otpauth://totp/{issuer}:{account}?secret={secret}&issuer={issuer}&digits=6"


class TwoFactorStore(Protocol):
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]: ...

    def set_pending_two_factor_secret(self, user_id: str, secret: str) -> None: ...

    def enable_two_factor(
        self,
        user_id: str,
        secret: str,
        step: int,
        recovery_code_hashes: Sequence[str],
    ) -> bool: ...

    def disable_two_factor(self, user_id: str) -> None: ...

    def consume_totp_step(self, user_id: str, step: int) -> bool: ...

    def consume_recovery_code(self, user_id: str, code_hash: str) -> bool: ...

    def count_recovery_codes(self, user_id: str) -> int: ...


@dataclass
class TwoFactorSetup:
    shared_key: str
    authenticator_uri: str


def format_shared_key(secret: str) -> str:
    return " ".join(secret[i : i + 4] for i in range(0, len(secret), 4))


def normalize_recovery_code(code: str) -> str:
    return "".join(ch for ch in (code or "").strip().upper() if ch not in " -")


def hash_recovery_code(code: str) -> str:
    return hash_token(normalize_recovery_code(code))


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    return _totp_for_step(secret, int(timestamp // interval), digits=digits)


def _totp_for_step(secret: str, step: int, *, digits: int = TOTP_DIGITS) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = step.to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


class TwoFactorController:
    """TOTP secret lifecycle, challenge tokens and recovery codes.

    Per user: Disabled -> SettingUp (pending secret) -> Enabled -> Disabled.
    A pending secret never replaces the active one until it is confirmed.
    """

    def __init__(
        self,
        store: TwoFactorStore,
        tokens: TokenService,
        settings: Settings,
        *,
        verify_password: Callable[[str, str], bool],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self._verify_password = verify_password
        self._clock = clock

    def begin_setup(self, user: User) -> TwoFactorSetup:
        secret = base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode().rstrip("=")
        self.store.set_pending_two_factor_secret(user.id, secret)
        issuer = quote(self.settings.totp_issuer, safe="")
        uri = AUTHENTICATOR_URI_FORMAT.format(
            issuer=issuer, account=quote(user.email, safe=""), secret=secret
        )
        logger.info("two_factor_setup_started", user_id=user.id)
        return TwoFactorSetup(shared_key=format_shared_key(secret), authenticator_uri=uri)

    def confirm_setup(self, user: User, code: str) -> List[str]:
        cfg = self.store.get_two_factor(user.id)
        if not cfg or not cfg.pending_secret:
            raise ValidationError("two-factor setup has not been started")
        step = self._match_step(cfg.pending_secret, code)
        if step is None:
            logger.warning("two_factor_confirm_rejected", user_id=user.id)
            raise InvalidCodeError()
        codes = self._new_recovery_codes()
        enabled = self.store.enable_two_factor(
            user.id,
            cfg.pending_secret,
            step,
            [hash_recovery_code(c) for c in codes],
        )
        if not enabled:
            # A concurrent BeginSetup replaced the pending secret
            logger.warning("two_factor_confirm_superseded", user_id=user.id)
            raise InvalidCodeError()
        user.two_factor_enabled = True
        logger.info("two_factor_enabled", user_id=user.id, recovery_codes=len(codes))
        return codes

    def disable(self, user: User, password: str) -> None:
        if not self._verify_password(user.id, password):
            logger.warning("two_factor_disable_rejected", user_id=user.id)
            raise AuthenticationError("invalid password")
        self.store.disable_two_factor(user.id)
        user.two_factor_enabled = False
        logger.info("two_factor_disabled", user_id=user.id)

    def issue_challenge(self, user: User) -> str:
        return self.tokens.issue_challenge(user)

    def redeem_challenge(
        self, challenge_token: str, code: str, load_user: Callable[[str], User]
    ) -> User:
        user = load_user(self.tokens.validate_challenge_token(challenge_token)["sub"])
        cfg = self.store.get_two_factor(user.id)
        if not cfg or not cfg.enabled or not cfg.secret:
            raise InvalidCodeError()
        step = self._match_step(cfg.secret, code)
        if step is None:
            logger.warning("two_factor_code_rejected", user_id=user.id)
            raise InvalidCodeError()
        if not self.store.consume_totp_step(user.id, step):
            logger.warning("two_factor_code_replayed", user_id=user.id, step=step)
            raise InvalidCodeError()
        return user

    def redeem_challenge_with_recovery_code(
        self, challenge_token: str, recovery_code: str, load_user: Callable[[str], User]
    ) -> User:
        user = load_user(self.tokens.validate_challenge_token(challenge_token)["sub"])
        normalized = normalize_recovery_code(recovery_code)
        if len(normalized) != RECOVERY_CODE_HALF * 2:
            raise AuthenticationError("invalid recovery code")
        if not self.store.consume_recovery_code(user.id, hash_token(normalized)):
            logger.warning("recovery_code_rejected", user_id=user.id)
            raise AuthenticationError("invalid recovery code")
        logger.info(
            "recovery_code_redeemed",
            user_id=user.id,
            remaining=self.store.count_recovery_codes(user.id),
        )
        return user

    def remaining_recovery_codes(self, user: User) -> int:
        return self.store.count_recovery_codes(user.id)

    def _match_step(self, secret: str, code: str) -> Optional[int]:
        candidate = "".join((code or "").split())
        # str.isdigit also accepts non-ASCII digits
        if len(candidate) != TOTP_DIGITS or not (candidate.isascii() and candidate.isdigit()):
            return None
        current = int(self._clock() // TOTP_INTERVAL)
        matched: Optional[int] = None
        for offset in range(-TOTP_SKEW_STEPS, TOTP_SKEW_STEPS + 1):
            generated = _totp_for_step(secret, current + offset)
            # Whole window is always scanned
            if generated and hmac.compare_digest(generated, candidate):
                matched = current + offset
        return matched

    def _new_recovery_codes(self) -> List[str]:
        def _half() -> str:
            return "".join(
                secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_HALF)
            )

        return [f"{_half()}-{_half()}" for _ in range(self.settings.recovery_code_count)]
