from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_security_stamp() -> str:
    return secrets.token_hex(16)


@dataclass
class User:
    id: str
    email: str
    full_name: str = ""
    avatar_url: Optional[str] = None
    is_active: bool = True
    two_factor_enabled: bool = False
    # Rotated whenever credentials change; tokens minted under an older stamp stop rotating
    security_stamp: str = field(default_factory=new_security_stamp)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Permission:
    id: str
    name: str
    description: Optional[str] = None


@dataclass
class Role:
    id: str
    name: str
    description: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    @classmethod
    def new(
        cls, user_id: str, token_hash: str, ttl_days: int, now: Optional[datetime] = None
    ) -> "RefreshToken":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
        )

    def is_usable(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now


@dataclass
class TwoFactorConfig:
    user_id: str
    secret: Optional[str] = None
    pending_secret: Optional[str] = None
    enabled: bool = False
    last_used_step: Optional[int] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    consumed_at: Optional[datetime] = None
