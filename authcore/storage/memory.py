from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set

from authcore.logging import get_logger
from authcore.storage.common import SecretCipher, normalize_email
from authcore.storage.errors import DuplicateKeyError, MissingReferenceError
from authcore.storage.models import (
    PasswordResetToken,
    Permission,
    RefreshToken,
    Role,
    TwoFactorConfig,
    User,
    UserCredential,
    new_security_stamp,
    utcnow,
)


class MemoryStore:
    """In-memory credential store with optional JSON snapshots.

    Every operation runs under one re-entrant lock, so the conditional
    updates (token rotation, code consumption) are atomic. Objects handed
    out are copies; callers never alias internal state.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/authcore",
        *,
        mfa_encryption_key: str,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.permissions: Dict[str, Permission] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: Dict[str, Set[str]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.two_factor: Dict[str, TwoFactorConfig] = {}
        self.recovery_codes: Dict[str, Set[str]] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self._persist = persist
        self._mfa_cipher = SecretCipher(mfa_encryption_key)
        if self._persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def ping(self) -> bool:
        return True

    # users
    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise DuplicateKeyError("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                full_name=full_name,
                avatar_url=avatar_url,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    def update_user(
        self,
        user_id: str,
        *,
        full_name: str,
        avatar_url: Optional[str],
        is_active: bool,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.full_name = full_name
            user.avatar_url = avatar_url
            user.is_active = is_active
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReferenceError("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = UserCredential(user_id, password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            return (cred.password_hash, cred.password_algo) if cred else None

    def change_credentials(self, user_id: str, password_hash: str, password_algo: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise MissingReferenceError("user not found for credentials", {"user_id": user_id})
            now = utcnow()
            self.credentials[user_id] = UserCredential(user_id, password_hash, password_algo, now)
            user.security_stamp = new_security_stamp()
            user.updated_at = now
            revoked = self._revoke_user_tokens_locked(user_id, now)
            self._persist_state()
            return revoked

    # roles / permissions
    def ensure_permission(self, name: str, description: Optional[str] = None) -> Permission:
        with self._data_lock:
            existing = next((p for p in self.permissions.values() if p.name == name), None)
            if existing:
                return replace(existing)
            permission = Permission(id=str(uuid.uuid4()), name=name, description=description)
            self.permissions[permission.id] = permission
            self._persist_state()
            return replace(permission)

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return [replace(p) for p in self.permissions.values()]

    def _copy_role(self, role: Role) -> Role:
        return replace(role, permissions=list(role.permissions))

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [self._copy_role(r) for r in self.roles.values()]

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return self._copy_role(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == name), None)
            return self._copy_role(role) if role else None

    def _check_permission_names(self, permission_names: Sequence[str]) -> List[str]:
        known = {p.name for p in self.permissions.values()}
        unknown = [name for name in permission_names if name not in known]
        if unknown:
            raise MissingReferenceError("unknown permission", {"permissions": unknown})
        return sorted(set(permission_names))

    def create_role(
        self, name: str, description: Optional[str], permission_names: Sequence[str]
    ) -> Role:
        with self._data_lock:
            if any(r.name == name for r in self.roles.values()):
                raise DuplicateKeyError("role name already exists", {"field": "name"})
            role = Role(
                id=str(uuid.uuid4()),
                name=name,
                description=description,
                permissions=self._check_permission_names(permission_names),
            )
            self.roles[role.id] = role
            self._persist_state()
            return self._copy_role(role)

    def update_role(
        self,
        role_id: str,
        name: str,
        description: Optional[str],
        permission_names: Sequence[str],
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if any(r.name == name and r.id != role_id for r in self.roles.values()):
                raise DuplicateKeyError("role name already exists", {"field": "name"})
            role.permissions = self._check_permission_names(permission_names)
            role.name = name
            role.description = description
            self._persist_state()
            return self._copy_role(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            for members in self.user_roles.values():
                members.discard(role_id)
            self._persist_state()
            return True

    def set_user_roles(self, user_id: str, role_ids: List[str]) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReferenceError("user not found", {"user_id": user_id})
            missing = [rid for rid in role_ids if rid not in self.roles]
            if missing:
                raise MissingReferenceError("role not found", {"role_ids": missing})
            self.user_roles[user_id] = set(role_ids)
            self._persist_state()

    def get_user_role_names(self, user_id: str) -> List[str]:
        with self._data_lock:
            return sorted(
                self.roles[rid].name
                for rid in self.user_roles.get(user_id, set())
                if rid in self.roles
            )

    def get_role_permission_names(self, role_name: str) -> List[str]:
        with self._data_lock:
            role = next((r for r in self.roles.values() if r.name == role_name), None)
            return list(role.permissions) if role else []

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise MissingReferenceError("user not found for token", {"user_id": token.user_id})
            self.refresh_tokens[token.token_hash] = replace(token)
            self._persist_state()
            return replace(token)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def rotate_refresh_token(
        self,
        old_hash: str,
        user_id: str,
        security_stamp: str,
        replacement: RefreshToken,
        now: datetime,
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or not user.is_active or user.security_stamp != security_stamp:
                return False
            record = self.refresh_tokens.get(old_hash)
            if not record or record.user_id != user_id or not record.is_usable(now):
                return False
            record.revoked = True
            record.revoked_at = now
            record.replaced_by = replacement.id
            self.refresh_tokens[replacement.token_hash] = replace(replacement)
            self._persist_state()
            return True

    def revoke_refresh_token(self, token_hash: str, user_id: str) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.user_id != user_id or record.revoked:
                return False
            record.revoked = True
            record.revoked_at = utcnow()
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            revoked = self._revoke_user_tokens_locked(user_id, utcnow())
            self._persist_state()
            return revoked

    def _revoke_user_tokens_locked(self, user_id: str, now: datetime) -> int:
        revoked = 0
        for record in self.refresh_tokens.values():
            if record.user_id == user_id and not record.revoked:
                record.revoked = True
                record.revoked_at = now
                revoked += 1
        return revoked

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorConfig]:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg:
                return None
            return replace(
                cfg,
                secret=self._mfa_cipher.decrypt(cfg.secret),
                pending_secret=self._mfa_cipher.decrypt(cfg.pending_secret),
            )

    def set_pending_two_factor_secret(self, user_id: str, secret: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingReferenceError("user not found for mfa", {"user_id": user_id})
            cfg = self.two_factor.setdefault(user_id, TwoFactorConfig(user_id=user_id))
            cfg.pending_secret = self._mfa_cipher.encrypt(secret)
            cfg.updated_at = utcnow()
            self._persist_state()

    def enable_two_factor(
        self,
        user_id: str,
        secret: str,
        step: int,
        recovery_code_hashes: Sequence[str],
    ) -> bool:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            user = self.users.get(user_id)
            if not cfg or not user or self._mfa_cipher.decrypt(cfg.pending_secret) != secret:
                return False
            cfg.secret = cfg.pending_secret
            cfg.pending_secret = None
            cfg.enabled = True
            cfg.last_used_step = step
            cfg.updated_at = utcnow()
            user.two_factor_enabled = True
            self.recovery_codes[user_id] = set(recovery_code_hashes)
            self._persist_state()
            return True

    def disable_two_factor(self, user_id: str) -> None:
        with self._data_lock:
            self.two_factor.pop(user_id, None)
            self.recovery_codes.pop(user_id, None)
            user = self.users.get(user_id)
            if user:
                user.two_factor_enabled = False
            self._persist_state()

    def consume_totp_step(self, user_id: str, step: int) -> bool:
        with self._data_lock:
            cfg = self.two_factor.get(user_id)
            if not cfg or not cfg.enabled:
                return False
            if cfg.last_used_step is not None and step <= cfg.last_used_step:
                return False
            cfg.last_used_step = step
            self._persist_state()
            return True

    def consume_recovery_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            codes = self.recovery_codes.get(user_id)
            if not codes or code_hash not in codes:
                return False
            codes.discard(code_hash)
            self._persist_state()
            return True

    def count_recovery_codes(self, user_id: str) -> int:
        with self._data_lock:
            return len(self.recovery_codes.get(user_id, ()))

    # password reset
    def create_password_reset_token(self, record: PasswordResetToken) -> None:
        with self._data_lock:
            self.reset_tokens[record.token_hash] = replace(record)
            self._persist_state()

    def consume_password_reset_token(self, token_hash: str, now: datetime) -> Optional[str]:
        with self._data_lock:
            record = self.reset_tokens.get(token_hash)
            if not record or record.consumed_at is not None or record.expires_at <= now:
                return None
            record.consumed_at = now
            self._persist_state()
            return record.user_id

    # persistence
    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls: type, data: dict) -> Any:
        kwargs = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if f.name.endswith("_at") and isinstance(value, str):
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        if not self._persist:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [self._serialize(c) for c in self.credentials.values()],
            "permissions": [self._serialize(p) for p in self.permissions.values()],
            "roles": [self._serialize(r) for r in self.roles.values()],
            "user_roles": {uid: sorted(rids) for uid, rids in self.user_roles.items()},
            "refresh_tokens": [self._serialize(t) for t in self.refresh_tokens.values()],
            "two_factor": [self._serialize(cfg) for cfg in self.two_factor.values()],
            "recovery_codes": {uid: sorted(codes) for uid, codes in self.recovery_codes.items()},
            "reset_tokens": [self._serialize(t) for t in self.reset_tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: self._deserialize(UserCredential, c)
            for c in data.get("credentials", [])
        }
        self.permissions = {
            p["id"]: self._deserialize(Permission, p) for p in data.get("permissions", [])
        }
        self.roles = {r["id"]: self._deserialize(Role, r) for r in data.get("roles", [])}
        self.user_roles = {uid: set(rids) for uid, rids in data.get("user_roles", {}).items()}
        self.refresh_tokens = {
            t["token_hash"]: self._deserialize(RefreshToken, t)
            for t in data.get("refresh_tokens", [])
        }
        self.two_factor = {
            cfg["user_id"]: self._deserialize(TwoFactorConfig, cfg)
            for cfg in data.get("two_factor", [])
        }
        self.recovery_codes = {
            uid: set(codes) for uid, codes in data.get("recovery_codes", {}).items()
        }
        self.reset_tokens = {
            t["token_hash"]: self._deserialize(PasswordResetToken, t)
            for t in data.get("reset_tokens", [])
        }
        self.logger.info("memory_store_state_loaded", users=len(self.users), roles=len(self.roles))
        return True
