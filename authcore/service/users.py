from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.errors import ConflictError, NotFoundError, ValidationError
from authcore.storage.errors import DuplicateKeyError
from authcore.storage.models import Role, User

logger = get_logger(__name__)


class UserStore(Protocol):
    def list_users(self, limit: int = 100) -> List[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        full_name: str,
        *,
        avatar_url: Optional[str] = None,
        is_active: bool = True,
    ) -> User: ...

    def update_user(
        self,
        user_id: str,
        *,
        full_name: str,
        avatar_url: Optional[str],
        is_active: bool,
    ) -> Optional[User]: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def set_user_roles(self, user_id: str, role_ids: List[str]) -> None: ...

    def get_user_role_names(self, user_id: str) -> List[str]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def revoke_user_refresh_tokens(self, user_id: str) -> int: ...


class UserService:
    """Administrative user management. Users are deactivated, never hard-deleted."""

    def __init__(self, store: UserStore, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def role_names(self, user: User) -> List[str]:
        return sorted(self.store.get_user_role_names(user.id))

    def create_user(
        self, email: str, full_name: str, password: str, role_ids: Iterable[str] = ()
    ) -> User:
        role_list = self._require_roles(role_ids)
        try:
            user = self.store.create_user(email.strip().lower(), full_name.strip())
        except DuplicateKeyError as exc:
            raise ConflictError("email already exists", detail=exc.detail) from exc
        pwd_hash, algo = self.auth.hash_new_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        if role_list:
            self.store.set_user_roles(user.id, role_list)
        logger.info("user_created", user_id=user.id, roles=len(role_list))
        return user

    def update_user(
        self,
        user_id: str,
        *,
        full_name: str,
        avatar_url: Optional[str],
        is_active: bool,
        role_ids: Iterable[str],
        acting_user_id: Optional[str] = None,
    ) -> User:
        if user_id == acting_user_id and not is_active:
            raise ValidationError("you cannot disable your own account")
        existing = self.get_user(user_id)
        role_list = self._require_roles(role_ids)
        user = self.store.update_user(
            user_id, full_name=full_name.strip(), avatar_url=avatar_url, is_active=is_active
        )
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.store.set_user_roles(user_id, role_list)
        if existing.is_active and not is_active:
            self.store.revoke_user_refresh_tokens(user_id)
        logger.info("user_updated", user_id=user_id, active=is_active, roles=len(role_list))
        return user

    def deactivate_user(self, user_id: str, acting_user_id: Optional[str] = None) -> User:
        if user_id == acting_user_id:
            raise ValidationError("you cannot delete your own account")
        user = self.get_user(user_id)
        updated = self.store.update_user(
            user_id, full_name=user.full_name, avatar_url=user.avatar_url, is_active=False
        )
        revoked = self.store.revoke_user_refresh_tokens(user_id)
        logger.info("user_deactivated", user_id=user_id, revoked_tokens=revoked)
        return updated or user

    def update_profile(
        self, user_id: str, *, full_name: str, avatar_url: Optional[str]
    ) -> User:
        """Self-service edit; activity status and roles are left untouched."""
        user = self.get_user(user_id)
        updated = self.store.update_user(
            user_id, full_name=full_name.strip(), avatar_url=avatar_url, is_active=user.is_active
        )
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info("profile_updated", user_id=user_id)
        return updated

    async def reset_password(self, user_id: str, new_password: str) -> int:
        user = self.get_user(user_id)
        return self.auth.replace_password(user, new_password, reason="admin_reset")

    def _require_roles(self, role_ids: Iterable[str]) -> List[str]:
        role_list = list(dict.fromkeys(role_ids or []))
        for role_id in role_list:
            if not self.store.get_role(role_id):
                raise NotFoundError("role not found", detail={"role_id": role_id})
        return role_list
