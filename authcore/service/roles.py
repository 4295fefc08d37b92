from __future__ import annotations

from typing import Iterable, List, Optional, Protocol, Sequence

from authcore.logging import get_logger
from authcore.service.errors import ConflictError, NotFoundError, ValidationError
from authcore.service.permissions import PermissionResolver
from authcore.storage.errors import DuplicateKeyError
from authcore.storage.models import Permission, Role

logger = get_logger(__name__)


class RoleStore(Protocol):
    def list_roles(self) -> List[Role]: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def create_role(
        self, name: str, description: Optional[str], permission_names: Sequence[str]
    ) -> Role: ...

    def update_role(
        self,
        role_id: str,
        name: str,
        description: Optional[str],
        permission_names: Sequence[str],
    ) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def list_permissions(self) -> List[Permission]: ...


class RoleService:
    """Role administration; every mutation evicts the affected permission cache entries."""

    def __init__(self, store: RoleStore, permissions: PermissionResolver) -> None:
        self.store = store
        self.permissions = permissions

    def list_roles(self) -> List[Role]:
        return sorted(self.store.list_roles(), key=lambda r: r.name)

    def get_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def list_permissions(self) -> List[Permission]:
        return sorted(self.store.list_permissions(), key=lambda p: p.name)

    def permission_details(self, role: Role) -> List[Permission]:
        by_name = {p.name: p for p in self.store.list_permissions()}
        return [by_name[name] for name in sorted(role.permissions) if name in by_name]

    async def create_role(
        self, name: str, description: Optional[str], permission_ids: Iterable[str]
    ) -> Role:
        names = self._permission_names(permission_ids)
        try:
            role = self.store.create_role(name.strip(), description, names)
        except DuplicateKeyError as exc:
            raise ConflictError("role name already exists", detail=exc.detail) from exc
        await self.permissions.invalidate(role.name)
        logger.info("role_created", role_id=role.id, role=role.name, permissions=len(names))
        return role

    async def update_role(
        self,
        role_id: str,
        name: str,
        description: Optional[str],
        permission_ids: Iterable[str],
    ) -> Role:
        existing = self.get_role(role_id)
        names = self._permission_names(permission_ids)
        try:
            role = self.store.update_role(role_id, name.strip(), description, names)
        except DuplicateKeyError as exc:
            raise ConflictError("role name already exists", detail=exc.detail) from exc
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        await self.permissions.invalidate(existing.name)
        if role.name != existing.name:
            await self.permissions.invalidate(role.name)
        logger.info("role_updated", role_id=role.id, role=role.name, permissions=len(names))
        return role

    async def delete_role(self, role_id: str) -> None:
        role = self.get_role(role_id)
        if not self.store.delete_role(role_id):
            raise NotFoundError("role not found", detail={"role_id": role_id})
        await self.permissions.invalidate(role.name)
        logger.info("role_deleted", role_id=role_id, role=role.name)

    def _permission_names(self, permission_ids: Iterable[str]) -> List[str]:
        catalog = {p.id: p.name for p in self.store.list_permissions()}
        requested = list(dict.fromkeys(permission_ids or []))
        unknown = [pid for pid in requested if pid not in catalog]
        if unknown:
            raise ValidationError("unknown permission id", detail={"permission_ids": unknown})
        return sorted(catalog[pid] for pid in requested)
