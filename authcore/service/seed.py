"""Idempotent seeding of the permission catalog, default roles and the first administrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence

from authcore.logging import get_logger
from authcore.service.permissions import DEFAULT_ROLES, ROLE_SUPER_ADMIN, Permissions
from authcore.storage.models import Permission, Role, User

if TYPE_CHECKING:
    from authcore.service.users import UserService

logger = get_logger(__name__)

SUPER_ADMIN_FULL_NAME = "Super Admin"


class SeedStore(Protocol):
    def ensure_permission(self, name: str, description: Optional[str] = None) -> Permission: ...

    def list_permissions(self) -> List[Permission]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

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

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_role_names(self, user_id: str) -> List[str]: ...

    def set_user_roles(self, user_id: str, role_ids: List[str]) -> None: ...


@dataclass
class SeedReport:
    permissions_created: List[str] = field(default_factory=list)
    roles_created: List[str] = field(default_factory=list)
    super_admin_topped_up: List[str] = field(default_factory=list)


def describe_permission(name: str) -> str:
    area, _, action = name.partition(".")
    return f"{area} - {action}" if action else name


def seed_catalog(store: SeedStore, *, dry_run: bool = False) -> SeedReport:
    """Create missing permissions and default roles; grant SuperAdmin anything new."""
    report = SeedReport()
    existing = {p.name for p in store.list_permissions()}
    for name in Permissions.all():
        if name in existing:
            continue
        report.permissions_created.append(name)
        if not dry_run:
            store.ensure_permission(name, describe_permission(name))

    for role_name, (description, granted) in DEFAULT_ROLES.items():
        if store.get_role_by_name(role_name) is None:
            report.roles_created.append(role_name)
            if not dry_run:
                store.create_role(role_name, description, list(granted))

    super_admin = store.get_role_by_name(ROLE_SUPER_ADMIN)
    if super_admin is not None:
        catalog = {p.name for p in store.list_permissions()}
        missing = sorted(catalog - set(super_admin.permissions))
        if missing:
            report.super_admin_topped_up = missing
            if not dry_run:
                store.update_role(
                    super_admin.id,
                    super_admin.name,
                    super_admin.description,
                    sorted(catalog),
                )

    logger.info(
        "seed_catalog_completed",
        dry_run=dry_run,
        permissions_created=len(report.permissions_created),
        roles_created=report.roles_created,
        super_admin_topped_up=len(report.super_admin_topped_up),
    )
    return report


def ensure_super_admin(
    store: SeedStore,
    users: UserService,
    email: str,
    password: str,
    *,
    dry_run: bool = False,
) -> dict:
    """Create the first administrator holding the SuperAdmin role, unless present."""
    existing = store.get_user_by_email(email)
    if existing is not None:
        logger.info("super_admin_exists", user_id=existing.id)
        return {"user_id": existing.id, "email": existing.email, "status": "exists"}
    if dry_run:
        return {"user_id": None, "email": email, "status": "dry_run"}
    role = store.get_role_by_name(ROLE_SUPER_ADMIN)
    if role is None:
        raise RuntimeError("SuperAdmin role is missing; seed the catalog first")
    user = users.create_user(email, SUPER_ADMIN_FULL_NAME, password, [role.id])
    logger.info("super_admin_created", user_id=user.id)
    return {"user_id": user.id, "email": user.email, "status": "created"}
