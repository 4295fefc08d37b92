from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple

from authcore.logging import get_logger
from authcore.storage.tiered_cache import TieredCache

logger = get_logger(__name__)

PERMISSIONS_CACHE_TAG = "permissions"


class Permissions:
    """Fixed permission catalog seeded at deploy time."""

    DASHBOARD_VIEW = "Dashboard.View"

    BLOGS_VIEW = "Blogs.View"
    BLOGS_CREATE = "Blogs.Create"
    BLOGS_EDIT = "Blogs.Edit"
    BLOGS_DELETE = "Blogs.Delete"

    PROJECTS_VIEW = "Projects.View"
    PROJECTS_CREATE = "Projects.Create"
    PROJECTS_EDIT = "Projects.Edit"
    PROJECTS_DELETE = "Projects.Delete"

    LEADS_VIEW = "Leads.View"
    LEADS_MARK_READ = "Leads.MarkRead"

    USERS_VIEW = "Users.View"
    USERS_CREATE = "Users.Create"
    USERS_EDIT = "Users.Edit"
    USERS_DELETE = "Users.Delete"
    USERS_RESET_PASSWORD = "Users.ResetPassword"

    SITE_CONTENT_VIEW = "SiteContent.View"
    SITE_CONTENT_EDIT = "SiteContent.Edit"

    SETTINGS_VIEW = "Settings.View"
    SETTINGS_EDIT = "Settings.Edit"

    LOGS_VIEW = "Logs.View"
    LOGS_DELETE = "Logs.Delete"

    SECURITY_VIEW = "Security.View"
    SECURITY_MANAGE = "Security.Manage"

    FILES_MANAGE = "Files.Manage"

    AI_CONTENT_GENERATE = "AiContent.Generate"
    AI_CONTENT_VIEW = "AiContent.View"

    @classmethod
    def all(cls) -> Tuple[str, ...]:
        return tuple(
            value
            for name, value in vars(cls).items()
            if name.isupper() and isinstance(value, str)
        )


ROLE_SUPER_ADMIN = "SuperAdmin"
ROLE_ADMIN = "Admin"

DEFAULT_ROLES: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    ROLE_SUPER_ADMIN: ("Full system access", Permissions.all()),
    ROLE_ADMIN: (
        "Content and leads management",
        (
            Permissions.DASHBOARD_VIEW,
            Permissions.BLOGS_VIEW,
            Permissions.BLOGS_CREATE,
            Permissions.BLOGS_EDIT,
            Permissions.BLOGS_DELETE,
            Permissions.PROJECTS_VIEW,
            Permissions.PROJECTS_CREATE,
            Permissions.PROJECTS_EDIT,
            Permissions.PROJECTS_DELETE,
            Permissions.LEADS_VIEW,
            Permissions.LEADS_MARK_READ,
            Permissions.SITE_CONTENT_VIEW,
            Permissions.SITE_CONTENT_EDIT,
            Permissions.SETTINGS_VIEW,
        ),
    ),
}


class PermissionStore(Protocol):
    def get_role_permission_names(self, role_name: str) -> List[str]: ...


def canonical_roles(role_names: Iterable[str]) -> Tuple[str, ...]:
    """Sorted, de-duplicated role names; the order callers pass them in is irrelevant."""
    return tuple(sorted({name for name in role_names if name}))


def role_cache_key(role_name: str) -> str:
    return f"permissions:role:{role_name}"


class PermissionResolver:
    """Resolve role names to the union of their granted permissions.

    Each role's permission subset is cached separately under the
    ``permissions`` tag, so editing one role only evicts that role's
    entry. A failing store lookup propagates to the caller; nothing is
    served from a partially loaded set.
    """

    def __init__(
        self,
        store: PermissionStore,
        cache: TieredCache,
        *,
        local_ttl_seconds: float = 300.0,
        shared_ttl_seconds: float = 600.0,
    ) -> None:
        self.store = store
        self.cache = cache
        self.local_ttl_seconds = local_ttl_seconds
        self.shared_ttl_seconds = shared_ttl_seconds

    async def resolve(self, role_names: Iterable[str]) -> FrozenSet[str]:
        granted: set[str] = set()
        for role_name in canonical_roles(role_names):
            granted.update(await self._role_permissions(role_name))
        return frozenset(granted)

    async def has_permission(self, role_names: Sequence[str], permission: str) -> bool:
        """Authorization check used by every protected endpoint."""
        return permission in await self.resolve(role_names)

    async def invalidate(self, role_name: Optional[str] = None) -> None:
        if role_name:
            await self.cache.remove(role_cache_key(role_name))
            logger.info("permission_cache_invalidated", role=role_name)
            return
        evicted = await self.cache.remove_by_tag(PERMISSIONS_CACHE_TAG)
        logger.info("permission_cache_purged", evicted=evicted)

    async def _role_permissions(self, role_name: str) -> List[str]:
        def _load() -> List[str]:
            return sorted(set(self.store.get_role_permission_names(role_name)))

        cached = await self.cache.get_or_create(
            role_cache_key(role_name),
            _load,
            local_ttl=self.local_ttl_seconds,
            shared_ttl=self.shared_ttl_seconds,
            tags=(PERMISSIONS_CACHE_TAG,),
        )
        return list(cached or [])
