"""Tests for role -> permission resolution and its cache."""

import asyncio

import pytest

from authcore.service.permissions import (
    DEFAULT_ROLES,
    PERMISSIONS_CACHE_TAG,
    ROLE_ADMIN,
    ROLE_SUPER_ADMIN,
    PermissionResolver,
    Permissions,
    canonical_roles,
    role_cache_key,
)
from authcore.storage.tiered_cache import TieredCache


@pytest.fixture
def store(memory_store):
    for name in (
        Permissions.BLOGS_EDIT,
        Permissions.BLOGS_VIEW,
        Permissions.USERS_VIEW,
        Permissions.LEADS_VIEW,
    ):
        memory_store.ensure_permission(name)
    memory_store.create_role("Admin", None, [Permissions.BLOGS_EDIT, Permissions.USERS_VIEW])
    memory_store.create_role("Editor", None, [Permissions.BLOGS_EDIT, Permissions.BLOGS_VIEW])
    return memory_store


@pytest.fixture
def resolver(store, fake_shared_cache, clock):
    cache = TieredCache(fake_shared_cache, shared_timeout=0.05, clock=clock)
    return PermissionResolver(store, cache, local_ttl_seconds=300, shared_ttl_seconds=600)


class FailingStore:
    def get_role_permission_names(self, role_name):
        raise RuntimeError("database unavailable")


class TestResolve:
    @pytest.mark.asyncio
    async def test_single_role(self, resolver):
        assert await resolver.resolve(["Admin"]) == {"Blogs.Edit", "Users.View"}

    @pytest.mark.asyncio
    async def test_duplicate_roles_match_single(self, resolver):
        assert await resolver.resolve(["Admin", "Admin"]) == await resolver.resolve(["Admin"])

    @pytest.mark.asyncio
    async def test_union_without_duplicates(self, resolver):
        resolved = await resolver.resolve(["Admin", "Editor"])

        assert resolved == {"Blogs.Edit", "Blogs.View", "Users.View"}

    @pytest.mark.asyncio
    async def test_order_does_not_matter(self, resolver):
        assert await resolver.resolve(["Editor", "Admin"]) == await resolver.resolve(
            ["Admin", "Editor"]
        )

    @pytest.mark.asyncio
    async def test_unknown_role_grants_nothing(self, resolver):
        assert await resolver.resolve(["Ghost"]) == frozenset()
        assert await resolver.resolve([]) == frozenset()

    @pytest.mark.asyncio
    async def test_has_permission(self, resolver):
        assert await resolver.has_permission(["Admin"], Permissions.USERS_VIEW)
        assert not await resolver.has_permission(["Editor"], Permissions.USERS_VIEW)

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, clock):
        resolver = PermissionResolver(FailingStore(), TieredCache(None, clock=clock))

        with pytest.raises(RuntimeError):
            await resolver.resolve(["Admin"])

    @pytest.mark.asyncio
    async def test_entries_are_cached_per_role(self, resolver, fake_shared_cache):
        await resolver.resolve(["Admin", "Editor"])

        assert role_cache_key("Admin") in fake_shared_cache.values
        assert role_cache_key("Editor") in fake_shared_cache.values
        assert fake_shared_cache.tags[PERMISSIONS_CACHE_TAG] == {
            role_cache_key("Admin"),
            role_cache_key("Editor"),
        }


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_cached_value_is_served_until_invalidated(self, resolver, store):
        await resolver.resolve(["Admin"])
        admin = store.get_role_by_name("Admin")
        store.update_role(admin.id, "Admin", None, [Permissions.LEADS_VIEW])

        assert await resolver.resolve(["Admin"]) == {"Blogs.Edit", "Users.View"}

        await resolver.invalidate("Admin")

        assert await resolver.resolve(["Admin"]) == {"Leads.View"}

    @pytest.mark.asyncio
    async def test_single_role_invalidation_keeps_other_roles(self, resolver, fake_shared_cache):
        await resolver.resolve(["Admin", "Editor"])

        await resolver.invalidate("Admin")

        assert role_cache_key("Admin") not in fake_shared_cache.values
        assert role_cache_key("Editor") in fake_shared_cache.values

    @pytest.mark.asyncio
    async def test_revocation_during_cache_fill_is_not_resurrected(
        self, store, fake_shared_cache, clock
    ):
        cache = TieredCache(fake_shared_cache, shared_timeout=1.0, clock=clock)
        resolver = PermissionResolver(store, cache)
        entered = asyncio.Event()
        release = asyncio.Event()
        original_set = fake_shared_cache.set_value

        async def slow_set(key, value, ttl_seconds):
            entered.set()
            await release.wait()
            await original_set(key, value, ttl_seconds)

        fake_shared_cache.set_value = slow_set
        pending = asyncio.ensure_future(resolver.resolve(["Editor"]))
        await entered.wait()
        editor = store.get_role_by_name("Editor")
        store.update_role(editor.id, "Editor", None, [Permissions.BLOGS_VIEW])
        await resolver.invalidate("Editor")
        release.set()
        await pending

        fresh = PermissionResolver(store, TieredCache(fake_shared_cache, clock=clock))
        assert await fresh.resolve(["Editor"]) == {"Blogs.View"}
        assert await resolver.resolve(["Editor"]) == {"Blogs.View"}

    @pytest.mark.asyncio
    async def test_full_purge(self, resolver, store, fake_shared_cache):
        await resolver.resolve(["Admin", "Editor"])
        editor = store.get_role_by_name("Editor")
        store.update_role(editor.id, "Editor", None, [])

        await resolver.invalidate()

        assert fake_shared_cache.values == {}
        assert await resolver.resolve(["Editor"]) == frozenset()


class TestCatalog:
    def test_canonical_roles_sorted_and_unique(self):
        assert canonical_roles(["b", "a", "b", ""]) == ("a", "b")

    def test_catalog_names_are_area_action(self):
        names = Permissions.all()

        assert len(names) == len(set(names))
        assert all(len(name.split(".")) == 2 for name in names)
        assert Permissions.USERS_RESET_PASSWORD in names

    def test_super_admin_holds_whole_catalog(self):
        _, granted = DEFAULT_ROLES[ROLE_SUPER_ADMIN]
        assert set(granted) == set(Permissions.all())

    def test_admin_cannot_manage_users(self):
        _, granted = DEFAULT_ROLES[ROLE_ADMIN]
        assert not any(name.startswith("Users.") for name in granted)
        assert Permissions.BLOGS_EDIT in granted
