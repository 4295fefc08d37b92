import pytest

from authcore.service.auth import AuthService
from authcore.service.permissions import (
    DEFAULT_ROLES,
    ROLE_ADMIN,
    ROLE_SUPER_ADMIN,
    PermissionResolver,
    Permissions,
)
from authcore.service.seed import describe_permission, ensure_super_admin, seed_catalog
from authcore.service.users import UserService
from authcore.storage.tiered_cache import TieredCache


@pytest.fixture
def users(memory_store, settings):
    resolver = PermissionResolver(memory_store, TieredCache(None))
    return UserService(memory_store, AuthService(memory_store, settings, resolver))


class TestSeedCatalog:
    def test_first_run_creates_everything(self, memory_store):
        report = seed_catalog(memory_store)

        assert sorted(report.permissions_created) == sorted(Permissions.all())
        assert report.roles_created == list(DEFAULT_ROLES)
        assert report.super_admin_topped_up == []
        assert set(memory_store.get_role_permission_names(ROLE_SUPER_ADMIN)) == set(
            Permissions.all()
        )
        assert set(memory_store.get_role_permission_names(ROLE_ADMIN)) == set(
            DEFAULT_ROLES[ROLE_ADMIN][1]
        )

    def test_second_run_is_a_no_op(self, memory_store):
        seed_catalog(memory_store)

        report = seed_catalog(memory_store)

        assert report.permissions_created == []
        assert report.roles_created == []
        assert report.super_admin_topped_up == []
        assert len(memory_store.list_permissions()) == len(Permissions.all())

    def test_super_admin_topped_up_with_new_permissions(self, memory_store):
        seed_catalog(memory_store)
        super_admin = memory_store.get_role_by_name(ROLE_SUPER_ADMIN)
        memory_store.update_role(
            super_admin.id, super_admin.name, super_admin.description, [Permissions.USERS_VIEW]
        )

        report = seed_catalog(memory_store)

        assert Permissions.BLOGS_EDIT in report.super_admin_topped_up
        assert set(memory_store.get_role_permission_names(ROLE_SUPER_ADMIN)) == set(
            Permissions.all()
        )

    def test_admin_role_left_alone(self, memory_store):
        seed_catalog(memory_store)
        admin = memory_store.get_role_by_name(ROLE_ADMIN)
        memory_store.update_role(admin.id, admin.name, admin.description, [])

        seed_catalog(memory_store)

        assert memory_store.get_role_permission_names(ROLE_ADMIN) == []

    def test_dry_run_writes_nothing(self, memory_store):
        report = seed_catalog(memory_store, dry_run=True)

        assert report.permissions_created
        assert memory_store.list_permissions() == []
        assert memory_store.list_roles() == []

    def test_describe_permission(self):
        assert describe_permission("Blogs.Edit") == "Blogs - Edit"
        assert describe_permission("Plain") == "Plain"


class TestEnsureSuperAdmin:
    def test_requires_seeded_role(self, memory_store, users):
        with pytest.raises(RuntimeError):
            ensure_super_admin(memory_store, users, "root@example.com", "Root-password-123")

    def test_creates_once(self, memory_store, users):
        seed_catalog(memory_store)

        created = ensure_super_admin(memory_store, users, "root@example.com", "Root-password-123")
        again = ensure_super_admin(memory_store, users, "root@example.com", "Root-password-123")

        assert created["status"] == "created"
        assert again == {**created, "status": "exists"}
        assert memory_store.get_user_role_names(created["user_id"]) == [ROLE_SUPER_ADMIN]

    def test_dry_run(self, memory_store, users):
        seed_catalog(memory_store)

        result = ensure_super_admin(
            memory_store, users, "root@example.com", "Root-password-123", dry_run=True
        )

        assert result["status"] == "dry_run"
        assert memory_store.get_user_by_email("root@example.com") is None
