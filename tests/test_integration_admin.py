"""Integration tests for role and user administration endpoints."""

import pytest
from fastapi.testclient import TestClient

from authcore import app as app_module
from authcore.service.permissions import Permissions
from authcore.service.runtime import get_runtime
from authcore.service.seed import seed_catalog

ROOT_PASSWORD = "RootPassword123!"
MEMBER_PASSWORD = "MemberPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def runtime():
    runtime = get_runtime()
    seed_catalog(runtime.store)
    return runtime


def _role_id(runtime, name):
    return runtime.store.get_role_by_name(name).id


def _permission_ids(runtime, *names):
    by_name = {p.name: p.id for p in runtime.store.list_permissions()}
    return [by_name[name] for name in names]


def _token(client, email, password):
    response = client.post("/v1/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]["access_token"]


@pytest.fixture
def root(runtime):
    return runtime.users.create_user(
        "root@example.com", "Root", ROOT_PASSWORD, [_role_id(runtime, "SuperAdmin")]
    )


@pytest.fixture
def root_headers(client, root):
    return {"Authorization": f"Bearer {_token(client, 'root@example.com', ROOT_PASSWORD)}"}


@pytest.fixture
def editor_headers(client, runtime):
    runtime.users.create_user(
        "editor@example.com", "Editor", MEMBER_PASSWORD, [_role_id(runtime, "Admin")]
    )
    return {"Authorization": f"Bearer {_token(client, 'editor@example.com', MEMBER_PASSWORD)}"}


class TestAccessControl:
    def test_unauthenticated_is_401(self, client):
        response = client.get("/v1/admin/users")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_missing_permission_is_403(self, client, editor_headers):
        response = client.get("/v1/admin/users", headers=editor_headers)

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "forbidden"
        assert error["details"] == {"permission": Permissions.USERS_VIEW}

    def test_garbage_token_is_401(self, client):
        response = client.get("/v1/admin/roles", headers={"Authorization": "Bearer not.a.jwt"})

        assert response.status_code == 401

    def test_role_edit_takes_effect_immediately(self, client, runtime, root_headers):
        auditor = client.post(
            "/v1/admin/roles",
            json={
                "name": "Auditor",
                "permission_ids": _permission_ids(runtime, Permissions.USERS_VIEW),
            },
            headers=root_headers,
        ).json()["data"]
        runtime.users.create_user(
            "audit@example.com", "Audit", MEMBER_PASSWORD, [auditor["id"]]
        )
        audit_headers = {
            "Authorization": f"Bearer {_token(client, 'audit@example.com', MEMBER_PASSWORD)}"
        }
        assert client.get("/v1/admin/users", headers=audit_headers).status_code == 200

        client.put(
            f"/v1/admin/roles/{auditor['id']}",
            json={"name": "Auditor", "permission_ids": []},
            headers=root_headers,
        )

        assert client.get("/v1/admin/users", headers=audit_headers).status_code == 403


class TestRoles:
    def test_list_roles_and_permissions(self, client, root_headers):
        roles = client.get("/v1/admin/roles", headers=root_headers).json()["data"]["items"]
        permissions = client.get(
            "/v1/admin/roles/permissions", headers=root_headers
        ).json()["data"]["items"]

        assert [r["name"] for r in roles] == ["Admin", "SuperAdmin"]
        assert len(permissions) == len(Permissions.all())
        assert {"name": "Blogs.Edit", "description": "Blogs - Edit"}.items() <= next(
            p for p in permissions if p["name"] == "Blogs.Edit"
        ).items()

    def test_create_get_update_delete(self, client, runtime, root_headers):
        created = client.post(
            "/v1/admin/roles",
            json={
                "name": "Writer",
                "description": "Writes posts",
                "permission_ids": _permission_ids(runtime, Permissions.BLOGS_CREATE),
            },
            headers=root_headers,
        )
        assert created.status_code == 201
        role_id = created.json()["data"]["id"]

        fetched = client.get(f"/v1/admin/roles/{role_id}", headers=root_headers).json()["data"]
        assert [p["name"] for p in fetched["permissions"]] == ["Blogs.Create"]

        updated = client.put(
            f"/v1/admin/roles/{role_id}",
            json={"name": "Author", "permission_ids": []},
            headers=root_headers,
        )
        assert updated.json()["data"]["name"] == "Author"

        deleted = client.delete(f"/v1/admin/roles/{role_id}", headers=root_headers)
        assert deleted.json()["data"] == {"deleted": True}
        assert client.get(f"/v1/admin/roles/{role_id}", headers=root_headers).status_code == 404

    def test_duplicate_name_is_409(self, client, root_headers):
        response = client.post("/v1/admin/roles", json={"name": "Admin"}, headers=root_headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_unknown_permission_is_400(self, client, root_headers):
        response = client.post(
            "/v1/admin/roles",
            json={"name": "Broken", "permission_ids": ["missing"]},
            headers=root_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"permission_ids": ["missing"]}

    def test_blank_name_is_422(self, client, root_headers):
        response = client.post("/v1/admin/roles", json={"name": "   "}, headers=root_headers)

        assert response.status_code == 422


class TestUsers:
    def test_create_and_list(self, client, runtime, root_headers):
        created = client.post(
            "/v1/admin/users",
            json={
                "email": "New.User@Example.com",
                "full_name": "New User",
                "password": MEMBER_PASSWORD,
                "role_ids": [_role_id(runtime, "Admin")],
            },
            headers=root_headers,
        )

        assert created.status_code == 201
        data = created.json()["data"]
        assert data["email"] == "new.user@example.com"
        assert data["roles"] == ["Admin"]
        assert data["is_active"] is True

        listed = client.get("/v1/admin/users", headers=root_headers).json()["data"]["items"]
        assert {u["email"] for u in listed} == {"root@example.com", "new.user@example.com"}
        assert _token(client, "new.user@example.com", MEMBER_PASSWORD)

    def test_duplicate_email_is_409(self, client, root_headers):
        response = client.post(
            "/v1/admin/users",
            json={"email": "root@example.com", "full_name": "Again", "password": MEMBER_PASSWORD},
            headers=root_headers,
        )

        assert response.status_code == 409

    def test_unknown_role_is_404(self, client, root_headers):
        response = client.post(
            "/v1/admin/users",
            json={
                "email": "x@example.com",
                "full_name": "X",
                "password": MEMBER_PASSWORD,
                "role_ids": ["missing"],
            },
            headers=root_headers,
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_limit_is_validated(self, client, root_headers):
        assert client.get("/v1/admin/users?limit=0", headers=root_headers).status_code == 422

    def test_cannot_disable_or_delete_self(self, client, root, root_headers):
        disabled = client.put(
            f"/v1/admin/users/{root.id}",
            json={"full_name": "Root", "is_active": False},
            headers=root_headers,
        )
        deleted = client.delete(f"/v1/admin/users/{root.id}", headers=root_headers)

        assert disabled.status_code == deleted.status_code == 400
        assert deleted.json()["error"]["message"] == "you cannot delete your own account"

    def test_deactivated_user_locked_out(self, client, runtime, root_headers):
        member = runtime.users.create_user("member@example.com", "Member", MEMBER_PASSWORD)
        member_token = _token(client, "member@example.com", MEMBER_PASSWORD)

        response = client.delete(f"/v1/admin/users/{member.id}", headers=root_headers)

        assert response.json()["data"]["is_active"] is False
        assert runtime.store.get_user(member.id) is not None
        me = client.get("/v1/auth/me", headers={"Authorization": f"Bearer {member_token}"})
        assert me.status_code == 401
        login = client.post(
            "/v1/auth/login", json={"email": "member@example.com", "password": MEMBER_PASSWORD}
        )
        assert login.status_code == 401

    def test_admin_password_reset(self, client, runtime, root_headers):
        member = runtime.users.create_user("member@example.com", "Member", MEMBER_PASSWORD)
        _token(client, "member@example.com", MEMBER_PASSWORD)

        response = client.post(
            f"/v1/admin/users/{member.id}/reset-password",
            json={"new_password": "ChangedByAdmin1!"},
            headers=root_headers,
        )

        assert response.json()["data"] == {"revoked_sessions": 1}
        assert _token(client, "member@example.com", "ChangedByAdmin1!")

    def test_missing_user_is_404(self, client, root_headers):
        assert client.get("/v1/admin/users/missing", headers=root_headers).status_code == 404
