from __future__ import annotations

from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query

from authcore.api.schemas import (
    AdminResetPasswordRequest,
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    PermissionResponse,
    ProfileUpdateRequest,
    RecoveryCodesResponse,
    RefreshRequest,
    ResetPasswordRequest,
    RoleRequest,
    RoleResponse,
    TwoFactorCodeRequest,
    TwoFactorDisableRequest,
    TwoFactorRecoveryRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
    UserCreateRequest,
    UserListResponse,
    UserResponse,
    UserSummary,
    UserUpdateRequest,
)
from authcore.logging import bind_principal, get_logger
from authcore.service.auth import AuthContext
from authcore.service.permissions import Permissions
from authcore.service.runtime import Runtime, get_runtime
from authcore.service.tokens import IssuedSession
from authcore.storage.models import Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

FORGOT_PASSWORD_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    principal = await runtime.auth.authenticate(authorization)
    bind_principal(principal.user_id)
    return principal


def require_permission(permission: str) -> Callable[..., Any]:
    """Dependency factory: authenticated caller whose roles grant ``permission``."""

    async def _require(principal: AuthContext = Depends(get_user)) -> AuthContext:
        runtime = get_runtime()
        if not await runtime.auth.has_permission(principal, permission):
            logger.warning(
                "permission_denied", user_id=principal.user_id, permission=permission
            )
            raise _http_error(
                "forbidden",
                "insufficient permissions",
                status_code=403,
                details={"permission": permission},
            )
        return principal

    return _require


def _session_response(runtime: Runtime, session: IssuedSession) -> AuthResponse:
    summary = runtime.auth.describe_user(session.user, session.roles, session.permissions)
    return AuthResponse(
        requires_two_factor=False,
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        token_type="bearer",
        expires_at=session.expires_at,
        user=UserSummary(**summary),
    )


def _role_response(runtime: Runtime, role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        permissions=[
            PermissionResponse(id=p.id, name=p.name, description=p.description)
            for p in runtime.roles.permission_details(role)
        ],
        created_at=role.created_at,
    )


def _user_response(runtime: Runtime, user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        avatar_url=user.avatar_url,
        is_active=user.is_active,
        two_factor_enabled=user.two_factor_enabled,
        roles=runtime.users.role_names(user),
        created_at=user.created_at,
    )


# ---------------------------------------------------------------------- auth


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Returns a session, or a two-factor challenge token when the account
    has an authenticator enrolled.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    if result.requires_two_factor:
        return Envelope(
            status="ok",
            data=AuthResponse(
                requires_two_factor=True, two_factor_token=result.two_factor_token
            ),
        )
    return Envelope(status="ok", data=_session_response(runtime, result.session))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    session = await runtime.auth.refresh_session(body.access_token, body.refresh_token)
    return Envelope(status="ok", data=_session_response(runtime, session))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(principal.user_id, body.refresh_token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"revoked_sessions": revoked})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Always answers the same way so account existence is not disclosed."""
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data={"message": FORGOT_PASSWORD_MESSAGE})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password has been reset"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    summary = await runtime.auth.current_user(principal.user_id)
    return Envelope(status="ok", data=UserSummary(**summary))


@router.put("/auth/me", response_model=Envelope, tags=["auth"])
async def update_current_user(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    runtime.users.update_profile(
        principal.user_id, full_name=body.full_name, avatar_url=body.avatar_url
    )
    summary = await runtime.auth.current_user(principal.user_id)
    return Envelope(status="ok", data=UserSummary(**summary))


# ---------------------------------------------------------------- two-factor


@router.get("/auth/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    status = await runtime.auth.two_factor_status(principal.user_id)
    return Envelope(status="ok", data=TwoFactorStatusResponse(**status))


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["2fa"])
async def two_factor_setup(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    setup = await runtime.auth.setup_two_factor(principal.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            shared_key=setup.shared_key, authenticator_uri=setup.authenticator_uri
        ),
    )


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["2fa"])
async def two_factor_enable(
    body: TwoFactorCodeRequest, principal: AuthContext = Depends(get_user)
):
    """Confirm the pending authenticator; recovery codes are shown only here."""
    runtime = get_runtime()
    codes = await runtime.auth.enable_two_factor(principal.user_id, body.code)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorDisableRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.disable_two_factor(principal.user_id, body.password)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["2fa"])
async def two_factor_verify(body: TwoFactorVerifyRequest):
    runtime = get_runtime()
    session = await runtime.auth.verify_two_factor(body.two_factor_token, body.code)
    return Envelope(status="ok", data=_session_response(runtime, session))


@router.post("/auth/2fa/recovery", response_model=Envelope, tags=["2fa"])
async def two_factor_recovery(body: TwoFactorRecoveryRequest):
    runtime = get_runtime()
    session = await runtime.auth.recovery_login(body.two_factor_token, body.recovery_code)
    return Envelope(status="ok", data=_session_response(runtime, session))


# -------------------------------------------------------------- admin: roles


@router.get("/admin/roles", response_model=Envelope, tags=["admin"])
async def list_roles(_: AuthContext = Depends(require_permission(Permissions.USERS_VIEW))):
    runtime = get_runtime()
    roles = [_role_response(runtime, role) for role in runtime.roles.list_roles()]
    return Envelope(status="ok", data={"items": roles})


@router.get("/admin/roles/permissions", response_model=Envelope, tags=["admin"])
async def list_permissions(
    _: AuthContext = Depends(require_permission(Permissions.USERS_VIEW)),
):
    runtime = get_runtime()
    items = [
        PermissionResponse(id=p.id, name=p.name, description=p.description)
        for p in runtime.roles.list_permissions()
    ]
    return Envelope(status="ok", data={"items": items})


@router.get("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def get_role(
    role_id: str = Path(..., max_length=128),
    _: AuthContext = Depends(require_permission(Permissions.USERS_VIEW)),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=_role_response(runtime, runtime.roles.get_role(role_id)))


@router.post("/admin/roles", response_model=Envelope, status_code=201, tags=["admin"])
async def create_role(
    body: RoleRequest,
    principal: AuthContext = Depends(require_permission(Permissions.USERS_CREATE)),
):
    runtime = get_runtime()
    role = await runtime.roles.create_role(body.name, body.description, body.permission_ids)
    logger.info("admin_role_created", actor=principal.user_id, role_id=role.id)
    return Envelope(status="ok", data=_role_response(runtime, role))


@router.put("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def update_role(
    body: RoleRequest,
    role_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_permission(Permissions.USERS_EDIT)),
):
    runtime = get_runtime()
    role = await runtime.roles.update_role(
        role_id, body.name, body.description, body.permission_ids
    )
    logger.info("admin_role_updated", actor=principal.user_id, role_id=role.id)
    return Envelope(status="ok", data=_role_response(runtime, role))


@router.delete("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def delete_role(
    role_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_permission(Permissions.USERS_DELETE)),
):
    runtime = get_runtime()
    await runtime.roles.delete_role(role_id)
    logger.info("admin_role_deleted", actor=principal.user_id, role_id=role_id)
    return Envelope(status="ok", data={"deleted": True})


# -------------------------------------------------------------- admin: users


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    _: AuthContext = Depends(require_permission(Permissions.USERS_VIEW)),
):
    runtime = get_runtime()
    items = [_user_response(runtime, u) for u in runtime.users.list_users(limit=limit)]
    return Envelope(status="ok", data=UserListResponse(items=items))


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def get_user_detail(
    user_id: str = Path(..., max_length=128),
    _: AuthContext = Depends(require_permission(Permissions.USERS_VIEW)),
):
    runtime = get_runtime()
    return Envelope(status="ok", data=_user_response(runtime, runtime.users.get_user(user_id)))


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def create_user(
    body: UserCreateRequest,
    principal: AuthContext = Depends(require_permission(Permissions.USERS_CREATE)),
):
    runtime = get_runtime()
    user = runtime.users.create_user(
        body.email, body.full_name, body.password, body.role_ids
    )
    logger.info("admin_user_created", actor=principal.user_id, user_id=user.id)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.put("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def update_user(
    body: UserUpdateRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_permission(Permissions.USERS_EDIT)),
):
    runtime = get_runtime()
    user = runtime.users.update_user(
        user_id,
        full_name=body.full_name,
        avatar_url=body.avatar_url,
        is_active=body.is_active,
        role_ids=body.role_ids,
        acting_user_id=principal.user_id,
    )
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def deactivate_user(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_permission(Permissions.USERS_DELETE)),
):
    runtime = get_runtime()
    user = runtime.users.deactivate_user(user_id, acting_user_id=principal.user_id)
    return Envelope(status="ok", data=_user_response(runtime, user))


@router.post("/admin/users/{user_id}/reset-password", response_model=Envelope, tags=["admin"])
async def admin_reset_password(
    body: AdminResetPasswordRequest,
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(require_permission(Permissions.USERS_RESET_PASSWORD)),
):
    runtime = get_runtime()
    revoked = await runtime.users.reset_password(user_id, body.new_password)
    logger.info("admin_password_reset", actor=principal.user_id, user_id=user_id)
    return Envelope(status="ok", data={"revoked_sessions": revoked})
