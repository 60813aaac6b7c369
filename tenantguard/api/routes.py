from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse

from tenantguard.api.error_handling import service_error_response
from tenantguard.api.schemas import (
    AdminUpdateUserRequest,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MFAActivateRequest,
    MFADisableRequest,
    MFARecoveryLoginRequest,
    MFASetupResponse,
    MFAVerifyLoginRequest,
    RecoveryCodesResponse,
    RegisterRequest,
    ResetPasswordRequest,
    SessionListResponse,
    SessionResponse,
    TenantCreateRequest,
    TenantListResponse,
    TenantResponse,
    TenantUpdateRequest,
    TokenResponse,
    UpdateMeRequest,
    UserListResponse,
    UserResponse,
)
from tenantguard.config import Settings
from tenantguard.logging import get_logger
from tenantguard.service.auth import LoginResult
from tenantguard.service.errors import AuthenticationError, ForbiddenError, SessionRevokedError
from tenantguard.service.guard import AuthContext, RequestMeta, bearer_token, require_roles
from tenantguard.service.runtime import get_runtime
from tenantguard.service.tokens import TokenPair
from tenantguard.storage.models import Role, Session, Tenant, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/v1/auth"


def _request_meta(request: Request) -> RequestMeta:
    ip_address = request.client.host if request.client else None
    if get_runtime().settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            ip_address = first_hop or ip_address
    return RequestMeta(
        ip_address=ip_address, user_agent=request.headers.get("User-Agent")
    )


async def get_auth_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.guard.authenticate(authorization, _request_meta(request))


async def get_optional_auth_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[AuthContext]:
    """Like ``get_auth_context`` but yields None for a token the guard rejects."""
    try:
        return await get_auth_context(request, authorization)
    except (AuthenticationError, ForbiddenError) as exc:
        logger.debug("optional_auth_rejected", error_code=exc.error_code)
        return None


def require_role(*roles: Role):
    """Dependency factory: authenticate, then require one of ``roles``."""

    async def _dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        return require_roles(ctx, *roles)

    return _dependency


def _set_refresh_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        role=user.role,
        tenant_id=user.tenant_id,
        tenant_name=user.tenant.name if user.tenant else None,
        phone_number=user.phone_number,
        is_active=user.is_active,
        mfa_enabled=user.mfa_enabled,
        created_at=user.created_at,
    )


def _tenant_to_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        name=tenant.name,
        is_active=tenant.is_active,
        created_at=tenant.created_at,
    )


def _session_to_response(session: Session, current_id: Optional[str]) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        ip_address=session.ip_address,
        user_agent=session.user_agent,
        last_active=session.last_active,
        created_at=session.created_at,
        current=session.id == current_id,
    )


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(access_token=pair.access_token, expires_at=pair.access_expires_at)


def _login_envelope(result: LoginResult, response: Response, settings: Settings) -> Envelope:
    if result.mfa_required:
        return Envelope(
            status="ok",
            data=LoginResponse(mfa_required=True, mfa_token=result.mfa_token),
        )
    _set_refresh_cookie(response, result.tokens.refresh_token, settings)
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.tokens.access_token,
            token_type="bearer",
            expires_at=result.tokens.access_expires_at,
            session_id=result.session.id if result.session else None,
            user=_user_to_response(result.user),
            recovery_codes_remaining=result.recovery_codes_remaining,
        ),
    )


# -- auth -------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    ctx: AuthContext = Depends(require_role(Role.SUPER_ADMIN)),
):
    """Create a user account. SuperAdmin only.

    Non-SuperAdmin roles must name an existing organization. The password
    hash is never part of the response.
    """
    runtime = get_runtime()
    user = await runtime.auth.register(
        ctx,
        name=body.name,
        email=body.email,
        password=body.password,
        role=body.role,
        tenant_name=body.tenant_name,
        phone_number=body.phone_number,
        meta=_request_meta(request),
    )
    user = runtime.store.get_user(user.id) or user
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Accounts with MFA enabled get a short-lived step token instead of a
    token pair; finish with ``/auth/mfa/verify-login`` or
    ``/auth/mfa/recovery-login``.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, _request_meta(request))
    return _login_envelope(result, response, runtime.settings)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
    ctx: Optional[AuthContext] = Depends(get_optional_auth_context),
):
    """Retire the presented access token; expired tokens are accepted."""
    runtime = get_runtime()
    await runtime.auth.logout(
        bearer_token(authorization),
        _request_meta(request),
        fallback_user_id=ctx.user_id if ctx else None,
    )
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request,
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the refresh token held in the http-only cookie."""
    runtime = get_runtime()
    try:
        pair = await runtime.auth.refresh(refresh_cookie, _request_meta(request))
    except SessionRevokedError as exc:
        logger.warning("refresh_rejected_revoked", message=exc.message)
        rejected = service_error_response(exc)
        _clear_refresh_cookie(rejected, runtime.settings)
        return rejected
    _set_refresh_cookie(response, pair.refresh_token, runtime.settings)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.forgot_password(body.email, _request_meta(request))
    return Envelope(
        status="ok",
        data={"message": "If the account exists, a reset link has been sent."},
    )


@router.patch("/auth/reset-password/{token}", response_model=Envelope, tags=["auth"])
async def reset_password(token: str, body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.reset_password(token, body.password, _request_meta(request))
    return Envelope(status="ok", data={"message": "Password has been reset. Please log in."})


# -- MFA --------------------------------------------------------------------


@router.get("/auth/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(request: Request, ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    setup = await runtime.auth.setup_mfa(ctx.user_id, _request_meta(request))
    return Envelope(
        status="ok",
        data=MFASetupResponse(secret=setup.secret, otpauth_uri=setup.otpauth_uri),
    )


@router.post("/auth/mfa/activate", response_model=Envelope, tags=["mfa"])
async def mfa_activate(
    body: MFAActivateRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    """Confirm the pending secret; the recovery codes are only ever shown here."""
    runtime = get_runtime()
    codes = await runtime.auth.activate_mfa(ctx.user_id, body.code, _request_meta(request))
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: MFADisableRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.auth.disable_mfa(ctx.user_id, body.password, _request_meta(request))
    return Envelope(status="ok", data={"mfa_enabled": False})


@router.post("/auth/mfa/verify-login", response_model=Envelope, tags=["mfa"])
async def mfa_verify_login(
    body: MFAVerifyLoginRequest, request: Request, response: Response
):
    runtime = get_runtime()
    result = await runtime.auth.verify_mfa_login(
        body.mfa_token, body.code, _request_meta(request)
    )
    return _login_envelope(result, response, runtime.settings)


@router.post("/auth/mfa/recovery-login", response_model=Envelope, tags=["mfa"])
async def mfa_recovery_login(
    body: MFARecoveryLoginRequest, request: Request, response: Response
):
    runtime = get_runtime()
    result = await runtime.auth.verify_recovery_login(
        body.mfa_token, body.recovery_code, _request_meta(request)
    )
    return _login_envelope(result, response, runtime.settings)


# -- current user -----------------------------------------------------------


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    user = await runtime.auth.get_me(ctx.user_id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.patch("/users/me", response_model=Envelope, tags=["users"])
async def update_me(
    body: UpdateMeRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    user = await runtime.auth.update_me(
        ctx.user_id, body.model_dump(exclude_unset=True), _request_meta(request)
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.patch("/users/me/password", response_model=Envelope, tags=["users"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
):
    """Change the password; every other session is signed out."""
    runtime = get_runtime()
    pair = await runtime.auth.change_password(
        ctx.user_id, body.current_password, body.password, _request_meta(request)
    )
    _set_refresh_cookie(response, pair.refresh_token, runtime.settings)
    return Envelope(status="ok", data=_token_response(pair))


@router.get("/users/me/sessions", response_model=Envelope, tags=["users"])
async def list_my_sessions(ctx: AuthContext = Depends(get_auth_context)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(ctx.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[_session_to_response(s, ctx.session_id) for s in sessions]
        ),
    )


@router.delete("/users/me/sessions", response_model=Envelope, tags=["users"])
async def revoke_all_sessions(
    request: Request,
    response: Response,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    count = await runtime.auth.revoke_all_sessions(ctx.user_id, _request_meta(request))
    _clear_refresh_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"revoked": count})


@router.delete("/users/me/sessions/{session_id}", response_model=Envelope, tags=["users"])
async def revoke_session(
    session_id: str,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(ctx.user_id, session_id, _request_meta(request))
    return Envelope(status="ok", data={"revoked": True, "session_id": session_id})


# -- administration ---------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["admin"])
async def list_users(
    request: Request,
    ctx: AuthContext = Depends(require_role(Role.SUPER_ADMIN, Role.ADMIN)),
):
    """List users. Admins only see their own organization."""
    runtime = get_runtime()
    users = await runtime.auth.list_users(ctx, _request_meta(request))
    return Envelope(
        status="ok", data=UserListResponse(items=[_user_to_response(u) for u in users])
    )


@router.patch("/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    user_id: str,
    body: AdminUpdateUserRequest,
    request: Request,
    ctx: AuthContext = Depends(require_role(Role.SUPER_ADMIN)),
):
    runtime = get_runtime()
    user = await runtime.auth.admin_update_user(
        ctx, user_id, body.model_dump(exclude_unset=True), _request_meta(request)
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.delete("/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    user_id: str,
    request: Request,
    hard: bool = Query(False, description="Remove the row instead of soft-deleting"),
    ctx: AuthContext = Depends(require_role(Role.SUPER_ADMIN)),
):
    runtime = get_runtime()
    await runtime.auth.admin_delete_user(
        ctx, user_id, hard=hard, meta=_request_meta(request)
    )
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id, "hard": hard})


@router.post("/tenants", response_model=Envelope, status_code=201, tags=["admin"])
async def create_tenant(
    body: TenantCreateRequest,
    request: Request,
    ctx: AuthContext = Depends(require_role(Role.SUPER_ADMIN)),
):
    runtime = get_runtime()
    tenant = await runtime.auth.create_tenant(
        ctx, body.name, is_active=body.is_active, meta=_request_meta(request)
    )
    return Envelope(status="ok", data=_tenant_to_response(tenant))


@router.get("/tenants", response_model=Envelope, tags=["admin"])
async def list_tenants(ctx: AuthContext = Depends(require_role(Role.SUPER_ADMIN))):
    runtime = get_runtime()
    tenants = await runtime.auth.list_tenants(ctx)
    return Envelope(
        status="ok",
        data=TenantListResponse(items=[_tenant_to_response(t) for t in tenants]),
    )


@router.patch("/tenants/{tenant_id}", response_model=Envelope, tags=["admin"])
async def update_tenant(
    tenant_id: str,
    body: TenantUpdateRequest,
    request: Request,
    ctx: AuthContext = Depends(require_role(Role.SUPER_ADMIN)),
):
    runtime = get_runtime()
    tenant = await runtime.auth.update_tenant(
        ctx, tenant_id, is_active=body.is_active, meta=_request_meta(request)
    )
    return Envelope(status="ok", data=_tenant_to_response(tenant))
