from __future__ import annotations

import ipaddress
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from aegisid.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MFAResendRequest,
    MFAVerifyRequest,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    RegisterRequest,
    RolePolicyRequest,
    RolePolicyResponse,
    SecurityEventResponse,
    SessionResponse,
    TOTPEnableRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    TrustedDeviceResponse,
)
from aegisid.config import Role
from aegisid.logging import get_logger
from aegisid.service.auth import AuthPrincipal
from aegisid.service.context import RequestContext
from aegisid.service.errors import Forbidden, Unauthenticated
from aegisid.service.outcomes import Authenticated, MfaRequired, TokenPair
from aegisid.service.runtime import get_runtime
from aegisid.service.sessions import SessionView
from aegisid.storage.models import RoleMFAPolicy, SecurityEvent, TrustedDevice

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_ADMIN_ROLES = {Role.ADMIN.value, Role.SUPER_ADMIN.value}


def _client_ip(request: Request) -> Optional[str]:
    host = request.client.host if request.client else None
    if not host:
        return None
    try:
        return str(ipaddress.ip_address(host))
    except ValueError:
        return None


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        accept_language=request.headers.get("accept-language"),
    )


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise Unauthenticated("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("malformed authorization header")
    return token.strip()


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthPrincipal:
    runtime = get_runtime()
    return runtime.auth.authenticate_access(
        _bearer_token(authorization), request_context(request)
    )


async def get_admin_principal(
    principal: AuthPrincipal = Depends(get_principal),
) -> AuthPrincipal:
    if principal.role not in _ADMIN_ROLES:
        raise Forbidden("admin access required")
    return principal


def _token_pair(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _auth_response(outcome: Authenticated | MfaRequired) -> AuthResponse:
    if isinstance(outcome, MfaRequired):
        return AuthResponse(
            mfa_required=True,
            user=outcome.user,
            challenge_token=outcome.challenge_token,
            method=outcome.method,
        )
    return AuthResponse(
        user=outcome.user,
        session_id=outcome.session_id,
        tokens=_token_pair(outcome.tokens),
        mfa_setup_required=outcome.mfa_setup_required,
    )


def _session_response(view: SessionView) -> SessionResponse:
    s = view.session
    return SessionResponse(
        id=s.id,
        device_name=s.device_name,
        browser=s.browser,
        os=s.os,
        device_type=s.device_type,
        ip_address=s.ip_address,
        location=s.location,
        created_at=s.created_at,
        last_activity_at=s.last_activity_at,
        expires_at=s.expires_at,
        current=view.current,
    )


def _device_response(device: TrustedDevice) -> TrustedDeviceResponse:
    return TrustedDeviceResponse(
        id=device.id,
        name=device.name,
        browser=device.browser,
        os=device.os,
        device_type=device.device_type,
        ip_address=device.ip_address,
        trusted_until=device.trusted_until,
        last_used_at=device.last_used_at,
        created_at=device.created_at,
    )


def _event_response(event: SecurityEvent) -> SecurityEventResponse:
    return SecurityEventResponse(
        id=event.id,
        event_type=event.event_type,
        severity=event.severity,
        description=event.description,
        metadata=event.metadata,
        ip_address=event.ip_address,
        location=event.location,
        acknowledged=event.acknowledged,
        created_at=event.created_at,
    )


def _policy_response(policy: RoleMFAPolicy) -> RolePolicyResponse:
    return RolePolicyResponse(
        role=policy.role,
        mfa_required=policy.mfa_required,
        allowed_methods=list(policy.allowed_methods),
        grace_period_days=policy.grace_period_days,
        exempt=policy.exempt,
        updated_at=policy.updated_at,
    )


# auth
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user = runtime.auth.register(body.username, body.email, body.password)
    return Envelope(status="ok", data=user.public_view())


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, ctx: RequestContext = Depends(request_context)):
    """Authenticate with email and password.

    Returns tokens directly, or ``mfa_required`` with a challenge token to
    pass to ``/auth/mfa/verify``.
    """
    runtime = get_runtime()
    outcome = await runtime.auth.login(body.email, body.password, ctx, body.remember_me)
    return Envelope(status="ok", data=_auth_response(outcome))


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_mfa(body: MFAVerifyRequest, ctx: RequestContext = Depends(request_context)):
    runtime = get_runtime()
    outcome = await runtime.auth.verify_mfa(
        body.challenge_token, body.code, body.method, ctx, body.remember_device
    )
    return Envelope(status="ok", data=_auth_response(outcome))


@router.post("/auth/mfa/resend", response_model=Envelope, tags=["auth"])
async def resend_mfa_code(body: MFAResendRequest):
    runtime = get_runtime()
    record = await runtime.auth.resend_email_code(body.challenge_token)
    return Envelope(
        status="ok",
        data={"expires_at": record.expires_at, "resend_count": record.resend_count},
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_pair(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: TokenRefreshRequest):
    runtime = get_runtime()
    revoked = runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthPrincipal = Depends(get_principal)
):
    """Change the password; every session and trusted device is revoked."""
    runtime = get_runtime()
    runtime.auth.change_password(principal.user, body.current_password, body.new_password)
    return Envelope(status="ok", data={"password_changed": True})


# MFA enrolment
@router.post("/mfa/totp/setup", response_model=Envelope, tags=["mfa"])
async def setup_totp(principal: AuthPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    enrollment = runtime.mfa.setup_totp(principal.user)
    return Envelope(
        status="ok",
        data={"secret": enrollment.secret, "otpauth_uri": enrollment.otpauth_uri},
    )


@router.post("/mfa/totp/enable", response_model=Envelope, tags=["mfa"])
async def enable_totp(body: TOTPEnableRequest, principal: AuthPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    result, backup_codes = runtime.mfa.enable_totp(principal.user, body.code)
    runtime.auth.ensure_verified(principal.user, result)
    return Envelope(status="ok", data={"enabled": True, "backup_codes": backup_codes})


@router.post("/mfa/totp/disable", response_model=Envelope, tags=["mfa"])
async def disable_totp(
    body: PasswordConfirmRequest, principal: AuthPrincipal = Depends(get_principal)
):
    runtime = get_runtime()
    runtime.mfa.disable_totp(principal.user, body.password)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/mfa/email/enable", response_model=Envelope, tags=["mfa"])
async def enable_email_mfa(principal: AuthPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    runtime.mfa.enable_email_mfa(principal.user)
    return Envelope(status="ok", data={"email_mfa_enabled": True})


@router.post("/mfa/email/disable", response_model=Envelope, tags=["mfa"])
async def disable_email_mfa(
    body: PasswordConfirmRequest, principal: AuthPrincipal = Depends(get_principal)
):
    runtime = get_runtime()
    runtime.mfa.disable_email_mfa(principal.user, body.password)
    return Envelope(status="ok", data={"email_mfa_enabled": False})


@router.post("/mfa/backup-codes", response_model=Envelope, tags=["mfa"])
async def regenerate_backup_codes(
    body: PasswordConfirmRequest, principal: AuthPrincipal = Depends(get_principal)
):
    runtime = get_runtime()
    codes = runtime.mfa.regenerate_backup_codes(principal.user, body.password)
    return Envelope(status="ok", data={"backup_codes": codes})


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: AuthPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    requirement = runtime.mfa.mfa_required_for(principal.user)
    return Envelope(
        status="ok",
        data={
            "required": requirement.required,
            "method": requirement.method,
            "setup_required": requirement.setup_required,
            "grace_period": runtime.policy.grace_status(principal.user),
            "backup_codes_remaining": runtime.mfa.backup_codes_remaining(principal.user_id),
        },
    )


# sessions
@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    views = runtime.auth.list_sessions(principal)
    return Envelope(status="ok", data=[_session_response(v) for v in views])


@router.post("/sessions/revoke-others", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: AuthPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    count = runtime.auth.revoke_other_sessions(principal)
    return Envelope(status="ok", data={"revoked": count})


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthPrincipal = Depends(get_principal),
):
    runtime = get_runtime()
    runtime.auth.revoke_session(principal, session_id)
    return Envelope(status="ok", data={"revoked": session_id})


# trusted devices
@router.get("/devices", response_model=Envelope, tags=["devices"])
async def list_devices(principal: AuthPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    devices = runtime.trusted_devices.list(principal.user_id)
    return Envelope(status="ok", data=[_device_response(d) for d in devices])


@router.delete("/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def revoke_device(
    device_id: str = Path(..., max_length=64),
    principal: AuthPrincipal = Depends(get_principal),
):
    runtime = get_runtime()
    runtime.trusted_devices.revoke(principal.user_id, device_id)
    return Envelope(status="ok", data={"revoked": device_id})


@router.delete("/devices", response_model=Envelope, tags=["devices"])
async def revoke_all_devices(principal: AuthPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    count = runtime.trusted_devices.revoke_all(principal.user_id)
    return Envelope(status="ok", data={"revoked": count})


# security events
@router.get("/security/events", response_model=Envelope, tags=["security"])
async def list_security_events(
    limit: int = Query(50, ge=1, le=200),
    unacknowledged_only: bool = Query(False),
    principal: AuthPrincipal = Depends(get_principal),
):
    runtime = get_runtime()
    events = runtime.security.list_events(
        principal.user_id, limit=limit, unacknowledged_only=unacknowledged_only
    )
    return Envelope(
        status="ok",
        data={
            "events": [_event_response(e) for e in events],
            "unacknowledged": runtime.security.count_unacknowledged(principal.user_id),
        },
    )


@router.post("/security/events/ack-all", response_model=Envelope, tags=["security"])
async def acknowledge_all_events(principal: AuthPrincipal = Depends(get_principal)):
    runtime = get_runtime()
    count = runtime.security.acknowledge_all(principal.user_id)
    return Envelope(status="ok", data={"acknowledged": count})


@router.post("/security/events/{event_id}/ack", response_model=Envelope, tags=["security"])
async def acknowledge_event(
    event_id: str = Path(..., max_length=64),
    principal: AuthPrincipal = Depends(get_principal),
):
    runtime = get_runtime()
    runtime.security.acknowledge(principal.user_id, event_id)
    return Envelope(status="ok", data={"acknowledged": event_id})


# admin
@router.post("/admin/users/{user_id}/mfa/unlock", response_model=Envelope, tags=["admin"])
async def admin_unlock_mfa(
    user_id: str = Path(..., max_length=64),
    principal: AuthPrincipal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    runtime.mfa.admin_unlock(user_id)
    logger.info("admin_mfa_unlock", admin_id=principal.user_id, target_user_id=user_id)
    return Envelope(status="ok", data={"unlocked": user_id})


@router.get("/admin/mfa/policies", response_model=Envelope, tags=["admin"])
async def list_role_policies(principal: AuthPrincipal = Depends(get_admin_principal)):
    runtime = get_runtime()
    return Envelope(status="ok", data=[_policy_response(p) for p in runtime.policy.list()])


@router.put("/admin/mfa/policies/{role}", response_model=Envelope, tags=["admin"])
async def set_role_policy(
    body: RolePolicyRequest,
    role: str = Path(..., max_length=32),
    principal: AuthPrincipal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    policy = runtime.policy.set_role_policy(
        role,
        mfa_required=body.mfa_required,
        allowed_methods=body.allowed_methods,
        grace_period_days=body.grace_period_days,
        exempt=body.exempt,
    )
    logger.info("admin_mfa_policy_set", admin_id=principal.user_id, role=policy.role)
    return Envelope(status="ok", data=_policy_response(policy))
