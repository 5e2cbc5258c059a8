from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from aegisid.config import MfaMethod, Settings
from aegisid.logging import get_logger
from aegisid.service.clock import Clock, SystemClock
from aegisid.service.context import RequestContext
from aegisid.service.credentials import CredentialStore
from aegisid.service.errors import (
    Forbidden,
    InvalidChallenge,
    InvalidCredentials,
    InvalidMfaCode,
    MfaExpired,
    MfaLockedOut,
    MfaRateLimited,
    NotFound,
    SessionExpired,
    Unauthenticated,
    ValidationFailed,
)
from aegisid.service.mfa import MFAEngine
from aegisid.service.outcomes import (
    Authenticated,
    LoginOutcome,
    MfaExpiredCode,
    MfaInvalid,
    MfaLocked,
    MfaOk,
    MfaRequired,
    MfaThrottled,
    MfaVerification,
    TokenPair,
)
from aegisid.service.policy import MFAPolicyService
from aegisid.service.security import FailureReason, SecurityDetector
from aegisid.service.sessions import REVOKED, SessionManager, SessionView
from aegisid.service.tokens import TokenError, TokenExpired, TokenKind, TokenService
from aegisid.storage.models import EmailCode, Session, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthPrincipal:
    """The caller behind a validated access token."""

    user: User
    session_id: Optional[str]

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role


def _session_reason(reason: Optional[str]) -> str:
    # Revoked sessions surface as an ended refresh horizon
    return "refresh" if reason in (None, REVOKED) else reason


class AuthOrchestrator:
    """Login state machine tying credentials, MFA, tokens and sessions together.

    ``login`` moves a request from submitted credentials to either an issued
    token pair or an MFA challenge; ``verify_mfa`` finishes a challenge;
    ``refresh`` trades a refresh token for a new access token. Failures
    raise the ``ServiceError`` taxonomy from ``aegisid.service.errors``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        credentials: CredentialStore,
        tokens: TokenService,
        mfa: MFAEngine,
        sessions: SessionManager,
        security: SecurityDetector,
        policy: MFAPolicyService,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.tokens = tokens
        self.mfa = mfa
        self.sessions = sessions
        self.security = security
        self.policy = policy
        self.clock = clock or SystemClock()

    # registration
    def register(self, username: str, email: str, password: str) -> User:
        if not self.settings.allow_signup:
            raise Forbidden("signup is disabled")
        return self.credentials.create(
            username,
            email,
            password,
            mfa_grace_period_end=self.policy.grace_end_for_new_user("user"),
        )

    # login
    async def login(
        self,
        email: str,
        password: str,
        ctx: RequestContext,
        remember_me: bool = False,
    ) -> LoginOutcome:
        """Check credentials and either finish the login or open an MFA challenge.

        Raises:
            InvalidCredentials: unknown email, deactivated account or wrong password
            MfaLockedOut: email MFA is required and the user is locked out
            EmailSendFailed: the email code could not be delivered
        """
        try:
            user = self.credentials.find_by_email(email)
        except NotFound:
            self.credentials.dummy_verify(password)
            await self.security.record_and_detect(
                email=email,
                success=False,
                ctx=ctx,
                failure_reason=FailureReason.UNKNOWN_EMAIL,
            )
            raise InvalidCredentials()

        if not self.credentials.verify_password(user, password):
            await self.security.record_and_detect(
                email=user.email,
                success=False,
                ctx=ctx,
                user=user,
                failure_reason=FailureReason.INVALID_PASSWORD,
            )
            logger.info("login_failed", user_id=user.id, reason="invalid_password")
            raise InvalidCredentials()

        self.credentials.rehash_if_needed(user, password)

        requirement = self.mfa.mfa_required_for(user)
        if not requirement.required:
            return await self._complete_login(
                user, ctx, remember_me, setup_required=requirement.setup_required
            )
        if self.mfa.is_trusted_device(user, ctx.device_fingerprint):
            logger.info("mfa_bypassed_trusted_device", user_id=user.id)
            return await self._complete_login(user, ctx, remember_me)

        method = requirement.method or MfaMethod.TOTP.value
        challenge = self.tokens.issue(
            TokenKind.MFA,
            user.id,
            {"email": user.email, "method": method, "remember_me": remember_me},
        )
        if method == MfaMethod.EMAIL.value:
            await self.mfa.email_codes.issue(user)
        logger.info("login_mfa_challenge", user_id=user.id, method=method)
        return MfaRequired(challenge_token=challenge, method=method, user=user.public_view())

    async def _complete_login(
        self,
        user: User,
        ctx: RequestContext,
        remember_me: bool,
        *,
        setup_required: bool = False,
    ) -> Authenticated:
        location = await self.sessions.locate(ctx.ip)
        session, refresh_token = await self.sessions.create_session(
            user, ctx, remember_me, location=location
        )
        access_token, access_expires_at = self._issue_access(user, session.id)
        await self.security.record_and_detect(
            email=user.email,
            success=True,
            ctx=ctx,
            user=user,
            location=location,
            session_id=session.id,
        )
        logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return Authenticated(
            user=user.public_view(),
            tokens=TokenPair(
                access_token=access_token,
                refresh_token=refresh_token,
                access_expires_at=access_expires_at,
                refresh_expires_at=session.expires_at,
            ),
            session_id=session.id,
            mfa_setup_required=setup_required,
        )

    def _issue_access(self, user: User, session_id: str):
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        now = self.clock.now()
        token = self.tokens.issue(
            TokenKind.ACCESS, user.id, {"role": user.role, "sid": session_id}, ttl=ttl
        )
        return token, now + ttl

    # MFA
    def _challenge_user(self, challenge_token: str) -> tuple[User, dict]:
        try:
            claims = self.tokens.validate(challenge_token, TokenKind.MFA)
        except TokenError as exc:
            logger.info("mfa_challenge_rejected", reason=exc.reason)
            raise InvalidChallenge()
        try:
            user = self.credentials.find_by_id(claims["sub"])
        except NotFound:
            raise InvalidChallenge()
        return user, claims

    async def verify_mfa(
        self,
        challenge_token: str,
        code: str,
        method: Optional[str],
        ctx: RequestContext,
        remember_device: bool = False,
    ) -> Authenticated:
        """Finish an MFA challenge and issue tokens.

        Raises:
            InvalidChallenge: the challenge token is missing, expired or forged
            InvalidMfaCode: wrong code; ``attempts_remaining`` is attached
            MfaExpired: the emailed code expired or was superseded
            MfaLockedOut: too many failures; ``until`` is attached
            MfaRateLimited: verification is being throttled
        """
        user, claims = self._challenge_user(challenge_token)
        result = self.mfa.verify(user, method or claims.get("method") or MfaMethod.TOTP.value, code)
        self.ensure_verified(user, result)
        if remember_device:
            self.mfa.trust(user, ctx)
        return await self._complete_login(user, ctx, bool(claims.get("remember_me")))

    def ensure_verified(self, user: User, result: MfaVerification) -> None:
        """Raise the matching ServiceError unless ``result`` is a success."""
        if isinstance(result, MfaOk):
            logger.info("mfa_verified", user_id=user.id, method=result.method)
            return
        if isinstance(result, MfaInvalid):
            logger.info("mfa_code_rejected", user_id=user.id, remaining=result.attempts_remaining)
            raise InvalidMfaCode(result.attempts_remaining)
        if isinstance(result, MfaExpiredCode):
            raise MfaExpired()
        if isinstance(result, MfaLocked):
            raise MfaLockedOut(result.until)
        if isinstance(result, MfaThrottled):
            raise MfaRateLimited(result.retry_after)
        raise TypeError(f"unhandled MFA result {result!r}")

    async def resend_email_code(self, challenge_token: str) -> EmailCode:
        user, claims = self._challenge_user(challenge_token)
        if claims.get("method") != MfaMethod.EMAIL.value:
            raise ValidationFailed("this challenge does not use email codes")
        return await self.mfa.email_codes.resend(user)

    # tokens and sessions
    async def refresh(self, refresh_token: str) -> TokenPair:
        """Issue a new access token for a live session.

        Raises:
            Unauthenticated: the token is forged, malformed or unknown
            SessionExpired: the session behind the token is no longer valid
        """
        try:
            claims = self.tokens.validate(refresh_token, TokenKind.REFRESH)
        except TokenExpired:
            raise SessionExpired("refresh")
        except TokenError as exc:
            logger.info("refresh_rejected", reason=exc.reason)
            raise Unauthenticated("invalid refresh token")
        session = self.sessions.find_by_refresh_token(refresh_token)
        if session is None or claims.get("sid") != session.id or claims["sub"] != session.user_id:
            raise Unauthenticated("invalid refresh token")
        validity = self.sessions.validity(session)
        if not validity.valid:
            raise SessionExpired(_session_reason(validity.reason))
        try:
            user = self.credentials.find_by_id(session.user_id)
        except NotFound:
            self.sessions.revoke(session.id)
            raise Unauthenticated("account is not active")

        self.sessions.touch(session.id)
        presented = refresh_token
        refresh_expires_at = session.expires_at
        if self.settings.rotate_refresh_tokens:
            rotated = self.sessions.rotate_refresh_token(session, refresh_token)
            if rotated is None:
                raise Unauthenticated("refresh token already used")
            presented = rotated
            current = self.sessions.get(session.id)
            if current is not None:
                refresh_expires_at = current.expires_at
        access_token, access_expires_at = self._issue_access(user, session.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=presented,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def authenticate_access(
        self, access_token: str, ctx: Optional[RequestContext] = None
    ) -> AuthPrincipal:
        """Resolve a bearer token to its user and record activity on the session."""
        try:
            claims = self.tokens.validate(access_token, TokenKind.ACCESS)
        except TokenError as exc:
            raise Unauthenticated(f"access token rejected: {exc.reason}")
        try:
            user = self.credentials.find_by_id(claims["sub"])
        except NotFound:
            raise Unauthenticated("account is not active")
        if claims.get("role") not in (None, user.role):
            raise Unauthenticated("role changed; sign in again")

        session_id = claims.get("sid")
        if session_id:
            session = self.sessions.get(session_id)
            if session is None or session.user_id != user.id:
                raise Unauthenticated("session not found")
            validity = self.sessions.validity(session)
            if not validity.valid:
                raise SessionExpired(_session_reason(validity.reason))
            self.sessions.touch(session_id)
        else:
            session_id = self.sessions.touch(
                user_id=user.id,
                ip=ctx.ip if ctx else None,
                user_agent=ctx.user_agent if ctx else None,
            )
        return AuthPrincipal(user=user, session_id=session_id)

    def logout(self, refresh_token: str) -> bool:
        session = self.sessions.find_by_refresh_token(refresh_token)
        if session is None:
            return False
        return self.sessions.revoke(session.id)

    def change_password(self, user: User, current_password: str, new_password: str) -> None:
        if not self.credentials.verify_password(user, current_password):
            raise InvalidCredentials()
        self.credentials.change_password(user.id, new_password)

    def list_sessions(self, principal: AuthPrincipal) -> List[SessionView]:
        return self.sessions.list_for_user(principal.user_id, principal.session_id)

    def revoke_session(self, principal: AuthPrincipal, session_id: str) -> None:
        self.sessions.revoke_for_user(principal.user_id, session_id, principal.session_id)

    def revoke_other_sessions(self, principal: AuthPrincipal) -> int:
        if not principal.session_id:
            raise Unauthenticated("no current session")
        return self.sessions.revoke_all_except(principal.user_id, principal.session_id)

    def session_for(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)
