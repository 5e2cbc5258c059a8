from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from aegisid.config import Settings
from aegisid.logging import get_logger
from aegisid.service.clock import Clock, SystemClock
from aegisid.service.context import RequestContext
from aegisid.service.errors import CannotRevokeCurrent, NotFound
from aegisid.service.geolocation import GeoLookup
from aegisid.service.outcomes import SessionValidity
from aegisid.service.tokens import TokenKind, TokenService, hash_token
from aegisid.storage.models import Session, User

logger = get_logger(__name__)

REVOKED = "revoked"


@dataclass(frozen=True)
class SessionView:
    session: Session
    current: bool


class SessionManager:
    """Session rows, their sliding and fixed expiries, and revocation.

    A session is valid while it is active, before its refresh horizon and
    its absolute horizon, and while the gap since ``last_activity_at`` is
    shorter than the inactivity window. Only a digest of the refresh token
    is stored.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        tokens: TokenService,
        *,
        geolocation: Optional[GeoLookup] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.geolocation = geolocation
        self.clock = clock or SystemClock()

    @property
    def inactivity_window(self) -> timedelta:
        return timedelta(minutes=self.settings.session_inactivity_minutes)

    def _refresh_ttl(self, remember_me: bool) -> timedelta:
        days = (
            self.settings.refresh_token_ttl_remember_days
            if remember_me
            else self.settings.refresh_token_ttl_days
        )
        return timedelta(days=days)

    def _absolute_horizon(self, remember_me: bool) -> timedelta:
        days = (
            self.settings.session_absolute_remember_days
            if remember_me
            else self.settings.session_absolute_days
        )
        return timedelta(days=days)

    async def locate(self, ip: Optional[str]) -> Optional[dict]:
        if self.geolocation is None or not ip:
            return None
        try:
            return await asyncio.wait_for(
                self.geolocation.lookup(ip),
                timeout=self.settings.geolocation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("geolocation_timeout", timeout=self.settings.geolocation_timeout_seconds)
            return None

    async def create_session(
        self,
        user: User,
        ctx: RequestContext,
        remember_me: bool = False,
        *,
        location: Optional[dict] = None,
    ) -> tuple[Session, str]:
        """Insert a new session and return it with its plaintext refresh token."""
        if location is None:
            location = await self.locate(ctx.ip)
        now = self.clock.now()
        session_id = str(uuid.uuid4())
        refresh_ttl = self._refresh_ttl(remember_me)
        refresh_token = self.tokens.issue(
            TokenKind.REFRESH, user.id, {"sid": session_id}, ttl=refresh_ttl
        )
        session = self.store.create_session(
            Session(
                id=session_id,
                user_id=user.id,
                refresh_token_hash=hash_token(refresh_token),
                created_at=now,
                expires_at=now + refresh_ttl,
                absolute_expires_at=now + self._absolute_horizon(remember_me),
                last_activity_at=now,
                ip_address=ctx.ip,
                user_agent=ctx.user_agent,
                browser=ctx.device.browser,
                os=ctx.device.os,
                device_type=ctx.device.device_type,
                device_name=ctx.device.name,
                location=location,
                remember_me=remember_me,
                is_active=True,
            )
        )
        logger.info(
            "session_created",
            user_id=user.id,
            session_id=session.id,
            remember_me=remember_me,
            device_type=session.device_type,
        )
        return session, refresh_token

    def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        return self.store.get_session_by_refresh_hash(hash_token(refresh_token))

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def validity(self, session: Session, now: Optional[datetime] = None) -> SessionValidity:
        now = now or self.clock.now()
        if not session.is_active:
            return SessionValidity(valid=False, reason=REVOKED)
        if now >= session.absolute_expires_at:
            return SessionValidity(valid=False, reason="absolute")
        if now - session.last_activity_at >= self.inactivity_window:
            return SessionValidity(valid=False, reason="inactivity")
        if now >= session.expires_at:
            return SessionValidity(valid=False, reason="refresh")
        return SessionValidity(valid=True)

    def is_valid(self, session: Session, now: Optional[datetime] = None) -> bool:
        return self.validity(session, now).valid

    def touch(
        self,
        session_id: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Record activity and return the id of the session that was bumped.

        With no session id the row is matched on (user, ip, user agent),
        falling back to the user's most recently active session.
        """
        now = self.clock.now()
        if session_id is None and user_id is not None:
            match = self.store.find_activity_session(user_id, ip, user_agent)
            if match is None:
                match = self.store.get_most_recent_session(user_id)
                if match is not None:
                    logger.warning(
                        "session_touch_fallback", user_id=user_id, session_id=match.id
                    )
            session_id = match.id if match else None
        if session_id is None:
            return None
        return session_id if self.store.touch_session(session_id, now=now) else None

    def rotate_refresh_token(self, session: Session, presented_token: str) -> Optional[str]:
        """Swap the session's refresh token; None when another refresh won the race."""
        now = self.clock.now()
        expires_at = min(now + self._refresh_ttl(session.remember_me), session.absolute_expires_at)
        ttl = expires_at - now
        new_token = self.tokens.issue(
            TokenKind.REFRESH, session.user_id, {"sid": session.id}, ttl=ttl
        )
        rotated = self.store.rotate_refresh_token(
            session.id,
            hash_token(presented_token),
            hash_token(new_token),
            expires_at=expires_at,
        )
        if not rotated:
            logger.warning("refresh_rotation_conflict", session_id=session.id)
            return None
        return new_token

    def revoke(self, session_id: str) -> bool:
        revoked = self.store.deactivate_session(session_id)
        if revoked:
            logger.info("session_revoked", session_id=session_id)
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = self.store.deactivate_user_sessions(user_id)
        logger.info("sessions_revoked", user_id=user_id, count=count)
        return count

    def revoke_all_except(self, user_id: str, keep_session_id: str) -> int:
        count = self.store.deactivate_user_sessions(user_id, except_session_id=keep_session_id)
        logger.info(
            "other_sessions_revoked", user_id=user_id, kept=keep_session_id, count=count
        )
        return count

    def list_for_user(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[SessionView]:
        now = self.clock.now()
        return [
            SessionView(session=s, current=s.id == current_session_id)
            for s in self.store.list_sessions(user_id, active_only=True)
            if self.is_valid(s, now)
        ]

    def revoke_for_user(
        self, user_id: str, session_id: str, current_session_id: Optional[str]
    ) -> None:
        """Revoke one of the caller's own sessions from the listing.

        Raises:
            CannotRevokeCurrent: ``session_id`` is the caller's own session
            NotFound: no such active session belongs to the caller
        """
        if current_session_id and session_id == current_session_id:
            raise CannotRevokeCurrent()
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id or not session.is_active:
            raise NotFound("session not found")
        self.revoke(session_id)

    def cleanup(self) -> Dict[str, int]:
        now = self.clock.now()
        counts = self.store.delete_expired_sessions(
            now=now, inactive_before=now - self.inactivity_window
        )
        logger.info("sessions_cleaned", total=sum(counts.values()), **counts)
        return counts
