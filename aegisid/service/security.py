from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Set

from aegisid.config import Settings
from aegisid.logging import get_logger
from aegisid.service.clock import Clock, SystemClock
from aegisid.service.context import RequestContext
from aegisid.service.devices import device_signature
from aegisid.service.email import EmailDeliveryError, EmailSender, render_new_device_alert
from aegisid.service.errors import NotFound
from aegisid.service.geolocation import location_label
from aegisid.storage.models import LoginAttempt, SecurityEvent, User

logger = get_logger(__name__)


class FailureReason(str, Enum):
    UNKNOWN_EMAIL = "unknown_email"
    INVALID_PASSWORD = "invalid_password"


class EventType(str, Enum):
    BRUTE_FORCE_ATTEMPT = "brute_force_attempt"
    LOGIN_FROM_NEW_LOCATION = "login_from_new_location"
    LOGIN_FROM_NEW_DEVICE = "login_from_new_device"


LOCATION_HISTORY_LIMIT = 100


class SecurityDetector:
    """Turns login attempts into deduplicated security events.

    Detection runs after the authentication decision. Every failure in here
    is logged and swallowed: a broken detector must never fail a login.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        sender: Optional[EmailSender] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.sender = sender
        self.clock = clock or SystemClock()
        # Alert mails in flight; held so the tasks are not garbage collected
        self._alert_tasks: Set[asyncio.Task] = set()

    async def record_and_detect(
        self,
        *,
        email: str,
        success: bool,
        ctx: RequestContext,
        user: Optional[User] = None,
        failure_reason: Optional[FailureReason] = None,
        location: Optional[dict] = None,
        session_id: Optional[str] = None,
    ) -> List[SecurityEvent]:
        try:
            events = self.detect(
                email=email,
                success=success,
                ctx=ctx,
                user=user,
                failure_reason=failure_reason,
                location=location,
                session_id=session_id,
            )
        except Exception as exc:
            logger.error(
                "security_detection_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                user_id=user.id if user else None,
            )
            return []
        if user is not None and any(
            e.event_type == EventType.LOGIN_FROM_NEW_DEVICE.value for e in events
        ):
            self._schedule_new_device_alert(user, ctx, location)
        return events

    def _schedule_new_device_alert(
        self, user: User, ctx: RequestContext, location: Optional[dict]
    ) -> None:
        if not self.settings.new_device_alerts or self.sender is None:
            return
        task = asyncio.create_task(self._send_new_device_alert(user, ctx, location))
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_done)

    def _alert_done(self, task: asyncio.Task) -> None:
        self._alert_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "new_device_alert_crashed", error_type=type(exc).__name__, error=str(exc)
            )

    async def drain_alerts(self) -> None:
        """Wait for queued alert mails; used at shutdown and by tests."""
        if self._alert_tasks:
            await asyncio.gather(*list(self._alert_tasks), return_exceptions=True)

    def detect(
        self,
        *,
        email: str,
        success: bool,
        ctx: RequestContext,
        user: Optional[User] = None,
        failure_reason: Optional[FailureReason] = None,
        location: Optional[dict] = None,
        session_id: Optional[str] = None,
    ) -> List[SecurityEvent]:
        """Record the attempt, then run every detector that applies."""
        now = self.clock.now()
        prior_logins: List[LoginAttempt] = []
        if success and user is not None:
            # Read history before this attempt is appended to it
            prior_logins = self.store.list_successful_logins(
                user.id, limit=LOCATION_HISTORY_LIMIT
            )
        self.store.record_login_attempt(
            LoginAttempt(
                id=str(uuid.uuid4()),
                email=email,
                success=success,
                created_at=now,
                user_id=user.id if user else None,
                failure_reason=failure_reason.value if failure_reason else None,
                ip_address=ctx.ip,
                user_agent=ctx.user_agent,
                location=location,
            )
        )

        events: List[SecurityEvent] = []
        if success and user is not None:
            for event in (
                self._check_new_location(user, ctx, location, prior_logins, now),
                self._check_new_device(user, ctx, location, session_id, now),
            ):
                if event is not None:
                    events.append(event)
        brute_force = self._check_brute_force(email, ctx, now)
        if brute_force is not None:
            events.append(brute_force)
        return events

    def _emit(self, event: SecurityEvent, dedupe_minutes: int) -> Optional[SecurityEvent]:
        since = event.created_at - timedelta(minutes=dedupe_minutes)
        if not self.store.create_security_event_unless_recent(event, since=since):
            logger.info(
                "security_event_deduplicated", user_id=event.user_id, event_type=event.event_type
            )
            return None
        logger.warning(
            "security_event_created",
            user_id=event.user_id,
            event_type=event.event_type,
            severity=event.severity,
        )
        return event

    def _check_brute_force(
        self, email: str, ctx: RequestContext, now: datetime
    ) -> Optional[SecurityEvent]:
        window = self.settings.brute_force_window_minutes
        failures = self.store.count_recent_failures(email, since=now - timedelta(minutes=window))
        if failures < self.settings.brute_force_threshold:
            return None
        target = self.store.get_user_by_email(email)
        if target is None:
            return None
        return self._emit(
            SecurityEvent(
                id=str(uuid.uuid4()),
                user_id=target.id,
                event_type=EventType.BRUTE_FORCE_ATTEMPT.value,
                severity="critical",
                description=(
                    f"Multiple failed login attempts detected: {failures} failures "
                    f"in {window} minutes"
                ),
                created_at=now,
                metadata={"failure_count": failures, "time_window_minutes": window},
                ip_address=ctx.ip,
            ),
            self.settings.brute_force_dedupe_minutes,
        )

    def _check_new_device(
        self,
        user: User,
        ctx: RequestContext,
        location: Optional[dict],
        session_id: Optional[str],
        now: datetime,
    ) -> Optional[SecurityEvent]:
        device = ctx.device
        signature = device_signature(device.browser, device.os, device.device_type)
        previous = [
            s for s in self.store.list_sessions(user.id, active_only=False) if s.id != session_id
        ]
        # First-ever login is never "new"
        if not previous:
            return None
        if any(device_signature(s.browser, s.os, s.device_type) == signature for s in previous):
            return None
        return self._emit(
            SecurityEvent(
                id=str(uuid.uuid4()),
                user_id=user.id,
                event_type=EventType.LOGIN_FROM_NEW_DEVICE.value,
                severity="info",
                description=f"Login detected from a new device: {device.name}",
                created_at=now,
                metadata={
                    "browser": device.browser,
                    "os": device.os,
                    "device_type": device.device_type,
                    "device_signature": signature,
                },
                ip_address=ctx.ip,
                location=location,
            ),
            self.settings.event_dedupe_minutes,
        )

    def _check_new_location(
        self,
        user: User,
        ctx: RequestContext,
        location: Optional[dict],
        prior_logins: List[LoginAttempt],
        now: datetime,
    ) -> Optional[SecurityEvent]:
        label = location_label(location)
        if label is None or not prior_logins:
            return None
        if any(location_label(a.location) == label for a in prior_logins):
            return None
        return self._emit(
            SecurityEvent(
                id=str(uuid.uuid4()),
                user_id=user.id,
                event_type=EventType.LOGIN_FROM_NEW_LOCATION.value,
                severity="warning",
                description=f"Login detected from a new location: {label}",
                created_at=now,
                metadata={"location": label},
                ip_address=ctx.ip,
                location=location,
            ),
            self.settings.event_dedupe_minutes,
        )

    async def _send_new_device_alert(
        self, user: User, ctx: RequestContext, location: Optional[dict]
    ) -> None:
        if not self.settings.new_device_alerts or self.sender is None:
            return
        subject, text_body, html_body = render_new_device_alert(
            ctx.device.name, ctx.ip, location_label(location), self.settings.email_from_name
        )
        try:
            await asyncio.wait_for(
                self.sender.send(user.email, subject, text_body, html_body),
                timeout=self.settings.email_send_timeout_seconds,
            )
        except (asyncio.TimeoutError, EmailDeliveryError, OSError) as exc:
            logger.warning(
                "new_device_alert_failed", user_id=user.id, error_type=type(exc).__name__
            )

    # user-facing event management
    def list_events(
        self, user_id: str, *, limit: int = 50, unacknowledged_only: bool = False
    ) -> List[SecurityEvent]:
        return self.store.list_security_events(
            user_id, limit=limit, unacknowledged_only=unacknowledged_only
        )

    def acknowledge(self, user_id: str, event_id: str) -> None:
        if not self.store.acknowledge_security_event(user_id, event_id, now=self.clock.now()):
            raise NotFound("security event not found")

    def acknowledge_all(self, user_id: str) -> int:
        return self.store.acknowledge_all_security_events(user_id, now=self.clock.now())

    def count_unacknowledged(self, user_id: str) -> int:
        return self.store.count_unacknowledged_security_events(user_id)
