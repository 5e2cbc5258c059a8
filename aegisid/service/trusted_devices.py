from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from aegisid.config import Settings
from aegisid.logging import get_logger
from aegisid.service.clock import Clock, SystemClock
from aegisid.service.context import RequestContext
from aegisid.service.errors import NotFound
from aegisid.storage.models import TrustedDevice

logger = get_logger(__name__)


class TrustedDeviceService:
    """Per-user "remember this device" grants that bypass MFA until they lapse."""

    def __init__(self, store, settings: Settings, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()

    def trust(self, user_id: str, ctx: RequestContext) -> TrustedDevice:
        now = self.clock.now()
        device = self.store.upsert_trusted_device(
            user_id,
            ctx.device_fingerprint,
            trusted_until=now + timedelta(days=self.settings.trusted_device_days),
            now=now,
            name=ctx.device.name,
            browser=ctx.device.browser,
            os=ctx.device.os,
            device_type=ctx.device.device_type,
            ip_address=ctx.ip,
        )
        evicted = self.store.evict_trusted_devices(
            user_id, keep=self.settings.trusted_device_max_per_user
        )
        if evicted:
            logger.info("trusted_devices_evicted", user_id=user_id, count=evicted)
        logger.info("trusted_device_saved", user_id=user_id, device_id=device.id)
        return device

    def is_trusted(self, user_id: str, fingerprint: Optional[str]) -> bool:
        """True when an unexpired grant exists; bumps ``last_used_at`` on a hit."""
        if not fingerprint:
            return False
        device = self.store.get_trusted_device(user_id, fingerprint)
        now = self.clock.now()
        if device is None or device.trusted_until <= now:
            return False
        self.store.touch_trusted_device(device.id, now=now)
        return True

    def list(self, user_id: str) -> List[TrustedDevice]:
        now = self.clock.now()
        return [d for d in self.store.list_trusted_devices(user_id) if d.trusted_until > now]

    def revoke(self, user_id: str, device_id: str) -> None:
        if not self.store.delete_trusted_device(user_id, device_id):
            raise NotFound("trusted device not found")
        logger.info("trusted_device_revoked", user_id=user_id, device_id=device_id)

    def revoke_all(self, user_id: str) -> int:
        removed = self.store.delete_trusted_devices_for_user(user_id)
        logger.info("trusted_devices_revoked", user_id=user_id, count=removed)
        return removed
