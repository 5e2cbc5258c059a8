from __future__ import annotations

import asyncio
from typing import Dict, Optional

from aegisid.logging import get_logger
from aegisid.service.clock import Clock, SystemClock
from aegisid.service.sessions import SessionManager

logger = get_logger(__name__)


class CleanupJob:
    """Periodic sweep of expired sessions, email codes and trusted devices."""

    def __init__(
        self,
        sessions: SessionManager,
        store,
        *,
        interval_seconds: int,
        clock: Optional[Clock] = None,
    ) -> None:
        self.sessions = sessions
        self.store = store
        self.interval_seconds = interval_seconds
        self.clock = clock or SystemClock()
        self._task: asyncio.Task | None = None

    def run_once(self) -> Dict[str, int]:
        counts = dict(self.sessions.cleanup())
        now = self.clock.now()
        counts["email_codes"] = self.store.delete_expired_email_codes(now=now)
        counts["trusted_devices"] = self.store.delete_expired_trusted_devices(now=now)
        logger.info("cleanup_completed", **counts)
        return counts

    async def _loop(self) -> None:
        try:
            while True:
                try:
                    await asyncio.to_thread(self.run_once)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning(
                        "cleanup_failed", error_type=type(exc).__name__, error=str(exc)
                    )
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("cleanup_task_cancelled")
            raise

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("cleanup_task_started", interval_seconds=self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
