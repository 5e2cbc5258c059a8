"""Test doubles and constants shared across the suite."""

import asyncio
import re
from datetime import datetime, timedelta, timezone

from aegisid.service.email import EmailDeliveryError

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_MAC_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14.1; rv:121.0) Gecko/20100101 Firefox/121.0"
)
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)

PASSWORD = "correct horse battery"

_CODE_RE = re.compile(r"verification code is: (\S+)")


class ManualClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeSender:
    """Captures outgoing mail; set ``fail`` to simulate a transport error
    and ``delay`` to simulate a slow relay.
    """

    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.fail = False
        self.delay = 0.0

    async def send(self, to, subject, text, html=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise EmailDeliveryError("smtp unavailable")
        self.messages.append({"to": to, "subject": subject, "text": text, "html": html})
        return f"<{len(self.messages)}@test>"

    def last_code(self) -> str:
        for message in reversed(self.messages):
            match = _CODE_RE.search(message["text"])
            if match:
                return match.group(1)
        raise AssertionError("no verification code was sent")


class FakeGeo:
    """Geolocation stub keyed by IP."""

    def __init__(self, table: dict | None = None) -> None:
        self.table = dict(table or {})

    async def lookup(self, ip):
        return self.table.get(ip)
