import dataclasses

import httpx
import pytest

from aegisid.service.context import RequestContext
from aegisid.service.devices import (
    DeviceInfo,
    device_fingerprint,
    device_signature,
    parse_user_agent,
)
from aegisid.service.geolocation import GeolocationClient, location_label
from helpers import CHROME_UA, FIREFOX_MAC_UA, IPHONE_UA

IPAD_UA = (
    "Mozilla/5.0 (iPad; CPU OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)
EDGE_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.2210.91"
)
URL = "https://geo.example.test/json/{ip}"


@pytest.mark.parametrize(
    "user_agent, expected",
    [
        (CHROME_UA, DeviceInfo("Chrome", "Windows", "desktop")),
        (EDGE_UA, DeviceInfo("Edge", "Windows", "desktop")),
        (FIREFOX_MAC_UA, DeviceInfo("Firefox", "macOS", "desktop")),
        (IPHONE_UA, DeviceInfo("Safari", "iOS", "mobile")),
        (IPAD_UA, DeviceInfo("Safari", "iOS", "tablet")),
        ("curl/8.4.0", DeviceInfo("Unknown", "Unknown", "bot")),
        (None, DeviceInfo("Unknown", "Unknown", "desktop")),
    ],
)
def test_parse_user_agent(user_agent, expected):
    assert parse_user_agent(user_agent) == expected


def test_device_name():
    assert parse_user_agent(IPHONE_UA).name == "Safari on iOS"


def test_fingerprint_depends_on_language_not_just_agent():
    assert device_fingerprint(CHROME_UA, "en-US") == device_fingerprint(CHROME_UA, "en-US")
    assert device_fingerprint(CHROME_UA, "en-US") != device_fingerprint(CHROME_UA, "de-DE")


def test_signature_ignores_browser_version():
    older = CHROME_UA.replace("Chrome/120", "Chrome/119")
    a, b = parse_user_agent(CHROME_UA), parse_user_agent(older)
    assert device_fingerprint(CHROME_UA, None) != device_fingerprint(older, None)
    assert device_signature(a.browser, a.os, a.device_type) == device_signature(
        b.browser, b.os, b.device_type
    )


def test_request_context_derives_device_facts_and_carries_no_time():
    ctx = RequestContext(ip="198.51.100.7", user_agent=IPHONE_UA, accept_language="en-US")
    assert ctx.device.name == "Safari on iOS"
    assert ctx.device_fingerprint == device_fingerprint(IPHONE_UA, "en-US")
    assert "now" not in {f.name for f in dataclasses.fields(RequestContext)}


def test_location_label():
    assert location_label({"city": "Oslo", "region": "Oslo", "country": "Norway"}) == (
        "Oslo, Oslo, Norway"
    )
    assert location_label({"country": "Peru", "city": None}) == "Peru"
    assert location_label({}) is None
    assert location_label(None) is None


class TestGeolocationClient:
    def _client(self, handler):
        return GeolocationClient(URL, transport=httpx.MockTransport(handler))

    async def test_maps_provider_fields(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(
                200,
                json={"status": "success", "country": "Norway", "regionName": "Oslo", "city": "Oslo"},
            )

        location = await self._client(handler).lookup("8.8.8.8")
        assert location == {"country": "Norway", "region": "Oslo", "city": "Oslo"}
        assert seen == ["https://geo.example.test/json/8.8.8.8"]

    async def test_private_and_missing_addresses_are_not_looked_up(self):
        def handler(request):
            raise AssertionError("no request expected")

        client = self._client(handler)
        assert await client.lookup("10.0.0.4") is None
        assert await client.lookup("127.0.0.1") is None
        assert await client.lookup("not-an-ip") is None
        assert await client.lookup(None) is None

    async def test_server_error_yields_none(self):
        client = self._client(lambda request: httpx.Response(500))
        assert await client.lookup("8.8.8.8") is None

    async def test_provider_failure_status_yields_none(self):
        client = self._client(
            lambda request: httpx.Response(200, json={"status": "fail", "message": "reserved range"})
        )
        assert await client.lookup("8.8.8.8") is None

    async def test_timeout_yields_none(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        assert await self._client(handler).lookup("8.8.8.8") is None

    async def test_disabled_without_url(self):
        assert await GeolocationClient(None).lookup("8.8.8.8") is None
