from __future__ import annotations

import ipaddress
from typing import Optional, Protocol

import httpx

from aegisid.logging import get_logger

logger = get_logger(__name__)


class GeoLookup(Protocol):
    async def lookup(self, ip: Optional[str]) -> Optional[dict]: ...


def location_label(location: Optional[dict]) -> Optional[str]:
    """Comparable "city, region, country" label, or None when unknown."""
    if not location:
        return None
    parts = [location.get(key) for key in ("city", "region", "country")]
    parts = [str(part).strip() for part in parts if part]
    return ", ".join(parts) if parts else None


def _is_public(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_reserved
        or addr.is_multicast
        or addr.is_unspecified
    )


class GeolocationClient:
    """Best-effort IP to ``{country, region, city}`` lookup over HTTP.

    Private addresses, timeouts and malformed responses all yield None; a
    lookup never raises into the login path.
    """

    def __init__(
        self,
        url_template: Optional[str],
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url_template = url_template or None
        self.timeout = timeout
        self._transport = transport

    async def lookup(self, ip: Optional[str]) -> Optional[dict]:
        if not self.url_template or not ip or not _is_public(ip):
            return None
        url = self.url_template.format(ip=ip)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException:
            logger.warning("geolocation_timeout", timeout=self.timeout)
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geolocation_lookup_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("status") == "fail":
            return None
        location = {
            "country": payload.get("country") or payload.get("country_name"),
            "region": payload.get("regionName") or payload.get("region"),
            "city": payload.get("city"),
        }
        if not any(location.values()):
            return None
        return location
