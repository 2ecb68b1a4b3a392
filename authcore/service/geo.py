from __future__ import annotations

import ipaddress
from typing import Optional

import httpx

from authcore.logging import get_logger

logger = get_logger(__name__)

LOCAL_NETWORK = "Local Network"
UNKNOWN_LOCATION = "Unknown"


class GeoLocator:
    """Best-effort coarse location for an IP address.

    Never raises: private and loopback ranges resolve to ``"Local Network"``
    without a lookup; any lookup failure, timeout or non-success answer
    resolves to ``"Unknown"``.
    """

    def __init__(
        self,
        base_url: str = "http://ip-api.com/json",
        *,
        timeout_seconds: float = 3.0,
        enabled: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled
        self._transport = transport

    @staticmethod
    def is_local(ip: Optional[str]) -> bool:
        if not ip:
            return True
        try:
            addr = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return addr.is_private or addr.is_loopback or addr.is_link_local

    async def locate(self, ip: Optional[str]) -> str:
        if self.is_local(ip):
            return LOCAL_NETWORK
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            return UNKNOWN_LOCATION
        if not self.enabled:
            return UNKNOWN_LOCATION
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.get(
                    f"{self.base_url}/{ip}",
                    params={"fields": "status,country,regionName,city"},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException:
            logger.warning("geo_lookup_timeout", ip_address=ip)
            return UNKNOWN_LOCATION
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geo_lookup_failed", ip_address=ip, error=str(exc))
            return UNKNOWN_LOCATION
        if not isinstance(data, dict) or data.get("status") != "success":
            return UNKNOWN_LOCATION
        return f"{data.get('city', '')}, {data.get('regionName', '')}, {data.get('country', '')}"
