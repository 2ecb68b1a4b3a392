"""User-agent classification and best-effort IP geolocation."""

import httpx
import pytest

from authcore.service.geo import LOCAL_NETWORK, UNKNOWN_LOCATION, GeoLocator
from authcore.service.user_agent import DeviceInfo, parse_user_agent


class TestParseUserAgent:
    @pytest.mark.parametrize(
        "ua, device, browser, os",
        [
            (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
                "Desktop",
                "Chrome 120",
                "Windows 10",
            ),
            (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.2210.91",
                "Desktop",
                "Edge 120",
                "Windows 10",
            ),
            (
                "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
                "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1",
                "Mobile",
                "Mobile Safari 17",
                "iOS 17",
            ),
            (
                "Mozilla/5.0 (iPad; CPU OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
                "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1",
                "Tablet",
                "Mobile Safari 16",
                "iOS 16",
            ),
            (
                "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36",
                "Mobile",
                "Chrome Mobile 120",
                "Android 14",
            ),
            (
                "Mozilla/5.0 (Linux; Android 13; SM-X700) AppleWebKit/537.36 "
                "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
                "Tablet",
                "Chrome 120",
                "Android 13",
            ),
            (
                "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7; rv:121.0) "
                "Gecko/20100101 Firefox/121.0",
                "Desktop",
                "Firefox 121",
                "Mac OS X 10",
            ),
            (
                "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0",
                "Desktop",
                "Firefox 121",
                "Linux",
            ),
        ],
    )
    def test_common_browsers(self, ua, device, browser, os):
        info = parse_user_agent(ua)
        assert (info.device_type, info.browser, info.os) == (device, browser, os)

    @pytest.mark.parametrize(
        "ua",
        [
            "curl/8.4.0",
            "python-requests/2.31.0",
            "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
        ],
    )
    def test_bots_detected(self, ua):
        assert parse_user_agent(ua).device_type == "Bot"

    @pytest.mark.parametrize("ua", [None, "", "   "])
    def test_missing_user_agent(self, ua):
        assert parse_user_agent(ua) == DeviceInfo()

    def test_unrecognized_user_agent(self):
        info = parse_user_agent("SomethingCustom/1.0")
        assert info == DeviceInfo(device_type="Desktop", browser="Other", os="Other")


def _locator(handler, **kwargs):
    return GeoLocator(
        "http://geo.test/json", transport=httpx.MockTransport(handler), **kwargs
    )


class TestGeoLocator:
    @pytest.mark.parametrize("ip", ["10.1.2.3", "192.168.0.10", "127.0.0.1", "::1", None])
    async def test_private_ranges_skip_lookup(self, ip):
        def handler(request):
            raise AssertionError("no lookup expected for local addresses")

        assert await _locator(handler).locate(ip) == LOCAL_NETWORK

    async def test_successful_lookup(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(
                200,
                json={
                    "status": "success",
                    "city": "Berlin",
                    "regionName": "Berlin",
                    "country": "Germany",
                },
            )

        assert await _locator(handler).locate("8.8.8.8") == "Berlin, Berlin, Germany"
        assert seen == ["/json/8.8.8.8"]

    async def test_failed_status_is_unknown(self):
        def handler(request):
            return httpx.Response(200, json={"status": "fail", "message": "reserved range"})

        assert await _locator(handler).locate("8.8.8.8") == UNKNOWN_LOCATION

    async def test_http_error_is_unknown(self):
        def handler(request):
            return httpx.Response(503)

        assert await _locator(handler).locate("8.8.8.8") == UNKNOWN_LOCATION

    async def test_timeout_is_unknown(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        assert await _locator(handler).locate("8.8.8.8") == UNKNOWN_LOCATION

    async def test_non_json_body_is_unknown(self):
        def handler(request):
            return httpx.Response(200, text="<html>oops</html>")

        assert await _locator(handler).locate("8.8.8.8") == UNKNOWN_LOCATION

    async def test_disabled_lookup_is_unknown(self):
        def handler(request):
            raise AssertionError("lookup disabled")

        assert await _locator(handler, enabled=False).locate("8.8.8.8") == UNKNOWN_LOCATION

    async def test_garbage_ip_is_unknown(self):
        def handler(request):
            raise AssertionError("invalid address must not be looked up")

        assert await _locator(handler).locate("not-an-ip") == UNKNOWN_LOCATION
