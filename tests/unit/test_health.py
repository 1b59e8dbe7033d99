"""Unit tests for HTTP health probing."""

import httpx
import pytest

from smartdeploy.services.health import HttpHealthProber, url_for


class TestHttpHealthProber:
    """Tests for HttpHealthProber."""

    @pytest.mark.asyncio
    async def test_first_healthy_port_wins(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.port is None:
                raise httpx.ConnectError("connection refused", request=request)
            if request.url.port == 8080:
                return httpx.Response(500)
            return httpx.Response(302, headers={"Location": "/login"})

        prober = HttpHealthProber(transport=httpx.MockTransport(handler))

        assert await prober.probe("203.0.113.10", [80, 8080, 3000]) == 3000

    @pytest.mark.asyncio
    async def test_no_healthy_port(self):
        prober = HttpHealthProber(transport=httpx.MockTransport(lambda r: httpx.Response(503)))

        assert await prober.probe("203.0.113.10", [80, 8080]) is None

    def test_url_for_omits_default_port(self):
        assert url_for("203.0.113.10", 80) == "http://203.0.113.10"
        assert url_for("203.0.113.10", 8080) == "http://203.0.113.10:8080"
