"""HTTP health probing."""

import httpx

from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)


def url_for(host: str, port: int, scheme: str = "http") -> str:
    if port == 80:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


class HttpHealthProber:
    """Finds the first port answering with a 2xx or 3xx status."""

    def __init__(self, timeout: float = 5.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self.transport = transport

    async def probe(self, host: str, ports: list[int]) -> int | None:
        async with httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self.transport
        ) as client:
            for port in ports:
                try:
                    response = await client.get(url_for(host, port) + "/")
                except httpx.HTTPError as e:
                    logger.debug("health.probe.unreachable", host=host, port=port, error=str(e))
                    continue
                if 200 <= response.status_code < 400:
                    return port
                logger.debug("health.probe.status", host=host, port=port, status=response.status_code)
        return None
