"""Custom hostname records through the Vercel DNS API."""

from typing import Any

import httpx

from smartdeploy.config import settings
from smartdeploy.core.interfaces import DnsResult
from smartdeploy.provisioning.naming import slugify
from smartdeploy.utils.logging import get_logger

logger = get_logger(__name__)

VERCEL_API_URL = "https://api.vercel.com"


def strip_scheme(target: str) -> str:
    value = target.strip()
    for prefix in ("https://", "http://"):
        if value.startswith(prefix):
            value = value[len(prefix):]
    return value.split("/", 1)[0]


class VercelDnsClient:
    """CNAME records under one Vercel-managed domain."""

    def __init__(
        self,
        token: str | None = None,
        domain: str | None = None,
        team_id: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token if token is not None else settings.vercel_token
        self.domain = (domain if domain is not None else settings.vercel_domain) or ""
        self.team_id = team_id if team_id is not None else settings.vercel_team_id
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.token and self.domain)

    def hostname_for(self, service_name: str) -> str | None:
        if not self.configured:
            return None
        return f"{slugify(service_name)}.{self.domain}"

    def _subdomain(self, hostname: str) -> str:
        suffix = f".{self.domain}"
        return hostname[: -len(suffix)] if hostname.endswith(suffix) else hostname

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=VERCEL_API_URL,
            headers={"Authorization": f"Bearer {self.token}"},
            params={"teamId": self.team_id} if self.team_id else None,
            timeout=15.0,
            transport=self.transport,
        )

    async def _find_record(self, client: httpx.AsyncClient, name: str) -> dict[str, Any] | None:
        response = await client.get(f"/v4/domains/{self.domain}/records", params={"limit": 100})
        response.raise_for_status()
        for record in response.json().get("records", []):
            if record.get("name") == name:
                return record
        return None

    async def upsert_host_record(self, hostname: str, target: str) -> DnsResult:
        """Point ``hostname`` at ``target`` with a CNAME, updating any existing record."""
        if not self.configured:
            return DnsResult(success=False, error="DNS provider is not configured")

        name = self._subdomain(hostname)
        body = {"name": name, "type": "CNAME", "value": strip_scheme(target), "ttl": 60}
        try:
            async with self._client() as client:
                response = await client.post(f"/v2/domains/{self.domain}/records", json=body)
                if response.is_success:
                    logger.info("dns.record.created", hostname=hostname)
                    return DnsResult(success=True, resolved_url=f"https://{hostname}")

                conflict = response.status_code in (400, 409) and "exist" in response.text.lower()
                if not conflict:
                    return DnsResult(
                        success=False, error=f"HTTP {response.status_code}: {response.text[:200]}"
                    )

                record = await self._find_record(client, name)
                if record is None:
                    return DnsResult(success=False, error=f"Record {name} conflicts but was not found")
                update = await client.patch(
                    f"/v1/domains/records/{record['id']}",
                    json={"value": body["value"], "type": "CNAME", "ttl": 60},
                )
                update.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("dns.record.failed", hostname=hostname, error=str(e))
            return DnsResult(success=False, error=str(e))

        logger.info("dns.record.updated", hostname=hostname)
        return DnsResult(success=True, resolved_url=f"https://{hostname}")

    async def delete_host_record(self, hostname: str) -> DnsResult:
        if not self.configured:
            return DnsResult(success=False, error="DNS provider is not configured")

        name = self._subdomain(hostname)
        try:
            async with self._client() as client:
                record = await self._find_record(client, name)
                if record is None:
                    return DnsResult(success=True)
                response = await client.delete(f"/v2/domains/{self.domain}/records/{record['id']}")
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("dns.record.delete_failed", hostname=hostname, error=str(e))
            return DnsResult(success=False, error=str(e))

        logger.info("dns.record.deleted", hostname=hostname)
        return DnsResult(success=True)
