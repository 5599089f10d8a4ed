"""Cloudflare DNS client.

Thin wrapper over the v4 REST API. Upserts are create-or-adopt: an existing
record with the same name and type is reused (and updated only if its
content or proxy flag differs).
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx
from loguru import logger

from src.infra.clients import DnsRecord

CLOUDFLARE_API_URL = "https://api.cloudflare.com/client/v4"
CAA_TAGS = ("issue", "issuewild")


class CloudflareError(Exception):
    """Raised when the Cloudflare API rejects a request."""

    def __init__(self, message: str, status_code: int, codes: Sequence[int] = ()):
        self.status_code = status_code
        self.codes = list(codes)
        super().__init__(message)


def _parse_record(zone_id: str, raw: dict[str, Any]) -> DnsRecord:
    content = raw.get("content", "")
    if raw.get("type") == "CAA" and raw.get("data"):
        data = raw["data"]
        content = f'{data.get("flags", 0)} {data.get("tag", "")} "{data.get("value", "")}"'
    return DnsRecord(
        id=raw["id"],
        zone_id=zone_id,
        name=raw.get("name", ""),
        type=raw.get("type", ""),
        content=content,
        proxied=bool(raw.get("proxied", False)),
        ttl=raw.get("ttl", 1),
    )


class CloudflareDnsClient:
    """DNS record management for Cloudflare zones.

    Args:
        api_token: API token with Zone.DNS edit permission
        base_url: API root (overridable for tests)
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        api_token: str,
        *,
        base_url: str = CLOUDFLARE_API_URL,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = self._client.request(method, path, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.is_error or not payload.get("success", False):
            errors = payload.get("errors") or []
            detail = "; ".join(str(e.get("message", e)) for e in errors) or response.text
            raise CloudflareError(
                f"Cloudflare API {method} {path} failed ({response.status_code}): {detail}",
                status_code=response.status_code,
                codes=[e.get("code", 0) for e in errors if isinstance(e, dict)],
            )
        return payload.get("result")

    # =========================================================================
    # Records
    # =========================================================================

    def list_records(
        self, zone_id: str, name: str, record_type: str | None = None
    ) -> list[DnsRecord]:
        params = {"name": name}
        if record_type:
            params["type"] = record_type
        result = self._request("GET", f"/zones/{zone_id}/dns_records", params=params)
        return [_parse_record(zone_id, raw) for raw in result or []]

    def upsert_record(
        self,
        zone_id: str,
        name: str,
        record_type: str,
        value: str,
        *,
        proxied: bool = False,
        ttl: int = 1,
    ) -> DnsRecord:
        body = {
            "type": record_type,
            "name": name,
            "content": value,
            "ttl": ttl,
            "proxied": proxied,
        }
        existing = self.list_records(zone_id, name, record_type)
        if existing:
            record = existing[0]
            if record.content == value and record.proxied == proxied:
                logger.debug(f"DNS record {name} ({record_type}) already up to date")
                return record
            result = self._request(
                "PUT", f"/zones/{zone_id}/dns_records/{record.id}", json=body
            )
            logger.info(f"Updated DNS record {name} -> {value}")
        else:
            result = self._request("POST", f"/zones/{zone_id}/dns_records", json=body)
            logger.info(f"Created DNS record {name} -> {value}")
        return _parse_record(zone_id, result)

    def delete_record(self, zone_id: str, record_id: str) -> bool:
        """Delete a record.

        Returns:
            True if deleted, False if it did not exist
        """
        try:
            self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")
        except CloudflareError as e:
            if e.status_code == 404:
                return False
            raise
        logger.info(f"Deleted DNS record {record_id}")
        return True

    def ensure_caa_records(
        self, zone_id: str, domain: str, issuers: Sequence[str]
    ) -> list[DnsRecord]:
        """Allow the given CAs when the zone restricts issuance.

        A domain without CAA records permits every CA, so nothing is added.

        Returns:
            The records that were created
        """
        existing = self.list_records(zone_id, domain, "CAA")
        if not existing:
            return []
        present = {record.content for record in existing}
        created = []
        for issuer in issuers:
            for tag in CAA_TAGS:
                if f'0 {tag} "{issuer}"' in present:
                    continue
                result = self._request(
                    "POST",
                    f"/zones/{zone_id}/dns_records",
                    json={
                        "type": "CAA",
                        "name": domain,
                        "data": {"flags": 0, "tag": tag, "value": issuer},
                    },
                )
                created.append(_parse_record(zone_id, result))
        if created:
            logger.info(f"Added {len(created)} CAA records for {domain}")
        return created
