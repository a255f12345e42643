"""
Cloudflare provider module for ProxyFlare.

This module is responsible for interfacing with the Cloudflare API to list,
create, update and delete DNS records in a single zone.
"""

import itertools
import logging
from typing import List, Optional, Tuple

import cloudflare

from proxyflare.models.models import DNSRecord
from proxyflare.saga.errors import TransientIOError

PER_PAGE = 100
MAX_PAGES = 100  # 10,000 records
CLIENT_TIMEOUT = 30.0


def _api_error_details(e: Exception) -> Tuple[Optional[int], str]:
    """Pull the first error code and message out of a Cloudflare API error."""
    code = None
    message = getattr(e, "message", None) or str(e)

    body = getattr(e, "body", None)
    if isinstance(body, dict):
        errors = body.get("errors") or []
        if errors and isinstance(errors[0], dict):
            code = errors[0].get("code")
            message = errors[0].get("message", message)
    if code is None:
        code = getattr(e, "code", None) or getattr(e, "status_code", None)
    return code, message


class CloudflareProvider:
    """
    Provider that interfaces with the Cloudflare API.
    """

    def __init__(self, api_token: str, zone_id: str = "", client=None):
        """
        Initialize a CloudflareProvider.

        Args:
            api_token: Cloudflare API token
            zone_id: Zone used when a call does not name one
            client: Pre-built Cloudflare client (mainly for tests)
        """
        self.zone_id = zone_id
        self.logger = logging.getLogger("proxyflare.provider.cloudflare")
        self.cf = client or cloudflare.Cloudflare(
            api_token=api_token, timeout=CLIENT_TIMEOUT
        )

    def _raise(self, action: str, e: Exception) -> None:
        if isinstance(e, cloudflare.APIError):
            code, message = _api_error_details(e)
            self.logger.error(
                f"Cloudflare API Error {action}: {e} (Code: {code}, Message: {message})"
            )
            raise TransientIOError(
                f"Cloudflare API error {action}: {message}",
                code=code,
                provider_message=message,
            ) from e
        self.logger.error(f"General Cloudflare Error {action}: {e}")
        raise TransientIOError(f"Cloudflare error {action}: {e}") from e

    @staticmethod
    def _to_record(record, zone_id: str) -> DNSRecord:
        ttl = getattr(record, "ttl", None)
        return DNSRecord(
            id=getattr(record, "id", "") or "",
            type=str(getattr(record, "type", "") or ""),
            name=getattr(record, "name", "") or "",
            content=getattr(record, "content", "") or "",
            proxied=bool(getattr(record, "proxied", False)),
            ttl=int(ttl) if ttl is not None else 1,
            zone_id=getattr(record, "zone_id", None) or zone_id,
            zone_name=getattr(record, "zone_name", None) or "",
        )

    def list_records(
        self, zone_id: Optional[str] = None, record_type: str = ""
    ) -> List[DNSRecord]:
        """
        List DNS records in a zone, following pagination.

        Args:
            zone_id: Zone to list (defaults to the configured zone)
            record_type: Only return records of this type ("" for all)

        Returns:
            List[DNSRecord]: Records in provider order

        Raises:
            TransientIOError: If the API call fails
        """
        zone_id = zone_id or self.zone_id
        params = {"zone_id": zone_id, "per_page": PER_PAGE}
        if record_type:
            params["type"] = record_type

        try:
            iterator = self.cf.dns.records.list(**params)
            raw = list(itertools.islice(iterator, PER_PAGE * MAX_PAGES))
        except cloudflare.CloudflareError as e:
            self._raise(f"listing {record_type or 'all'} records in zone {zone_id}", e)

        records = []
        for record in raw:
            if not getattr(record, "name", None) or not getattr(record, "type", None):
                self.logger.warning(f"Skipping record object without name or type: {record}")
                continue
            records.append(self._to_record(record, zone_id))

        self.logger.debug(
            f"Fetched {len(records)} {record_type or 'DNS'} records from zone {zone_id}"
        )
        return records

    def create_record(self, record: DNSRecord, zone_id: Optional[str] = None) -> DNSRecord:
        """
        Create a DNS record.

        Args:
            record: Record to create; its id is ignored
            zone_id: Target zone (defaults to the configured zone)

        Returns:
            DNSRecord: The created record with its provider-assigned id
        """
        zone_id = zone_id or self.zone_id
        self.logger.info(
            f"Creating DNS record: {record.type} {record.name} -> {record.content} "
            f"(TTL: {record.ttl}, Proxied: {record.proxied})"
        )
        try:
            created = self.cf.dns.records.create(
                zone_id=zone_id,
                name=record.name,
                type=record.type,
                content=record.content,
                ttl=record.ttl,
                proxied=record.proxied,
            )
        except cloudflare.CloudflareError as e:
            self._raise(f"creating DNS record for {record.name}", e)
        return self._to_record(created, zone_id)

    def update_record(
        self, record_id: str, record: DNSRecord, zone_id: Optional[str] = None
    ) -> DNSRecord:
        """
        Overwrite an existing DNS record.

        Args:
            record_id: Provider id of the record to update
            record: New record values
            zone_id: Target zone (defaults to the configured zone)

        Returns:
            DNSRecord: The updated record
        """
        zone_id = zone_id or self.zone_id
        self.logger.info(
            f"Updating DNS record {record_id}: {record.type} {record.name} -> "
            f"{record.content} (Proxied: {record.proxied})"
        )
        try:
            updated = self.cf.dns.records.update(
                dns_record_id=record_id,
                zone_id=zone_id,
                name=record.name,
                type=record.type,
                content=record.content,
                ttl=record.ttl,
                proxied=record.proxied,
            )
        except cloudflare.CloudflareError as e:
            self._raise(f"updating DNS record {record_id} for {record.name}", e)
        return self._to_record(updated, zone_id)

    def delete_record(self, record_id: str, zone_id: Optional[str] = None) -> None:
        """
        Delete a DNS record by id.

        Args:
            record_id: Provider id of the record
            zone_id: Target zone (defaults to the configured zone)
        """
        zone_id = zone_id or self.zone_id
        self.logger.info(f"Deleting DNS record {record_id}")
        try:
            self.cf.dns.records.delete(dns_record_id=record_id, zone_id=zone_id)
        except cloudflare.CloudflareError as e:
            self._raise(f"deleting DNS record {record_id}", e)
