"""
Reconciliation engine for ProxyFlare.

This module compares DNS records with Caddyfile site blocks and classifies every
domain known to either side.
"""

from typing import Dict, Iterable, List, Optional

from proxyflare.models.models import (
    DNSRecord,
    ProxyEntry,
    ReconciledEntry,
    SyncStatus,
)


def reconcile(
    dns_records: Iterable[DNSRecord], proxy_entries: Iterable[ProxyEntry]
) -> List[ReconciledEntry]:
    """
    Compare DNS records with proxy entries and return one entry per domain.

    Domains are matched case-insensitively. Multi-domain proxy entries expand to
    one result per domain, all sharing the same ProxyEntry object.

    Args:
        dns_records: DNS records from the provider, in response order
        proxy_entries: Entries parsed from the Caddyfile

    Returns:
        List[ReconciledEntry]: Classified entries, in no particular order
    """
    # Same name under several record types: the last one in provider order wins.
    dns_by_domain: Dict[str, DNSRecord] = {}
    for record in dns_records:
        dns_by_domain[record.name.lower()] = record

    proxy_by_domain: Dict[str, ProxyEntry] = {}
    for entry in proxy_entries:
        for domain in entry.domains:
            proxy_by_domain[domain.lower()] = entry

    results = []
    for domain in dns_by_domain.keys() | proxy_by_domain.keys():
        record = dns_by_domain.get(domain)
        entry = proxy_by_domain.get(domain)

        if record is not None and entry is not None:
            status = SyncStatus.SYNCED
        elif record is not None:
            status = SyncStatus.ORPHANED_DNS
        else:
            status = SyncStatus.ORPHANED_PROXY

        results.append(
            ReconciledEntry(domain=domain, status=status, dns=record, proxy=entry)
        )

    return results


def summarize(entries: Iterable[ReconciledEntry]) -> Dict[SyncStatus, int]:
    """Count entries per sync status."""
    counts = {status: 0 for status in SyncStatus}
    for entry in entries:
        counts[entry.status] += 1
    return counts


def snippet_usage(proxy_entries: Iterable[ProxyEntry]) -> Dict[str, int]:
    """
    Count how many distinct proxy entries import each snippet.

    Args:
        proxy_entries: Proxy entries (duplicates by identity are counted once)

    Returns:
        Dict[str, int]: Snippet name to usage count
    """
    usage: Dict[str, int] = {}
    seen = set()
    for entry in proxy_entries:
        if id(entry) in seen:
            continue
        seen.add(id(entry))
        for name in set(entry.imports):
            usage[name] = usage.get(name, 0) + 1
    return usage


def find_entry(
    entries: Iterable[ReconciledEntry], domain: str
) -> Optional[ReconciledEntry]:
    """Find the reconciled entry for a domain, if any."""
    domain = domain.lower()
    for entry in entries:
        if entry.domain == domain:
            return entry
    return None
