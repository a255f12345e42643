"""
Helpers for turning subdomain input into FQDNs and checking them.
"""

from typing import Iterable, List

from proxyflare.models.models import ProxyEntry
from proxyflare.saga.errors import ConflictError


def parse_subdomains(text: str) -> List[str]:
    """Split newline separated input into trimmed, non-empty subdomains."""
    return [line.strip() for line in text.split("\n") if line.strip()]


def validate_subdomains(subdomains: List[str]) -> None:
    """
    Check that there is at least one subdomain and no case-insensitive duplicates.

    Raises:
        ValueError: Describing the first problem found
    """
    if not subdomains:
        raise ValueError("at least one subdomain is required")

    seen = set()
    for i, subdomain in enumerate(subdomains, start=1):
        normalized = subdomain.strip().lower()
        if not normalized:
            raise ValueError(f"subdomain {i} is empty")
        if normalized in seen:
            raise ValueError(f"duplicate subdomain: {subdomain}")
        seen.add(normalized)


def build_fqdns(subdomains: List[str], base_domain: str) -> List[str]:
    """
    Append the base domain to each subdomain.

    "@" stands for the base domain itself.
    """
    return [base_domain if s == "@" else f"{s}.{base_domain}" for s in subdomains]


def check_domain_conflicts(
    fqdns: List[str],
    entries: Iterable[ProxyEntry],
    allowed: Iterable[str] = (),
) -> None:
    """
    Make sure none of the FQDNs is already served by a Caddyfile entry.

    Args:
        fqdns: Domains about to be created
        entries: Parsed Caddyfile site blocks
        allowed: Domains of the entry being edited, which may clash

    Raises:
        ConflictError: If a domain is already used
    """
    allowed = {d.lower() for d in allowed}
    entries = list(entries)
    for fqdn in fqdns:
        lowered = fqdn.lower()
        if lowered in allowed:
            continue
        for entry in entries:
            if any(d.lower() == lowered for d in entry.domains):
                suffix = " (multi-domain entry)" if len(entry.domains) > 1 else ""
                raise ConflictError(
                    f"domain {fqdn} already exists in entry '{entry.domain}'{suffix}; "
                    f"delete it first or edit it"
                )
