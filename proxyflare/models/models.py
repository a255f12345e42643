"""
Data models for ProxyFlare.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from proxyflare.saga.errors import CriticalRollbackFailure, StateInconsistencyError


@dataclass
class DNSRecord:
    """
    Represents a DNS record as returned by the provider.
    """

    id: str
    type: str
    name: str
    content: str
    proxied: bool = False
    ttl: int = 1  # 1 = auto
    zone_id: str = ""
    zone_name: str = ""


@dataclass(eq=False)
class ProxyEntry:
    """
    A site block parsed from the Caddyfile.

    Entries are only valid for the parse generation that produced them; the
    line range points into that parse of the file.
    """

    domains: List[str]
    target: str = ""
    port: int = 0
    tls_enabled: bool = False
    ip_restricted: bool = False
    oauth_headers: bool = False
    websocket: bool = False
    imports: List[str] = field(default_factory=list)
    raw_block: str = ""
    line_start: int = 0
    line_end: int = 0
    has_marker: bool = False
    generation: int = 0

    @property
    def domain(self) -> str:
        """Primary domain (first in the block header)."""
        return self.domains[0] if self.domains else ""


class SnippetCategory(Enum):
    """Auto-detected purpose of a Caddy snippet."""

    UNKNOWN = "unknown"
    IP_RESTRICTION = "ip_restriction"
    SECURITY_HEADERS = "security_headers"
    PERFORMANCE = "performance"
    HTTPS_BACKEND = "https_backend"
    OAUTH_HEADERS = "oauth_headers"
    WEBSOCKET_HEADERS = "websocket_headers"
    FRAME_EMBEDDING = "frame_embedding"
    CORS = "cors"
    COMPRESSION = "compression"
    RATE_LIMIT = "rate_limit"
    CUSTOM = "custom"

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title()


@dataclass(eq=False)
class Snippet:
    """
    A reusable `(name) { ... }` block defined in the Caddyfile.
    """

    name: str
    content: str = ""
    category: SnippetCategory = SnippetCategory.UNKNOWN
    line_start: int = 0
    line_end: int = 0
    auto_detected: bool = False
    confidence: float = 0.0
    description: str = ""
    generation: int = 0

    def full_block(self) -> str:
        return f"({self.name}) {{\n{self.content}\n}}"


@dataclass
class ParsedConfig:
    """Result of parsing a Caddyfile."""

    entries: List[ProxyEntry] = field(default_factory=list)
    snippets: List[Snippet] = field(default_factory=list)
    generation: int = 0


class SyncStatus(Enum):
    """Sync state of a domain across DNS and the proxy."""

    SYNCED = "synced"
    ORPHANED_DNS = "orphaned_dns"
    ORPHANED_PROXY = "orphaned_proxy"

    @property
    def label(self) -> str:
        return {
            SyncStatus.SYNCED: "Synced",
            SyncStatus.ORPHANED_DNS: "Orphaned (DNS)",
            SyncStatus.ORPHANED_PROXY: "Orphaned (Proxy)",
        }[self]


@dataclass
class ReconciledEntry:
    """
    One domain of a reconciliation snapshot.
    """

    domain: str
    status: SyncStatus
    dns: Optional[DNSRecord] = None
    proxy: Optional[ProxyEntry] = None


@dataclass(frozen=True)
class Backup:
    """A snapshot of the Caddyfile on disk."""

    path: Path
    timestamp: datetime
    size_bytes: int


class DeleteScope(Enum):
    """Which side(s) a delete operation removes."""

    ALL = "all"
    DNS_ONLY = "dns"
    PROXY_ONLY = "proxy"


class RestoreScope(Enum):
    """What a backup restore puts back."""

    ALL = "all"
    CADDY = "caddy"
    DNS = "dns"


class OperationType(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SYNC = "sync"
    BATCH_DELETE = "batch_delete"
    BATCH_SYNC = "batch_sync"
    RESTORE = "restore"


class EntityType(Enum):
    DNS = "dns"
    PROXY = "proxy"
    BOTH = "both"


@dataclass
class BlockParams:
    """
    Inputs for generating a Caddy site block.
    """

    domains: List[str]
    target: str = "localhost"
    port: int = 80
    ssl: bool = False
    lan_only: bool = False
    oauth: bool = False
    websocket: bool = False
    lan_subnet: str = ""
    allowed_external_ip: str = ""
    snippets: List[str] = field(default_factory=list)
    custom_config: str = ""


@dataclass
class EntryRequest:
    """
    A create or update intent for a single entry.

    `subdomains` is newline separated; each line becomes one FQDN under the
    configured base domain. Fields left as None are filled in by the builder:
    from configured defaults on create, from the existing entry on update.
    """

    subdomains: str
    dns_type: Optional[str] = None
    dns_target: Optional[str] = None
    proxied: Optional[bool] = None
    proxy_target: Optional[str] = None
    port: Optional[int] = None
    ssl: Optional[bool] = None
    lan_only: Optional[bool] = None
    oauth: Optional[bool] = None
    websocket: Optional[bool] = None
    snippets: Optional[List[str]] = None
    custom_config: Optional[str] = None
    dns_only: bool = False

    def filled(self, **defaults) -> "EntryRequest":
        """
        Return a copy with every unset field taken from defaults.

        Args:
            **defaults: Values keyed by field name

        Returns:
            EntryRequest: Request with no None fields left for the given keys
        """
        values = {
            name: defaults[name] if getattr(self, name) is None else getattr(self, name)
            for name in defaults
        }
        return replace(self, **values)


@dataclass
class SagaResult:
    """
    Outcome of one user-level mutating operation.
    """

    operation: OperationType
    success: bool
    failed_step: Optional[str] = None
    failed_domain: Optional[str] = None
    backup_path: Optional[Path] = None
    affected_domains: List[str] = field(default_factory=list)
    cause: Optional[Exception] = None
    completed_count: int = 0
    entity_type: EntityType = EntityType.BOTH
    rollback_errors: List[Exception] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def critical(self) -> bool:
        """True when the compensating restore failed after a failed write."""
        return isinstance(self.cause, CriticalRollbackFailure)

    @property
    def inconsistent(self) -> bool:
        """True when a step failed after the commit boundary."""
        return isinstance(self.cause, StateInconsistencyError)

    @property
    def location(self) -> str:
        """Failed step, with the domain it was working on when known."""
        if self.failed_domain:
            return f"{self.failed_step} ({self.failed_domain})"
        return str(self.failed_step)

    def summary(self) -> str:
        """
        Human readable one-line summary of the result.

        Returns:
            str: Summary message
        """
        if self.success:
            return f"{self.operation.value} succeeded ({len(self.affected_domains)} domain(s))"
        if self.critical:
            return (
                f"CRITICAL: {self.operation.value} failed at {self.location} and the "
                f"backup restore failed; manual inspection required: {self.cause}"
            )
        message = f"{self.operation.value} failed at {self.location}: {self.cause}"
        if self.completed_count:
            message += f" ({self.completed_count} item(s) completed before the failure)"
        return message
