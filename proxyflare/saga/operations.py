"""
Operation builders for ProxyFlare.

Each builder turns a user intent into a Saga: a step table with the
compensations needed to undo it. Nothing touches DNS or the Caddyfile until the
saga is run by a SagaExecutor.
"""

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from proxyflare.models.models import (
    BlockParams,
    DeleteScope,
    DNSRecord,
    EntryRequest,
    OperationType,
    ProxyEntry,
    ReconciledEntry,
    RestoreScope,
    Snippet,
    SyncStatus,
)
from proxyflare.proxy.caddyfile import parse_caddyfile
from proxyflare.reconcile.engine import snippet_usage
from proxyflare.saga.errors import (
    ConflictError,
    CriticalRollbackFailure,
    ReferentialIntegrityError,
    StaleHandleError,
    TransientIOError,
)
from proxyflare.saga.executor import Saga, SagaContext, Step
from proxyflare.utils.domains import (
    build_fqdns,
    check_domain_conflicts,
    parse_subdomains,
    validate_subdomains,
)


class SagaBuilder:
    """
    Builds sagas for every mutating operation.
    """

    def __init__(self, provider, caddyfile, process, backups, config):
        """
        Initialize a SagaBuilder.

        Args:
            provider: DNS provider (list/create/update/delete records)
            caddyfile: CaddyfileManager for the managed Caddyfile
            process: CaddyController used to validate and reload
            backups: BackupStore for the same Caddyfile
            config: Config supplying the base domain, zone and defaults
        """
        self.provider = provider
        self.caddyfile = caddyfile
        self.process = process
        self.backups = backups
        self.config = config
        self.logger = logging.getLogger("proxyflare.saga.operations")

    # Shared steps

    def _backup_step(self) -> Step:
        def action(ctx: SagaContext):
            ctx.backup_path = self.backups.create_backup()

        def restore(ctx: SagaContext):
            self.backups.restore_from_backup(ctx.backup_path)
            self.caddyfile.invalidate()

        return Step(
            "backup",
            action,
            compensation=restore,
            side="proxy",
            critical_compensation=True,
        )

    def _validate_step(self) -> Step:
        def action(ctx: SagaContext):
            self.process.format()
            self.process.validate()

        return Step("validate", action, side="proxy")

    def _reload_step(self) -> Step:
        return Step("reload", lambda ctx: self.process.reload(), side="proxy", commit=True)

    def _proxy_tail(self) -> List[Step]:
        return [self._validate_step(), self._reload_step()]

    def _dns_create_step(self, record: DNSRecord, counted: bool = False) -> Step:
        key = f"created:{record.name.lower()}"

        def action(ctx: SagaContext):
            ctx.values[key] = self.provider.create_record(record, self.config.zone_id)

        def undo(ctx: SagaContext):
            created = ctx.values.get(key)
            if created is not None:
                self.provider.delete_record(created.id, self.config.zone_id)

        return Step(
            "dns_create",
            action,
            compensation=undo,
            side="dns",
            counted=counted,
            domain=record.name,
        )

    def _dns_delete_step(self, record: DNSRecord, counted: bool = False) -> Step:
        return Step(
            "dns_delete",
            lambda ctx: self.provider.delete_record(record.id, self.config.zone_id),
            side="dns",
            counted=counted,
            domain=record.name,
        )

    def _proxy_remove_step(self, entry: ProxyEntry, counted: bool = False) -> Step:
        def action(ctx: SagaContext):
            if not self.caddyfile.remove_entry(entry.domain):
                raise StaleHandleError(
                    f"no Caddyfile entry for {entry.domain}; refresh and retry"
                )

        return Step(
            "proxy_remove", action, side="proxy", counted=counted, domain=entry.domain
        )

    def _proxy_append_step(self, params: BlockParams, counted: bool = False) -> Step:
        def action(ctx: SagaContext):
            for domain in params.domains:
                if self.caddyfile.has_domain(domain):
                    raise ConflictError(f"domain {domain} is already in the Caddyfile")
            self.caddyfile.append_entry(self.caddyfile.generate_block(params))

        return Step(
            "proxy_append",
            action,
            side="proxy",
            counted=counted,
            domain=params.domains[0] if params.domains else None,
        )

    def _default_block(self, domain: str) -> BlockParams:
        return BlockParams(
            domains=[domain],
            target="localhost",
            port=self.config.default_port,
            ssl=self.config.default_ssl,
            lan_subnet=self.config.default_lan_subnet,
            allowed_external_ip=self.config.default_allowed_external_ip,
        )

    def _default_record(self, domain: str) -> DNSRecord:
        return DNSRecord(
            id="",
            type="CNAME",
            name=domain,
            content=self.config.default_cname_target,
            proxied=self.config.default_proxied,
            ttl=1,
        )

    def _request_block(self, request: EntryRequest, domains: List[str]) -> BlockParams:
        return BlockParams(
            domains=domains,
            target=request.proxy_target,
            port=request.port,
            ssl=request.ssl,
            lan_only=request.lan_only,
            oauth=request.oauth,
            websocket=request.websocket,
            lan_subnet=self.config.default_lan_subnet,
            allowed_external_ip=self.config.default_allowed_external_ip,
            snippets=list(request.snippets),
            custom_config=request.custom_config,
        )

    def _request_record(self, request: EntryRequest, fqdn: str) -> DNSRecord:
        return DNSRecord(
            id="",
            type=request.dns_type,
            name=fqdn,
            content=request.dns_target,
            proxied=request.proxied,
            ttl=1,
        )

    def _defaults(self) -> Dict[str, Any]:
        return {
            "dns_type": "CNAME",
            "proxied": self.config.default_proxied,
            "proxy_target": "localhost",
            "port": self.config.default_port,
            "ssl": self.config.default_ssl,
            "lan_only": False,
            "oauth": False,
            "websocket": False,
            "snippets": [],
            "custom_config": "",
        }

    def _fill_dns_target(self, request: EntryRequest) -> EntryRequest:
        if request.dns_target:
            return request
        if request.dns_type == "A":
            raise ValueError("A records need an explicit target IP address (--target)")
        return replace(request, dns_target=self.config.default_cname_target)

    def _for_create(self, request: EntryRequest) -> EntryRequest:
        return self._fill_dns_target(request.filled(**self._defaults()))

    def _for_update(self, request: EntryRequest, old: ReconciledEntry) -> EntryRequest:
        """Fill every field the request leaves unset from the entry being edited."""
        defaults = self._defaults()
        if old.dns is not None:
            defaults["dns_type"] = old.dns.type
            defaults["proxied"] = old.dns.proxied
            if request.dns_type in (None, old.dns.type):
                defaults["dns_target"] = old.dns.content
        if old.proxy is not None:
            defaults.update(
                proxy_target=old.proxy.target or "localhost",
                port=old.proxy.port or self.config.default_port,
                ssl=old.proxy.tls_enabled,
                lan_only=old.proxy.ip_restricted,
                oauth=old.proxy.oauth_headers,
                websocket=old.proxy.websocket,
                snippets=list(old.proxy.imports),
            )
        return self._fill_dns_target(request.filled(**defaults))

    def _fqdns(self, request: EntryRequest) -> List[str]:
        subdomains = parse_subdomains(request.subdomains)
        validate_subdomains(subdomains)
        return build_fqdns(subdomains, self.config.domain)

    def _duplicate_check_step(self, fqdns: List[str], allowed: Iterable[str] = ()) -> Step:
        def action(ctx: SagaContext):
            check_domain_conflicts(fqdns, self.caddyfile.parse().entries, allowed=allowed)

        return Step("duplicate_check", action)

    # Entry operations

    def create_entry(self, request: EntryRequest) -> Saga:
        """
        Create DNS records and a proxy block for one or more subdomains.

        Raises:
            ValueError: If the subdomain input is invalid, or an A record has
                no target
        """
        fqdns = self._fqdns(request)
        request = self._for_create(request)
        steps: List[Step] = []

        if not request.dns_only:
            steps.append(self._duplicate_check_step(fqdns))
            steps.append(self._backup_step())
        for fqdn in fqdns:
            steps.append(self._dns_create_step(self._request_record(request, fqdn)))
        if not request.dns_only:
            steps.append(self._proxy_append_step(self._request_block(request, fqdns)))
            steps.extend(self._proxy_tail())

        return Saga(
            OperationType.CREATE,
            steps,
            affected_domains=fqdns,
            details={"dns_type": request.dns_type, "dns_only": request.dns_only},
        )

    def update_entry(self, request: EntryRequest, old: ReconciledEntry) -> Saga:
        """
        Update an existing entry from an edited request.

        Only the primary domain's DNS record is updated, and only when one of
        its fields changed. The proxy block is replaced unless the request is
        DNS-only, in which case an existing block is removed. Fields the
        request leaves unset keep their current values.

        Raises:
            ValueError: If the subdomain input is invalid, or an A record has
                no target
        """
        fqdns = self._fqdns(request)
        request = self._for_update(request, old)
        primary = fqdns[0]
        touches_proxy = old.proxy is not None or not request.dns_only
        steps: List[Step] = []

        if not request.dns_only:
            allowed = old.proxy.domains if old.proxy is not None else [old.domain]
            steps.append(self._duplicate_check_step(fqdns, allowed=allowed))
        if touches_proxy:
            steps.append(self._backup_step())

        if old.dns is not None:
            old_record = old.dns
            new_record = self._request_record(request, primary)
            changed = (
                old_record.type != new_record.type
                or old_record.content != new_record.content
                or old_record.proxied != new_record.proxied
                or old_record.name.lower() != new_record.name.lower()
            )
            if changed:
                steps.append(
                    Step(
                        "dns_update",
                        lambda ctx: self.provider.update_record(
                            old_record.id, new_record, self.config.zone_id
                        ),
                        compensation=lambda ctx: self.provider.update_record(
                            old_record.id, old_record, self.config.zone_id
                        ),
                        side="dns",
                        domain=primary,
                    )
                )

        if old.proxy is not None:
            steps.append(self._proxy_remove_step(old.proxy))
        if not request.dns_only:
            steps.append(self._proxy_append_step(self._request_block(request, fqdns)))
        if touches_proxy:
            steps.extend(self._proxy_tail())

        affected = list(dict.fromkeys([old.domain] + fqdns))
        return Saga(OperationType.UPDATE, steps, affected_domains=affected)

    def delete_entry(self, entry: ReconciledEntry, scope: DeleteScope = DeleteScope.ALL) -> Saga:
        """
        Delete the DNS record and/or proxy block of an entry.

        The proxy side is removed and reloaded first; the DNS delete runs after
        the reload and is not rolled back if it fails.

        Raises:
            ValueError: If the scope leaves nothing to delete
        """
        delete_dns = entry.dns is not None and scope != DeleteScope.PROXY_ONLY
        delete_proxy = entry.proxy is not None and scope != DeleteScope.DNS_ONLY
        if not delete_dns and not delete_proxy:
            raise ValueError(f"nothing to delete for {entry.domain} with scope {scope.value}")

        steps: List[Step] = []
        if delete_proxy:
            steps.append(self._backup_step())
            steps.append(self._proxy_remove_step(entry.proxy))
            steps.extend(self._proxy_tail())
        if delete_dns:
            steps.append(self._dns_delete_step(entry.dns))

        return Saga(
            OperationType.DELETE,
            steps,
            affected_domains=[entry.domain],
            details={"scope": scope.value},
        )

    def sync_entry(self, entry: ReconciledEntry) -> Saga:
        """
        Create the missing side of an orphaned entry using configured defaults.

        Raises:
            ValueError: If the entry is already synced
        """
        if entry.status == SyncStatus.ORPHANED_DNS:
            steps = [
                self._backup_step(),
                self._proxy_append_step(self._default_block(entry.domain)),
            ] + self._proxy_tail()
            sync_type = "to_proxy"
        elif entry.status == SyncStatus.ORPHANED_PROXY:
            steps = [self._dns_create_step(self._default_record(entry.domain))]
            sync_type = "to_dns"
        else:
            raise ValueError(f"{entry.domain} is not orphaned")

        return Saga(
            OperationType.SYNC,
            steps,
            affected_domains=[entry.domain],
            details={"sync_type": sync_type},
        )

    # Batch operations

    def batch_delete(self, entries: List[ReconciledEntry]) -> Saga:
        """
        Delete every side of several entries.

        All proxy blocks are removed under one backup and a single reload;
        DNS records are deleted afterwards. Multi-domain blocks are removed once.
        """
        steps: List[Step] = []
        proxies = []
        for entry in entries:
            if entry.proxy is not None and all(p is not entry.proxy for p in proxies):
                proxies.append(entry.proxy)

        if proxies:
            steps.append(self._backup_step())
            for proxy in proxies:
                steps.append(self._proxy_remove_step(proxy, counted=True))
            steps.extend(self._proxy_tail())
        for entry in entries:
            if entry.dns is not None:
                steps.append(self._dns_delete_step(entry.dns, counted=True))

        return Saga(
            OperationType.BATCH_DELETE,
            steps,
            affected_domains=[e.domain for e in entries],
            batch=True,
        )

    def bulk_delete_orphans(
        self, snapshot: Iterable[ReconciledEntry], status: SyncStatus
    ) -> Saga:
        """
        Batch-delete every entry of one orphan status.

        Raises:
            ValueError: If status is SYNCED
        """
        if status == SyncStatus.SYNCED:
            raise ValueError("bulk delete only applies to orphaned entries")
        orphans = sorted(
            (e for e in snapshot if e.status == status), key=lambda e: e.domain
        )
        self.logger.info(f"Selected {len(orphans)} {status.label} entries for deletion")
        saga = self.batch_delete(orphans)
        saga.details["status"] = status.value
        return saga

    def batch_sync(self, entries: List[ReconciledEntry]) -> Saga:
        """
        Sync several orphaned entries under one backup and a single reload.

        Synced entries in the selection are skipped.
        """
        orphans = [e for e in entries if e.status != SyncStatus.SYNCED]
        steps: List[Step] = []
        needs_proxy = any(e.status == SyncStatus.ORPHANED_DNS for e in orphans)

        if needs_proxy:
            steps.append(self._backup_step())
        for entry in orphans:
            if entry.status == SyncStatus.ORPHANED_DNS:
                steps.append(
                    self._proxy_append_step(self._default_block(entry.domain), counted=True)
                )
            else:
                steps.append(
                    self._dns_create_step(self._default_record(entry.domain), counted=True)
                )
        if needs_proxy:
            steps.extend(self._proxy_tail())

        return Saga(
            OperationType.BATCH_SYNC,
            steps,
            affected_domains=[e.domain for e in orphans],
            batch=True,
        )

    # Snippet operations

    def delete_snippet(self, snippet: Snippet) -> Saga:
        """Remove a snippet definition that no entry imports."""

        def usage_check(ctx: SagaContext):
            usage = snippet_usage(self.caddyfile.parse().entries).get(snippet.name, 0)
            if usage > 0:
                raise ReferentialIntegrityError(snippet.name, usage)

        steps = [
            Step("usage_check", usage_check),
            self._backup_step(),
            Step(
                "snippet_remove",
                lambda ctx: self.caddyfile.remove_snippet(snippet),
                side="proxy",
            ),
        ] + self._proxy_tail()

        return Saga(
            OperationType.DELETE,
            steps,
            affected_domains=[snippet.name],
            details={"snippet": snippet.name},
        )

    def update_snippet(self, snippet: Snippet, content: str) -> Saga:
        """Replace the body of a snippet definition."""
        steps = [
            self._backup_step(),
            Step(
                "snippet_replace",
                lambda ctx: self.caddyfile.replace_snippet(snippet, content),
                side="proxy",
            ),
        ] + self._proxy_tail()

        return Saga(
            OperationType.UPDATE,
            steps,
            affected_domains=[snippet.name],
            details={"snippet": snippet.name},
        )

    def add_snippets(self, snippets: List[Tuple[str, str]]) -> Saga:
        """
        Prepend new snippet definitions to the Caddyfile.

        Names that already exist are skipped; if every name exists the saga
        fails at the duplicate check.

        Args:
            snippets: (name, body) pairs
        """
        details = {"snippets": [name for name, _ in snippets], "skipped": []}

        def duplicate_check(ctx: SagaContext):
            existing = {s.name for s in self.caddyfile.parse().snippets}
            fresh = [(name, body) for name, body in snippets if name not in existing]
            skipped = [name for name, _ in snippets if name in existing]
            details["skipped"] = skipped
            if skipped:
                self.logger.warning(f"Skipping existing snippets: {', '.join(skipped)}")
            if not fresh:
                raise ConflictError(
                    f"all selected snippets already exist: {', '.join(skipped)}"
                )
            ctx.values["new_snippets"] = fresh

        steps = [
            Step("duplicate_check", duplicate_check),
            self._backup_step(),
            Step(
                "snippet_prepend",
                lambda ctx: self.caddyfile.prepend_snippets(ctx.values["new_snippets"]),
                side="proxy",
            ),
        ] + self._proxy_tail()

        return Saga(
            OperationType.CREATE,
            steps,
            affected_domains=[name for name, _ in snippets],
            details=details,
        )

    # Backups

    def restore_backup(
        self,
        backup_path,
        scope: RestoreScope = RestoreScope.CADDY,
        snapshot: Iterable[ReconciledEntry] = (),
    ) -> Saga:
        """
        Restore from a backup of the Caddyfile.

        The Caddy scope puts the file back and reloads; the current file is
        snapshotted first so a rejected restore can be undone. The DNS scope
        creates a default record for every domain in the backup that has no
        record in the snapshot. The All scope does both, with the DNS creates
        running after the reload.

        Args:
            backup_path: One of this store's backups
            scope: What to restore
            snapshot: Current reconciliation snapshot, used to skip domains
                that already have DNS records

        Raises:
            ValueError: If the path is not a backup of the managed Caddyfile
        """
        if not self.backups.is_backup(backup_path):
            raise ValueError(f"{backup_path} is not a backup of {self.caddyfile.path}")

        steps: List[Step] = []
        if scope != RestoreScope.DNS:
            steps.append(self._restore_step(backup_path))
            steps.extend(self._proxy_tail())

        domains: List[str] = []
        if scope != RestoreScope.CADDY:
            existing = {e.domain.lower() for e in snapshot if e.dns is not None}
            parsed = parse_caddyfile(Path(backup_path).read_text(encoding="utf-8"))
            for entry in parsed.entries:
                for domain in entry.domains:
                    if domain.lower() not in existing:
                        existing.add(domain.lower())
                        domains.append(domain)
            self.logger.info(f"Backup lists {len(domains)} domain(s) without DNS records")
            for domain in domains:
                steps.append(self._dns_create_step(self._default_record(domain), counted=True))

        return Saga(
            OperationType.RESTORE,
            steps,
            affected_domains=domains,
            details={"restored_from": str(backup_path), "scope": scope.value},
        )

    def _restore_step(self, backup_path) -> Step:
        def restore(ctx: SagaContext):
            ctx.backup_path = self.backups.create_backup()
            try:
                self.backups.restore_from_backup(backup_path)
            except TransientIOError as e:
                try:
                    self.backups.restore_from_backup(ctx.backup_path)
                except TransientIOError as restore_error:
                    raise CriticalRollbackFailure("restore", e, restore_error) from e
                raise
            finally:
                self.caddyfile.invalidate()

        def undo(ctx: SagaContext):
            if ctx.backup_path is not None:
                self.backups.restore_from_backup(ctx.backup_path)
                self.caddyfile.invalidate()

        return Step(
            "restore",
            restore,
            compensation=undo,
            side="proxy",
            critical_compensation=True,
        )
