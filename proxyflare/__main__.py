"""
Main entry point for ProxyFlare.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from proxyflare.audit.logger import AUDIT_LOG_NAME, AuditLogger
from proxyflare.backup.store import BackupStore
from proxyflare.config.config import Config
from proxyflare.config.profiles import DEFAULT_CONFIG_DIR, ProfileStore
from proxyflare.controller.controller import Controller
from proxyflare.models.models import (
    DeleteScope,
    EntryRequest,
    RestoreScope,
    SagaResult,
    SyncStatus,
)
from proxyflare.provider.cloudflare import CloudflareProvider
from proxyflare.proxy.caddyfile import CaddyfileManager
from proxyflare.proxy.process import CaddyController
from proxyflare.reconcile.engine import find_entry
from proxyflare.saga.errors import ProxyFlareError
from proxyflare.saga.executor import SagaExecutor
from proxyflare.saga.operations import SagaBuilder

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CRITICAL = 2


class App:
    """Wired-up components for one CLI invocation."""

    def __init__(self, config: Config):
        self.config = config
        self.caddyfile = CaddyfileManager(config.caddyfile_path)
        self.backups = BackupStore(config.caddyfile_path)
        self.audit = AuditLogger(config.audit_dir)
        self.provider = CloudflareProvider(config.cloudflare_api_token, config.zone_id)
        self.process = CaddyController(
            config.caddyfile_path,
            container_path=config.caddyfile_container_path,
            container_name=config.container_name,
            docker_method=config.docker_method,
            compose_file_path=config.compose_file_path,
            caddy_binary_path=config.caddy_binary_path,
            validation_command=config.validation_command,
        )
        self.builder = SagaBuilder(
            self.provider, self.caddyfile, self.process, self.backups, config
        )
        self.controller = Controller(
            self.provider, self.caddyfile, SagaExecutor(self.audit), config.zone_id
        )


def _add_entry_arguments(parser: argparse.ArgumentParser) -> None:
    # Unset options stay None: create fills them from the configured defaults,
    # update keeps the entry's current values.
    parser.add_argument("subdomains", nargs="+", help="Subdomains under the base domain")
    parser.add_argument("--type", dest="dns_type", choices=["A", "CNAME"])
    parser.add_argument("--target", dest="dns_target", help="DNS record content")
    parser.add_argument("--proxied", action=argparse.BooleanOptionalAction)
    parser.add_argument("--proxy-target")
    parser.add_argument("--port", type=int)
    parser.add_argument("--ssl", action=argparse.BooleanOptionalAction)
    parser.add_argument("--lan-only", action=argparse.BooleanOptionalAction)
    parser.add_argument("--oauth", action=argparse.BooleanOptionalAction)
    parser.add_argument("--websocket", action=argparse.BooleanOptionalAction)
    parser.add_argument("--snippet", dest="snippets", action="append")
    parser.add_argument("--custom-config", help="Extra site-level directives")
    parser.add_argument("--dns-only", action="store_true")


def _entry_request(args: argparse.Namespace) -> EntryRequest:
    return EntryRequest(
        subdomains="\n".join(args.subdomains),
        dns_type=args.dns_type,
        dns_target=args.dns_target,
        proxied=args.proxied,
        proxy_target=args.proxy_target,
        port=args.port,
        ssl=args.ssl,
        lan_only=args.lan_only,
        oauth=args.oauth,
        websocket=args.websocket,
        snippets=args.snippets,
        custom_config=args.custom_config,
        dns_only=args.dns_only,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxyflare",
        description="Keep Cloudflare DNS records and Caddyfile site blocks in sync",
    )
    parser.add_argument("--config", help="Path to the YAML configuration file")
    parser.add_argument("--profile", help="Use a saved profile instead of --config")
    parser.add_argument(
        "--config-dir",
        default=DEFAULT_CONFIG_DIR,
        help="Directory holding saved profiles",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show every domain and its sync status")

    create = sub.add_parser("create", help="Create DNS records and a proxy block")
    _add_entry_arguments(create)

    update = sub.add_parser("update", help="Replace an existing entry")
    update.add_argument("domain", help="Domain of the entry being edited")
    _add_entry_arguments(update)

    delete = sub.add_parser("delete", help="Delete an entry")
    delete.add_argument("domain")
    delete.add_argument(
        "--scope", choices=[s.value for s in DeleteScope], default=DeleteScope.ALL.value
    )

    sync = sub.add_parser("sync", help="Create the missing side of an orphaned entry")
    sync.add_argument("domain")

    sub.add_parser("sync-all", help="Sync every orphaned entry")

    orphans = sub.add_parser("delete-orphans", help="Delete every orphan of one kind")
    orphans.add_argument(
        "status", choices=[SyncStatus.ORPHANED_DNS.value, SyncStatus.ORPHANED_PROXY.value]
    )

    snippets = sub.add_parser("snippets", help="Manage Caddyfile snippets")
    snippets_sub = snippets.add_subparsers(dest="action", required=True)
    snippets_sub.add_parser("list")
    snippet_delete = snippets_sub.add_parser("delete")
    snippet_delete.add_argument("name")
    for action in ("add", "update"):
        p = snippets_sub.add_parser(action)
        p.add_argument("name")
        p.add_argument("file", help="File holding the snippet body")

    backups = sub.add_parser("backups", help="Manage Caddyfile backups")
    backups_sub = backups.add_subparsers(dest="action", required=True)
    backups_sub.add_parser("list")
    backups_sub.add_parser("cleanup")
    restore = backups_sub.add_parser("restore")
    restore.add_argument("path")
    restore.add_argument(
        "--scope", choices=[s.value for s in RestoreScope], default=RestoreScope.CADDY.value
    )

    audit = sub.add_parser("audit", help="Show the audit log")
    audit.add_argument("--limit", type=int, default=20)

    profiles = sub.add_parser("profiles", help="Manage saved configuration profiles")
    profiles_sub = profiles.add_subparsers(dest="action", required=True)
    profiles_sub.add_parser("list")
    for action in ("show", "delete", "use"):
        profiles_sub.add_parser(action).add_argument("name")
    save = profiles_sub.add_parser("save", help="Save a configuration file as a profile")
    save.add_argument("name")
    save.add_argument("--from", dest="source", help="Config file to save (default: --config)")
    save.add_argument("--overwrite", action="store_true")
    export = profiles_sub.add_parser("export", help="Bundle a profile and its audit log")
    export.add_argument("name")
    export.add_argument("output", nargs="?", help="Archive path (default: <config-dir>/exports)")
    import_ = profiles_sub.add_parser("import", help="Import a profile bundle")
    import_.add_argument("archive")
    import_.add_argument("--overwrite", action="store_true")

    return parser


def _report(result: Optional[SagaResult]) -> int:
    if result is None:
        print("Another operation is in progress", file=sys.stderr)
        return EXIT_FAILED
    if result.success:
        print(result.summary())
        if result.backup_path:
            print(f"Backup: {result.backup_path}")
        return EXIT_OK
    print(result.summary(), file=sys.stderr)
    if result.backup_path and not result.inconsistent:
        print(f"Backup: {result.backup_path}", file=sys.stderr)
    return EXIT_CRITICAL if result.critical else EXIT_FAILED


def _lookup(app: App, domain: str):
    entry = find_entry(app.controller.snapshot, domain)
    if entry is None:
        raise ProxyFlareError(f"{domain} is not known to DNS or the Caddyfile")
    return entry


async def run(args: argparse.Namespace, app: App) -> int:
    """Dispatch one CLI command."""
    controller = app.controller
    builder = app.builder

    if args.command == "backups" and args.action == "list":
        for backup in app.backups.list_backups():
            print(
                f"{backup.timestamp:%Y-%m-%d %H:%M:%S}  {backup.size_bytes:>8}  {backup.path}"
            )
        print(f"Total: {app.backups.total_size()} bytes")
        return EXIT_OK

    if args.command == "backups" and args.action == "cleanup":
        report = app.backups.run_retention(
            retention_days=app.config.retention_days,
            max_backups=app.config.backup_max_backups,
            max_size_mb=app.config.backup_max_size_mb,
        )
        print(f"Cleaned up {report.deleted_count} backup(s)")
        return EXIT_OK

    if args.command == "audit":
        entries = app.audit.load_logs()
        for entry in entries[-args.limit :] if args.limit > 0 else entries:
            line = (
                f"{entry.timestamp:%Y-%m-%d %H:%M:%S}  {entry.operation:<12} "
                f"{entry.entity_type:<5} {entry.result:<7} {entry.domain}"
            )
            if entry.error:
                line += f"  ({entry.error})"
            print(line)
        return EXIT_OK

    await controller.refresh()

    if args.command == "status":
        for entry in sorted(controller.snapshot, key=lambda e: e.domain):
            dns = f"{entry.dns.type} -> {entry.dns.content}" if entry.dns else "-"
            proxy = (
                f"{entry.proxy.target}:{entry.proxy.port}" if entry.proxy else "-"
            )
            print(f"{entry.status.label:<17} {entry.domain:<40} {dns:<40} {proxy}")
        return EXIT_OK

    if args.command == "snippets" and args.action == "list":
        for snippet in controller.parsed.snippets:
            print(f"{snippet.name:<24} {snippet.category.label:<18} {snippet.description}")
        return EXIT_OK

    if args.command == "create":
        saga = builder.create_entry(_entry_request(args))
    elif args.command == "update":
        saga = builder.update_entry(_entry_request(args), _lookup(app, args.domain))
    elif args.command == "delete":
        saga = builder.delete_entry(_lookup(app, args.domain), DeleteScope(args.scope))
    elif args.command == "sync":
        saga = builder.sync_entry(_lookup(app, args.domain))
    elif args.command == "sync-all":
        saga = builder.batch_sync(sorted(controller.snapshot, key=lambda e: e.domain))
    elif args.command == "backups":
        saga = builder.restore_backup(
            Path(args.path), RestoreScope(args.scope), controller.snapshot
        )
    elif args.command == "delete-orphans":
        saga = builder.bulk_delete_orphans(controller.snapshot, SyncStatus(args.status))
    elif args.action == "delete":
        saga = builder.delete_snippet(_find_snippet(controller, args.name))
    elif args.action == "update":
        body = Path(args.file).read_text(encoding="utf-8").rstrip("\n")
        saga = builder.update_snippet(_find_snippet(controller, args.name), body)
    else:
        body = Path(args.file).read_text(encoding="utf-8").rstrip("\n")
        saga = builder.add_snippets([(args.name, body)])

    code = _report(await controller.execute(saga))
    app.audit.rotate_logs(app.config.audit_max_entries)
    return code


def _find_snippet(controller: Controller, name: str):
    for snippet in controller.parsed.snippets:
        if snippet.name == name:
            return snippet
    raise ProxyFlareError(f"snippet '{name}' not found in the Caddyfile")


def run_profiles(args: argparse.Namespace, store: ProfileStore) -> int:
    """Dispatch a profiles sub-command; none of them touch DNS or the Caddyfile."""
    if args.action == "list":
        last = store.get_last_used()
        for name in store.list_profiles():
            print(f"{'*' if name == last else ' '} {name}")
        return EXIT_OK

    if args.action == "show":
        print(store.profile_path(args.name).read_text(encoding="utf-8"), end="")
        return EXIT_OK

    if args.action == "save":
        source = args.source or args.config
        if not source:
            raise ProxyFlareError("profiles save needs --from or --config")
        path = store.save_from_file(args.name, source, overwrite=args.overwrite)
        print(f"Saved profile {args.name} to {path}")
    elif args.action == "delete":
        store.delete_profile(args.name)
        print(f"Deleted profile {args.name}")
    elif args.action == "use":
        store.set_last_used(args.name)
        print(f"Using profile {args.name}")
    elif args.action == "export":
        audit_log = Path(store.load_profile(args.name).audit_dir).expanduser() / AUDIT_LOG_NAME
        output = args.output or store.config_dir / "exports" / f"{args.name}.tar.gz"
        path = store.export_profile(args.name, output, audit_log=audit_log)
        print(f"Exported profile {args.name} to {path}")
    else:
        name = store.import_profile(args.archive, overwrite=args.overwrite)
        print(f"Imported profile {name}")
    return EXIT_OK


def load_config(args: argparse.Namespace, store: ProfileStore) -> Config:
    """
    Pick the configuration for this invocation.

    An explicit --profile wins and becomes the last used profile, then
    --config, then the last used profile, then the default config file paths.
    """
    if args.profile:
        store.set_last_used(args.profile)
        return store.load_profile(args.profile)
    if args.config:
        return Config.from_yaml(args.config)
    last = store.get_last_used()
    if last and last in store.list_profiles():
        return store.load_profile(last)
    return Config.from_yaml(None)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Setup logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    logger = logging.getLogger("proxyflare")
    store = ProfileStore(args.config_dir)

    try:
        if args.command == "profiles":
            return run_profiles(args, store)
        config = load_config(args, store)
    except (ProxyFlareError, ValueError, OSError) as e:
        logger.error(str(e))
        return EXIT_FAILED

    # Set log level from configuration
    log_level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.getLogger().setLevel(log_level)
    # Set httpx logger level to WARNING unless root is DEBUG
    httpx_log_level = logging.DEBUG if log_level == logging.DEBUG else logging.WARNING
    logging.getLogger("httpx").setLevel(httpx_log_level)

    problems = config.validate_structure()
    if problems:
        for problem in problems:
            logger.error(f"Configuration problem: {problem}")
        return EXIT_FAILED

    try:
        return asyncio.run(run(args, App(config)))
    except (ProxyFlareError, ValueError, OSError) as e:
        logger.error(str(e))
        return EXIT_FAILED


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nShutting down ProxyFlare")
        sys.exit(0)
