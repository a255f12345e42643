"""Tests running the operation sagas against a real Caddyfile and backup store."""

from pathlib import Path

import pytest

from proxyflare.models.models import (
    DeleteScope,
    DNSRecord,
    EntryRequest,
    EntityType,
    RestoreScope,
    SyncStatus,
)
from proxyflare.proxy.caddyfile import parse_caddyfile
from proxyflare.reconcile.engine import find_entry, reconcile
from proxyflare.saga.errors import (
    ConflictError,
    CriticalRollbackFailure,
    ReferentialIntegrityError,
    TransientIOError,
    ValidationError,
)
from proxyflare.saga.executor import SagaExecutor
from tests.conftest import BASE_CADDYFILE, FakeAudit, FakeProvider

SNIPPET_CADDYFILE = """\
(security_headers) {
\theader X-Frame-Options DENY
}

(unused) {
\tencode gzip
}

existing.example.com {
\timport security_headers
\treverse_proxy http://localhost:8000
}
"""


def _snapshot(provider, caddyfile):
    return reconcile(provider.list_records(), caddyfile.parse().entries)


def _record(name: str, rid: str) -> DNSRecord:
    return DNSRecord(id=rid, type="CNAME", name=name, content="home.example.com", proxied=True)


class TestCreateEntry:
    """Tests for the create saga."""

    def test_creates_dns_and_proxy(self, builder, provider, process, caddyfile, backups) -> None:
        saga = builder.create_entry(EntryRequest(subdomains="app\napi", port=8080))

        result = SagaExecutor().run(saga)

        assert result.success
        assert sorted(r.name for r in provider.records.values()) == [
            "api.example.com",
            "app.example.com",
        ]
        entry = caddyfile.parse().entries[-1]
        assert entry.domains == ["app.example.com", "api.example.com"]
        assert entry.port == 8080
        assert process.calls == ["format", "validate", "reload"]
        assert result.backup_path is not None and result.backup_path.exists()
        assert result.entity_type == EntityType.BOTH
        assert len(backups.list_backups()) == 1

    def test_reload_failure_restores_file_and_deletes_records(
        self, builder, provider, process, caddyfile_path: Path
    ) -> None:
        original = caddyfile_path.read_bytes()
        process.fail_reload = TransientIOError("container restart failed")

        result = SagaExecutor().run(builder.create_entry(EntryRequest(subdomains="app")))

        assert not result.success
        assert result.failed_step == "reload"
        assert not result.inconsistent
        assert caddyfile_path.read_bytes() == original
        assert provider.records == {}
        assert provider.deleted == ["rec-1"]

    def test_validation_failure_rolls_back(
        self, builder, provider, process, caddyfile_path: Path
    ) -> None:
        process.fail_validate = ValidationError("bad config")

        result = SagaExecutor().run(builder.create_entry(EntryRequest(subdomains="app")))

        assert result.failed_step == "validate"
        assert isinstance(result.cause, ValidationError)
        assert caddyfile_path.read_text() == BASE_CADDYFILE
        assert provider.records == {}
        assert "reload" not in process.calls

    def test_second_dns_create_failure_undoes_the_first(self, builder, provider) -> None:
        class FailSecond(FakeProvider):
            def create_record(self, record, zone_id=None):
                if self.created:
                    raise TransientIOError("rate limited", code=10000)
                return super().create_record(record, zone_id)

        failing = FailSecond()
        builder.provider = failing

        result = SagaExecutor().run(builder.create_entry(EntryRequest(subdomains="a\nb")))

        assert result.failed_step == "dns_create"
        assert result.failed_domain == "b.example.com"
        assert failing.records == {}
        assert failing.deleted == ["rec-1"]

    def test_restore_failure_is_critical(
        self, builder, provider, process, backups, caddyfile_path: Path, monkeypatch
    ) -> None:
        process.fail_validate = ValidationError("bad config")

        def broken_restore(path):
            raise TransientIOError("permission denied")

        monkeypatch.setattr(backups, "restore_from_backup", broken_restore)

        result = SagaExecutor().run(builder.create_entry(EntryRequest(subdomains="app")))

        assert result.critical
        assert isinstance(result.cause, CriticalRollbackFailure)
        assert isinstance(result.cause.original, ValidationError)
        # DNS compensation ran before the failed restore
        assert provider.records == {}
        # The file is left as the failed write made it.
        assert "app.example.com" in caddyfile_path.read_text()

    def test_existing_domain_conflicts(self, builder, provider, caddyfile_path: Path) -> None:
        result = SagaExecutor().run(builder.create_entry(EntryRequest(subdomains="existing")))

        assert result.failed_step == "duplicate_check"
        assert isinstance(result.cause, ConflictError)
        assert provider.created == []
        assert caddyfile_path.read_text() == BASE_CADDYFILE

    def test_dns_only_touches_only_dns(self, builder, provider, process, backups) -> None:
        saga = builder.create_entry(EntryRequest(subdomains="app", dns_only=True))

        result = SagaExecutor().run(saga)

        assert result.success
        assert result.entity_type == EntityType.DNS
        assert result.backup_path is None
        assert process.calls == []
        assert backups.list_backups() == []

    def test_invalid_subdomains_raise_before_running(self, builder) -> None:
        with pytest.raises(ValueError):
            builder.create_entry(EntryRequest(subdomains="app\nAPP"))
        with pytest.raises(ValueError):
            builder.create_entry(EntryRequest(subdomains="\n  \n"))

    def test_a_record_without_target_is_rejected(self, builder) -> None:
        with pytest.raises(ValueError, match="A records need an explicit target"):
            builder.create_entry(EntryRequest(subdomains="app", dns_type="A"))

    def test_a_record_uses_given_target(self, builder, provider) -> None:
        SagaExecutor().run(
            builder.create_entry(
                EntryRequest(subdomains="app", dns_type="A", dns_target="203.0.113.7")
            )
        )

        record = provider.created[0]
        assert (record.type, record.content, record.proxied) == ("A", "203.0.113.7", True)

    def test_at_sign_is_the_base_domain(self, builder, provider) -> None:
        SagaExecutor().run(builder.create_entry(EntryRequest(subdomains="@")))

        assert [r.name for r in provider.records.values()] == ["example.com"]


class TestUpdateEntry:
    """Tests for the update saga."""

    def test_replaces_block_and_updates_changed_record(
        self, builder, provider, caddyfile
    ) -> None:
        provider.records["r1"] = _record("existing.example.com", "r1")
        old = find_entry(_snapshot(provider, caddyfile), "existing.example.com")

        request = EntryRequest(subdomains="existing", port=9000, proxied=False)
        result = SagaExecutor().run(builder.update_entry(request, old))

        assert result.success
        assert provider.updated == ["r1"]
        assert provider.records["r1"].proxied is False
        entries = caddyfile.parse().entries
        assert len(entries) == 1
        assert entries[0].port == 9000

    def test_unchanged_record_is_not_updated(self, builder, provider, caddyfile) -> None:
        provider.records["r1"] = _record("existing.example.com", "r1")
        old = find_entry(_snapshot(provider, caddyfile), "existing.example.com")

        result = SagaExecutor().run(
            builder.update_entry(EntryRequest(subdomains="existing", port=9000), old)
        )

        assert result.success
        assert provider.updated == []

    def test_port_only_update_keeps_dns_and_upstream(
        self, builder, provider, caddyfile, caddyfile_path: Path
    ) -> None:
        provider.records["r1"] = DNSRecord(
            id="r1", type="CNAME", name="app.example.com", content="custom.host.net",
            proxied=False,
        )
        caddyfile_path.write_text(
            BASE_CADDYFILE + "\napp.example.com {\n\treverse_proxy http://10.0.0.5:8000\n}\n"
        )
        old = find_entry(_snapshot(provider, caddyfile), "app.example.com")

        result = SagaExecutor().run(
            builder.update_entry(EntryRequest(subdomains="app", port=9090), old)
        )

        assert result.success
        assert provider.updated == []
        assert provider.records["r1"].content == "custom.host.net"
        assert provider.records["r1"].proxied is False
        entry = find_entry(_snapshot(provider, caddyfile), "app.example.com").proxy
        assert (entry.target, entry.port, entry.tls_enabled) == ("10.0.0.5", 9090, False)
        assert "reverse_proxy http://10.0.0.5:9090" in caddyfile_path.read_text()

    def test_changing_type_to_a_requires_target(self, builder, provider, caddyfile) -> None:
        provider.records["r1"] = _record("existing.example.com", "r1")
        old = find_entry(_snapshot(provider, caddyfile), "existing.example.com")

        with pytest.raises(ValueError, match="A records need an explicit target"):
            builder.update_entry(EntryRequest(subdomains="existing", dns_type="A"), old)

    def test_failed_reload_reverts_record_and_file(
        self, builder, provider, process, caddyfile, caddyfile_path: Path
    ) -> None:
        provider.records["r1"] = _record("existing.example.com", "r1")
        old = find_entry(_snapshot(provider, caddyfile), "existing.example.com")
        process.fail_reload = TransientIOError("restart failed")

        result = SagaExecutor().run(
            builder.update_entry(
                EntryRequest(subdomains="existing", dns_target="other.example.com"), old
            )
        )

        assert result.failed_step == "reload"
        assert provider.records["r1"].content == "home.example.com"
        assert provider.updated == ["r1", "r1"]
        assert caddyfile_path.read_text() == BASE_CADDYFILE


class TestDeleteEntry:
    """Tests for the delete saga."""

    def test_deletes_both_sides(self, builder, provider, caddyfile) -> None:
        provider.records["r1"] = _record("existing.example.com", "r1")
        entry = find_entry(_snapshot(provider, caddyfile), "existing.example.com")

        result = SagaExecutor().run(builder.delete_entry(entry))

        assert result.success
        assert provider.records == {}
        assert caddyfile.parse().entries == []

    def test_dns_failure_after_reload_is_inconsistent(
        self, builder, provider, caddyfile, caddyfile_path: Path
    ) -> None:
        provider.records["r1"] = _record("existing.example.com", "r1")
        entry = find_entry(_snapshot(provider, caddyfile), "existing.example.com")
        provider.fail_delete = TransientIOError("api down")

        result = SagaExecutor().run(builder.delete_entry(entry))

        assert not result.success
        assert result.failed_step == "dns_delete"
        assert result.inconsistent
        # The proxy removal is live and is not rolled back
        assert "existing.example.com" not in caddyfile_path.read_text()
        assert "r1" in provider.records

    def test_scope_dns_only_leaves_proxy(self, builder, provider, caddyfile, process) -> None:
        provider.records["r1"] = _record("existing.example.com", "r1")
        entry = find_entry(_snapshot(provider, caddyfile), "existing.example.com")

        result = SagaExecutor().run(builder.delete_entry(entry, DeleteScope.DNS_ONLY))

        assert result.success
        assert result.entity_type == EntityType.DNS
        assert caddyfile.has_domain("existing.example.com")
        assert process.calls == []

    def test_nothing_to_delete_raises(self, builder, provider, caddyfile) -> None:
        entry = find_entry(_snapshot(provider, caddyfile), "existing.example.com")

        with pytest.raises(ValueError):
            builder.delete_entry(entry, DeleteScope.DNS_ONLY)

    def test_stale_entry_fails_without_changes(
        self, builder, provider, caddyfile, caddyfile_path: Path
    ) -> None:
        entry = find_entry(_snapshot(provider, caddyfile), "existing.example.com")
        caddyfile_path.write_text("")

        result = SagaExecutor().run(builder.delete_entry(entry))

        assert result.failed_step == "proxy_remove"
        assert caddyfile_path.read_text() == ""


class TestSync:
    """Tests for the sync sagas."""

    def test_orphaned_proxy_gets_default_record(self, builder, provider, caddyfile) -> None:
        entry = find_entry(_snapshot(provider, caddyfile), "existing.example.com")
        assert entry.status == SyncStatus.ORPHANED_PROXY

        result = SagaExecutor().run(builder.sync_entry(entry))

        assert result.success
        assert result.details["sync_type"] == "to_dns"
        record = provider.created[0]
        assert (record.type, record.name, record.content) == (
            "CNAME",
            "existing.example.com",
            "home.example.com",
        )

    def test_orphaned_dns_gets_default_block(self, builder, provider, caddyfile) -> None:
        provider.records["r2"] = _record("new.example.com", "r2")
        entry = find_entry(_snapshot(provider, caddyfile), "new.example.com")

        result = SagaExecutor().run(builder.sync_entry(entry))

        assert result.success
        assert caddyfile.has_domain("new.example.com")

    def test_block_added_since_refresh_is_not_duplicated(
        self, builder, provider, caddyfile, caddyfile_path: Path
    ) -> None:
        provider.records["r2"] = _record("new.example.com", "r2")
        entry = find_entry(_snapshot(provider, caddyfile), "new.example.com")
        caddyfile_path.write_text(
            BASE_CADDYFILE + "\nNEW.example.com {\n\treverse_proxy http://localhost:80\n}\n"
        )
        before = caddyfile_path.read_text()

        result = SagaExecutor().run(builder.sync_entry(entry))

        assert result.failed_step == "proxy_append"
        assert result.failed_domain == "new.example.com"
        assert isinstance(result.cause, ConflictError)
        assert caddyfile_path.read_text() == before

    def test_synced_entry_raises(self, builder, provider, caddyfile) -> None:
        provider.records["r1"] = _record("existing.example.com", "r1")
        entry = find_entry(_snapshot(provider, caddyfile), "existing.example.com")

        with pytest.raises(ValueError):
            builder.sync_entry(entry)

    def test_batch_sync_uses_one_reload(self, builder, provider, process, caddyfile) -> None:
        provider.records["r2"] = _record("a.example.com", "r2")
        provider.records["r3"] = _record("b.example.com", "r3")
        snapshot = sorted(_snapshot(provider, caddyfile), key=lambda e: e.domain)

        result = SagaExecutor().run(builder.batch_sync(snapshot))

        assert result.success
        assert result.completed_count == 3
        assert process.calls.count("reload") == 1
        assert caddyfile.has_domain("a.example.com")
        assert caddyfile.has_domain("b.example.com")
        assert [r.name for r in provider.created] == ["existing.example.com"]


class TestBatchDelete:
    """Tests for batch and bulk deletion."""

    def test_partial_failure_reports_completed_count(self, builder, provider) -> None:
        for i, name in enumerate(["a", "b", "c"]):
            provider.records[f"r{i}"] = _record(f"{name}.example.com", f"r{i}")
        provider.fail_delete = TransientIOError("api down")
        provider.fail_delete_after = 1
        audit = FakeAudit()
        snapshot = [
            e for e in _snapshot(provider, builder.caddyfile)
            if e.status == SyncStatus.ORPHANED_DNS
        ]

        saga = builder.bulk_delete_orphans(snapshot, SyncStatus.ORPHANED_DNS)
        result = SagaExecutor(audit).run(saga)

        assert not result.success
        assert result.completed_count == 1
        assert result.affected_domains == ["a.example.com", "b.example.com", "c.example.com"]
        assert audit.results[0][1] is True

    def test_failure_names_the_domain_that_broke(self, builder, provider) -> None:
        for i, name in enumerate(["a", "b", "c"]):
            provider.records[f"r{i}"] = _record(f"{name}.example.com", f"r{i}")
        provider.fail_delete = TransientIOError("boom")
        provider.fail_delete_after = 1
        snapshot = _snapshot(provider, builder.caddyfile)

        result = SagaExecutor().run(
            builder.bulk_delete_orphans(snapshot, SyncStatus.ORPHANED_DNS)
        )

        assert result.failed_step == "dns_delete"
        assert result.failed_domain == "b.example.com"
        assert result.summary() == (
            "batch_delete failed at dns_delete (b.example.com): boom "
            "(1 item(s) completed before the failure)"
        )

    def test_multi_domain_block_removed_once(
        self, builder, provider, caddyfile, caddyfile_path: Path
    ) -> None:
        caddyfile_path.write_text(
            "a.example.com, b.example.com {\n\treverse_proxy http://localhost:80\n}\n"
        )
        snapshot = _snapshot(provider, caddyfile)

        saga = builder.bulk_delete_orphans(snapshot, SyncStatus.ORPHANED_PROXY)
        result = SagaExecutor().run(saga)

        assert result.success
        assert result.completed_count == 1
        assert caddyfile.parse().entries == []

    def test_bulk_delete_rejects_synced(self, builder) -> None:
        with pytest.raises(ValueError):
            builder.bulk_delete_orphans([], SyncStatus.SYNCED)


class TestSnippetOperations:
    """Tests for snippet sagas."""

    @pytest.fixture(autouse=True)
    def _snippet_file(self, caddyfile_path: Path) -> None:
        caddyfile_path.write_text(SNIPPET_CADDYFILE)

    def _snippet(self, caddyfile, name):
        return next(s for s in caddyfile.parse().snippets if s.name == name)

    def test_used_snippet_cannot_be_deleted(
        self, builder, caddyfile, backups, caddyfile_path: Path
    ) -> None:
        snippet = self._snippet(caddyfile, "security_headers")

        result = SagaExecutor().run(builder.delete_snippet(snippet))

        assert result.failed_step == "usage_check"
        assert isinstance(result.cause, ReferentialIntegrityError)
        assert result.cause.usage == 1
        assert caddyfile_path.read_text() == SNIPPET_CADDYFILE
        assert backups.list_backups() == []

    def test_unused_snippet_is_deleted(self, builder, caddyfile) -> None:
        snippet = self._snippet(caddyfile, "unused")

        result = SagaExecutor().run(builder.delete_snippet(snippet))

        assert result.success
        assert [s.name for s in caddyfile.parse().snippets] == ["security_headers"]

    def test_update_snippet(self, builder, caddyfile) -> None:
        snippet = self._snippet(caddyfile, "unused")

        result = SagaExecutor().run(builder.update_snippet(snippet, "\tencode zstd"))

        assert result.success
        assert self._snippet(caddyfile, "unused").content == "\tencode zstd"

    def test_add_snippets_skips_existing(self, builder, caddyfile) -> None:
        saga = builder.add_snippets([("unused", "\tencode br"), ("cors", "\tcors *")])

        result = SagaExecutor().run(saga)

        assert result.success
        assert result.details["skipped"] == ["unused"]
        names = [s.name for s in caddyfile.parse().snippets]
        assert sorted(names) == ["cors", "security_headers", "unused"]

    def test_add_snippets_all_existing_conflicts(
        self, builder, caddyfile_path: Path
    ) -> None:
        result = SagaExecutor().run(builder.add_snippets([("unused", "\tencode br")]))

        assert result.failed_step == "duplicate_check"
        assert isinstance(result.cause, ConflictError)
        assert caddyfile_path.read_text() == SNIPPET_CADDYFILE


class TestRestoreBackup:
    """Tests for the restore saga."""

    def test_restores_and_keeps_safety_copy(
        self, builder, backups, caddyfile, caddyfile_path: Path
    ) -> None:
        backup = backups.create_backup()
        caddyfile_path.write_text("changed.example.com {\n}\n")
        generation = caddyfile.generation

        result = SagaExecutor().run(builder.restore_backup(backup))

        assert result.success
        assert caddyfile_path.read_text() == BASE_CADDYFILE
        assert result.backup_path.read_text() == "changed.example.com {\n}\n"
        assert caddyfile.generation > generation

    def test_rejected_restore_is_undone(
        self, builder, backups, process, caddyfile_path: Path
    ) -> None:
        backup = backups.create_backup()
        caddyfile_path.write_text("changed.example.com {\n}\n")
        process.fail_validate = ValidationError("bad config")

        result = SagaExecutor().run(builder.restore_backup(backup))

        assert result.failed_step == "validate"
        assert caddyfile_path.read_text() == "changed.example.com {\n}\n"

    def test_backup_removed_before_run_leaves_file_alone(
        self, builder, backups, caddyfile_path: Path
    ) -> None:
        backup = backups.create_backup()
        saga = builder.restore_backup(backup)
        backup.unlink()

        result = SagaExecutor().run(saga)

        assert result.failed_step == "restore"
        assert not result.critical
        assert caddyfile_path.read_text() == BASE_CADDYFILE

    def test_rejects_paths_that_are_not_backups(
        self, builder, tmp_path: Path, caddyfile_path: Path
    ) -> None:
        stray = tmp_path / "notes.txt"
        stray.write_text("evil.example.com {\n}\n")

        with pytest.raises(ValueError, match="is not a backup"):
            builder.restore_backup(stray)
        with pytest.raises(ValueError, match="is not a backup"):
            builder.restore_backup(caddyfile_path.with_name("Caddyfile.backup.gone"))
        assert caddyfile_path.read_text() == BASE_CADDYFILE

    def test_restored_file_parses(self, builder, backups, caddyfile_path: Path) -> None:
        backup = backups.create_backup()

        SagaExecutor().run(builder.restore_backup(backup))

        assert parse_caddyfile(caddyfile_path.read_text()).entries[0].domain == (
            "existing.example.com"
        )


class TestRestoreScopes:
    """Tests for restoring DNS records from a backup."""

    @pytest.fixture
    def backup(self, backups, caddyfile_path: Path) -> Path:
        caddyfile_path.write_text(
            BASE_CADDYFILE
            + "\na.example.com, b.example.com {\n\treverse_proxy http://localhost:9000\n}\n"
        )
        backup = backups.create_backup()
        caddyfile_path.write_text(BASE_CADDYFILE)
        return backup

    def test_dns_scope_creates_missing_records_only(
        self, builder, provider, process, caddyfile, caddyfile_path: Path, backup: Path
    ) -> None:
        provider.records["r1"] = _record("existing.example.com", "r1")

        saga = builder.restore_backup(
            backup, RestoreScope.DNS, _snapshot(provider, caddyfile)
        )
        result = SagaExecutor().run(saga)

        assert result.success
        assert result.entity_type == EntityType.DNS
        assert [r.name for r in provider.created] == ["a.example.com", "b.example.com"]
        assert all(r.content == "home.example.com" for r in provider.created)
        assert process.calls == []
        assert caddyfile_path.read_text() == BASE_CADDYFILE

    def test_all_scope_restores_file_then_dns(
        self, builder, provider, process, caddyfile, caddyfile_path: Path, backup: Path
    ) -> None:
        saga = builder.restore_backup(backup, RestoreScope.ALL, _snapshot(provider, caddyfile))

        assert [s.name for s in saga.steps] == [
            "restore", "validate", "reload", "dns_create", "dns_create", "dns_create",
        ]
        result = SagaExecutor().run(saga)

        assert result.success
        assert result.entity_type == EntityType.BOTH
        assert "a.example.com" in caddyfile_path.read_text()
        assert sorted(r.name for r in provider.records.values()) == [
            "a.example.com", "b.example.com", "existing.example.com",
        ]

    def test_all_scope_dns_failure_is_reported_after_reload(
        self, builder, provider, caddyfile, caddyfile_path: Path, backup: Path
    ) -> None:
        provider.fail_create = TransientIOError("rate limited")

        result = SagaExecutor().run(
            builder.restore_backup(backup, RestoreScope.ALL, _snapshot(provider, caddyfile))
        )

        assert result.inconsistent
        assert result.failed_step == "dns_create"
        assert result.failed_domain == "existing.example.com"
        # The restored file stays live.
        assert "a.example.com" in caddyfile_path.read_text()
