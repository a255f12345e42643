"""Shared fixtures and fakes for ProxyFlare tests."""

from pathlib import Path
from typing import Dict, List, Optional

import pytest

from proxyflare.backup.store import BackupStore
from proxyflare.config.config import Config
from proxyflare.models.models import DNSRecord
from proxyflare.proxy.caddyfile import CaddyfileManager
from proxyflare.saga.operations import SagaBuilder

ZONE_ID = "0123456789abcdef0123456789abcdef"

BASE_CADDYFILE = """\
existing.example.com {
\treverse_proxy http://localhost:8000
}
"""


class FakeProvider:
    """In-memory DNS provider recording every call."""

    def __init__(self, records: Optional[List[DNSRecord]] = None):
        self.records: Dict[str, DNSRecord] = {r.id: r for r in records or []}
        self.created: List[DNSRecord] = []
        self.updated: List[str] = []
        self.deleted: List[str] = []
        self.fail_create: Optional[Exception] = None
        self.fail_update: Optional[Exception] = None
        self.fail_delete: Optional[Exception] = None
        self.fail_delete_after = 0
        self._next_id = 1

    def list_records(self, zone_id=None, record_type=""):
        return [r for r in self.records.values() if not record_type or r.type == record_type]

    def create_record(self, record: DNSRecord, zone_id=None) -> DNSRecord:
        if self.fail_create is not None:
            raise self.fail_create
        created = DNSRecord(
            id=f"rec-{self._next_id}",
            type=record.type,
            name=record.name,
            content=record.content,
            proxied=record.proxied,
            ttl=record.ttl,
            zone_id=zone_id or "",
        )
        self._next_id += 1
        self.records[created.id] = created
        self.created.append(created)
        return created

    def update_record(self, record_id: str, record: DNSRecord, zone_id=None) -> DNSRecord:
        if self.fail_update is not None:
            raise self.fail_update
        updated = DNSRecord(
            id=record_id,
            type=record.type,
            name=record.name,
            content=record.content,
            proxied=record.proxied,
            ttl=record.ttl,
        )
        self.records[record_id] = updated
        self.updated.append(record_id)
        return updated

    def delete_record(self, record_id: str, zone_id=None) -> None:
        if self.fail_delete is not None and len(self.deleted) >= self.fail_delete_after:
            raise self.fail_delete
        self.records.pop(record_id, None)
        self.deleted.append(record_id)


class FakeProcess:
    """Stands in for CaddyController; records calls and fails on demand."""

    def __init__(self):
        self.calls: List[str] = []
        self.fail_validate: Optional[Exception] = None
        self.fail_reload: Optional[Exception] = None

    def format(self) -> bool:
        self.calls.append("format")
        return True

    def validate(self) -> None:
        self.calls.append("validate")
        if self.fail_validate is not None:
            raise self.fail_validate

    def reload(self) -> None:
        self.calls.append("reload")
        if self.fail_reload is not None:
            raise self.fail_reload


class FakeAudit:
    """Collects audited results in memory."""

    def __init__(self):
        self.results = []

    def log_result(self, result, batch=False):
        self.results.append((result, batch))


@pytest.fixture
def config() -> Config:
    return Config(
        cloudflare_api_token="token",
        zone_id=ZONE_ID,
        domain="example.com",
        default_cname_target="home.example.com",
        default_lan_subnet="192.168.1.0/24",
        default_allowed_external_ip="203.0.113.10/32",
    )


@pytest.fixture
def caddyfile_path(tmp_path: Path) -> Path:
    path = tmp_path / "Caddyfile"
    path.write_text(BASE_CADDYFILE)
    return path


@pytest.fixture
def caddyfile(caddyfile_path: Path) -> CaddyfileManager:
    return CaddyfileManager(caddyfile_path)


@pytest.fixture
def backups(caddyfile_path: Path) -> BackupStore:
    return BackupStore(caddyfile_path)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def process() -> FakeProcess:
    return FakeProcess()


@pytest.fixture
def builder(provider, caddyfile, process, backups, config) -> SagaBuilder:
    return SagaBuilder(provider, caddyfile, process, backups, config)
