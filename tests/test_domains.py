"""Unit tests for domain helpers."""

import pytest

from proxyflare.models.models import ProxyEntry
from proxyflare.saga.errors import ConflictError
from proxyflare.utils.domains import (
    build_fqdns,
    check_domain_conflicts,
    parse_subdomains,
    validate_subdomains,
)


class TestParseSubdomains:
    def test_trims_and_drops_blank_lines(self) -> None:
        assert parse_subdomains(" app \n\n api\n   \n") == ["app", "api"]


class TestValidateSubdomains:
    def test_requires_one(self) -> None:
        with pytest.raises(ValueError, match="at least one subdomain"):
            validate_subdomains([])

    def test_rejects_case_insensitive_duplicates(self) -> None:
        with pytest.raises(ValueError, match="duplicate subdomain: API"):
            validate_subdomains(["api", "API"])

    def test_rejects_blank_entry(self) -> None:
        with pytest.raises(ValueError, match="subdomain 2 is empty"):
            validate_subdomains(["app", "  "])

    def test_accepts_distinct(self) -> None:
        validate_subdomains(["app", "api", "@"])


class TestBuildFqdns:
    def test_appends_base_domain(self) -> None:
        assert build_fqdns(["app", "@"], "example.com") == ["app.example.com", "example.com"]


class TestCheckDomainConflicts:
    """Tests for check_domain_conflicts()."""

    @pytest.fixture
    def entries(self):
        return [
            ProxyEntry(domains=["a.example.com", "b.example.com"]),
            ProxyEntry(domains=["c.example.com"]),
        ]

    def test_conflict_names_multi_domain_entry(self, entries) -> None:
        with pytest.raises(ConflictError, match=r"entry 'a.example.com' \(multi-domain entry\)"):
            check_domain_conflicts(["B.example.com"], entries)

    def test_single_domain_conflict(self, entries) -> None:
        with pytest.raises(ConflictError, match=r"c.example.com already exists"):
            check_domain_conflicts(["new.example.com", "c.example.com"], entries)

    def test_unused_domains_pass(self, entries) -> None:
        check_domain_conflicts(["dns.example.com", "new.example.com"], entries)

    def test_allowed_domains_may_clash(self, entries) -> None:
        check_domain_conflicts(
            ["a.example.com", "b.example.com"],
            entries,
            allowed=["A.example.com", "b.example.com"],
        )
