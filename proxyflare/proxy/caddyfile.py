"""
Caddyfile module for ProxyFlare.

This module is responsible for parsing the Caddyfile into site entries and
snippets, generating new site blocks, and applying line-level edits to the file.
Every write bumps the manager's generation; entries and snippets parsed before a
write can no longer be used for line-range edits.
"""

import logging
import os
import re
import stat
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple, Union

from proxyflare.models.models import BlockParams, ParsedConfig, ProxyEntry, Snippet
from proxyflare.proxy.snippets import (
    PROXY_LEVEL_SNIPPETS,
    categorize_snippet,
    describe_snippet,
)
from proxyflare.saga.errors import StaleHandleError, TransientIOError

OAUTH_HEADERS = (
    "X-Forwarded-User",
    "X-Forwarded-Groups",
    "X-Forwarded-Email",
    "X-Forwarded-Preferred-Username",
)


def count_braces(line: str) -> Tuple[int, int]:
    """
    Count `{` and `}` outside quoted strings.

    Args:
        line: One line of the Caddyfile

    Returns:
        Tuple[int, int]: Opening and closing brace counts
    """
    opened = closed = 0
    quote = None
    escaped = False
    for ch in line:
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if quote is None and ch in ("'", '"'):
            quote = ch
            continue
        if quote is not None:
            if ch == quote:
                quote = None
            continue
        if ch == "{":
            opened += 1
        elif ch == "}":
            closed += 1
    return opened, closed


def _block_end(lines: List[str], start: int) -> int:
    """Index of the line closing the block opened on lines[start]."""
    opened, closed = count_braces(lines[start])
    depth = opened - closed
    if depth <= 0:
        return start
    for i in range(start + 1, len(lines)):
        opened, closed = count_braces(lines[i])
        depth += opened - closed
        if depth <= 0:
            return i
    return len(lines) - 1


def parse_caddyfile(content: str, generation: int = 0) -> ParsedConfig:
    """
    Parse Caddyfile text into site entries and snippets.

    The global options block, top-level matchers and comments are skipped.
    Line numbers on the results are 1-indexed and inclusive.

    Args:
        content: Caddyfile text
        generation: Generation stamped onto every returned handle

    Returns:
        ParsedConfig: Entries and snippets in file order
    """
    lines = content.split("\n")
    parsed = ParsedConfig(generation=generation)
    seen_directive = False

    i = 0
    while i < len(lines):
        line = lines[i].strip()
        if not line or line.startswith("#"):
            i += 1
            continue

        if line == "{" and not seen_directive:
            # Global options block
            seen_directive = True
            i = _block_end(lines, i) + 1
            continue
        seen_directive = True

        if line.startswith("(") and ")" in line:
            end = _block_end(lines, i)
            parsed.snippets.append(_parse_snippet(lines, i, end, generation))
            i = end + 1
            continue

        if "{" in line:
            header = line[: line.index("{")].strip()
            end = _block_end(lines, i)
            if header and not header.startswith("@"):
                parsed.entries.append(_parse_site_block(lines, i, end, generation))
            i = end + 1
            continue

        i += 1

    return parsed


def _parse_snippet(lines: List[str], start: int, end: int, generation: int) -> Snippet:
    header = lines[start].strip()
    name = header[1 : header.index(")")].strip()
    content = "\n".join(lines[start + 1 : end]) if end > start else ""
    category, confidence = categorize_snippet(content)
    return Snippet(
        name=name,
        content=content,
        category=category,
        line_start=start + 1,
        line_end=end + 1,
        auto_detected=confidence > 0.0,
        confidence=confidence,
        description=describe_snippet(category, content),
        generation=generation,
    )


def _parse_site_block(
    lines: List[str], start: int, end: int, generation: int
) -> ProxyEntry:
    header = lines[start].strip()
    header = header[: header.index("{")].strip()
    domains = [d for d in re.split(r"[,\s]+", header) if d]

    has_marker = False
    if start > 0:
        previous = lines[start - 1].strip()
        has_marker = previous.startswith("# ===") and previous.endswith("===")

    block = lines[start : end + 1]
    entry = ProxyEntry(
        domains=domains,
        raw_block="\n".join(block),
        line_start=start + 1,
        line_end=end + 1,
        has_marker=has_marker,
        generation=generation,
    )

    for raw in block:
        stripped = raw.strip()
        if stripped.startswith("reverse_proxy "):
            _parse_reverse_proxy(entry, stripped)
        if stripped.startswith("import "):
            name = stripped[len("import ") :].strip()
            entry.imports.append(name)
            if name == "ip_restricted":
                entry.ip_restricted = True
        if stripped.startswith("@") and (
            "not_allowed" in stripped or "external" in stripped
        ):
            entry.ip_restricted = True
        if "header_up X-Real-IP" in stripped or "header_up X-Forwarded-" in stripped:
            entry.oauth_headers = True
        if "header_up Upgrade" in stripped or (
            "header_up Connection" in stripped and "Upgrade" in stripped
        ):
            entry.websocket = True

    if entry.port == 0:
        entry.port = 443 if entry.tls_enabled else 80
    return entry


def _parse_reverse_proxy(entry: ProxyEntry, line: str) -> None:
    # reverse_proxy https://10.0.0.9:32400 {
    target = line[len("reverse_proxy ") :].strip().rstrip("{").strip()
    if not target:
        return
    target = target.split()[0]

    if target.startswith("https://"):
        entry.tls_enabled = True
        target = target[len("https://") :]
    elif target.startswith("http://"):
        entry.tls_enabled = False
        target = target[len("http://") :]

    host, _, port = target.partition(":")
    entry.target = host
    if port.isdigit():
        entry.port = int(port)


def generate_block(params: BlockParams) -> str:
    """
    Generate a Caddy site block.

    The block is preceded by a `# === <primary domain> ===` marker. Port 443
    always proxies over https and port 80 over http; other ports follow the
    `ssl` flag.

    Args:
        params: Block inputs

    Returns:
        str: Block text ending in a newline
    """
    domains = params.domains or ["unknown.example.com"]
    site_snippets = [s for s in params.snippets if s not in PROXY_LEVEL_SNIPPETS]
    proxy_snippets = [s for s in params.snippets if s in PROXY_LEVEL_SNIPPETS]

    out = [f"# === {domains[0]} ===", f"{', '.join(domains)} {{"]

    for name in site_snippets:
        out.append(f"\timport {name}")
    if site_snippets:
        out.append("")

    if params.custom_config:
        out.extend(
            f"\t{line}" for line in params.custom_config.split("\n") if line.strip()
        )
        out.append("")

    if params.lan_only and "ip_restricted" not in params.snippets:
        out.append("\t@external {")
        out.append(f"\t\tnot remote_ip {params.lan_subnet} {params.allowed_external_ip}")
        out.append("\t}")
        out.append("\trespond @external 404")
        out.append("")

    if params.port == 443:
        scheme = "https"
    elif params.port == 80:
        scheme = "http"
    else:
        scheme = "https" if params.ssl else "http"
    upstream = f"{scheme}://{params.target}:{params.port}"

    if params.oauth or params.websocket or proxy_snippets:
        out.append(f"\treverse_proxy {upstream} {{")
        for name in proxy_snippets:
            out.append(f"\t\timport {name}")
        if proxy_snippets:
            out.append("")
        if params.oauth:
            for header in OAUTH_HEADERS:
                out.append(f"\t\theader_up {header} {{http.request.header.{header}}}")
        if params.websocket:
            out.append("\t\theader_up Upgrade {http.request.header.Upgrade}")
            out.append("\t\theader_up Connection {http.request.header.Connection}")
        out.append("\t}")
    else:
        out.append(f"\treverse_proxy {upstream}")

    out.append("}")
    return "\n".join(out) + "\n"


class CaddyfileManager:
    """
    Reads and edits a Caddyfile on disk.
    """

    def __init__(self, path: Union[str, Path]):
        """
        Initialize a CaddyfileManager.

        Args:
            path: Host path of the Caddyfile
        """
        self.path = Path(path)
        self.generation = 0
        self.logger = logging.getLogger("proxyflare.proxy.caddyfile")

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise TransientIOError(f"failed to read Caddyfile {self.path}: {e}") from e

    def parse(self) -> ParsedConfig:
        """
        Parse the Caddyfile as it is on disk now.

        Returns:
            ParsedConfig: Entries and snippets stamped with the current generation
        """
        parsed = parse_caddyfile(self.read(), self.generation)
        self.logger.debug(
            f"Parsed {len(parsed.entries)} entries and {len(parsed.snippets)} snippets "
            f"(generation {self.generation})"
        )
        return parsed

    generate_block = staticmethod(generate_block)

    def invalidate(self) -> None:
        """Mark all outstanding handles stale after an external rewrite of the file."""
        self.generation += 1

    def has_domain(self, domain: str) -> bool:
        """Check whether any site block serves the domain (case-insensitive)."""
        return self._find_entry(self.parse(), domain) is not None

    def append_entry(self, block: str) -> None:
        """
        Append a site block, separated from the existing content by a blank line.

        Args:
            block: Block text as produced by generate_block
        """
        content = self.read()
        if content and not content.endswith("\n"):
            content += "\n"
        content += "\n" + block
        self._write(content)
        self.logger.info(f"Appended block to {self.path}")

    def remove_entry(self, domain: str) -> bool:
        """
        Remove the site block serving a domain, including its marker comment.

        Multi-domain blocks are removed whole.

        Args:
            domain: Any domain of the block

        Returns:
            bool: False if no block serves the domain
        """
        content = self.read()
        entry = self._find_entry(parse_caddyfile(content, self.generation), domain)
        if entry is None:
            self.logger.warning(f"No Caddyfile entry found for {domain}")
            return False

        lines = content.split("\n")
        start = entry.line_start - 1
        if entry.has_marker:
            start -= 1
        end = entry.line_end
        # Drop the separating blank line that append_entry added
        if start > 0 and not lines[start - 1].strip():
            if end >= len(lines) or not lines[end].strip():
                start -= 1

        self._write("\n".join(lines[:start] + lines[end:]))
        self.logger.info(f"Removed Caddyfile entry for {domain}")
        return True

    def remove_snippet(self, snippet: Snippet) -> None:
        """
        Remove a snippet definition by its parsed line range.

        Raises:
            StaleHandleError: If the file was rewritten since the snippet was parsed
        """
        self._check_handle(snippet)
        lines = self.read().split("\n")
        del lines[snippet.line_start - 1 : snippet.line_end]
        self._write("\n".join(lines))
        self.logger.info(f"Removed snippet {snippet.name}")

    def replace_snippet(self, snippet: Snippet, content: str) -> None:
        """
        Replace the body of a snippet definition.

        Args:
            snippet: Snippet handle from the current generation
            content: New body without the `(name) { }` wrapper

        Raises:
            StaleHandleError: If the file was rewritten since the snippet was parsed
        """
        self._check_handle(snippet)
        lines = self.read().split("\n")
        replacement = Snippet(name=snippet.name, content=content).full_block()
        lines[snippet.line_start - 1 : snippet.line_end] = replacement.split("\n")
        self._write("\n".join(lines))
        self.logger.info(f"Updated snippet {snippet.name}")

    def prepend_snippets(self, snippets: List[Tuple[str, str]]) -> None:
        """
        Insert snippet definitions at the top of the file.

        Args:
            snippets: (name, body) pairs
        """
        header = [
            "# === Snippets created by ProxyFlare ===",
            f"# Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            "",
        ]
        for name, body in snippets:
            header.append(Snippet(name=name, content=body).full_block())
            header.append("")
        header.append("# === End of snippets ===")
        header.append("")

        self._write("\n".join(header) + "\n" + self.read())
        self.logger.info(f"Added {len(snippets)} snippet(s) to {self.path}")

    def _check_handle(self, handle: Union[Snippet, ProxyEntry]) -> None:
        if handle.generation != self.generation:
            raise StaleHandleError(
                f"handle from generation {handle.generation} used at generation "
                f"{self.generation}; re-parse the Caddyfile first"
            )

    @staticmethod
    def _find_entry(parsed: ParsedConfig, domain: str) -> Optional[ProxyEntry]:
        domain = domain.strip().lower()
        for entry in parsed.entries:
            if any(d.lower() == domain for d in entry.domains):
                return entry
        return None

    def _write(self, content: str) -> None:
        try:
            perms = stat.S_IMODE(self.path.stat().st_mode)
        except OSError:
            perms = None

        self.generation += 1
        try:
            self.path.write_text(content, encoding="utf-8")
            if perms is not None:
                os.chmod(self.path, perms)
        except OSError as e:
            raise TransientIOError(f"failed to write Caddyfile {self.path}: {e}") from e
