"""
Snippet categorization for ProxyFlare.

Snippets are `(name) { ... }` blocks in the Caddyfile. This module guesses what a
snippet is for from its content, so listings can group and describe them.
"""

from dataclasses import dataclass
from typing import List, Tuple

from proxyflare.models.models import SnippetCategory


@dataclass(frozen=True)
class CategorizationHint:
    category: SnippetCategory
    keywords: Tuple[str, ...]
    min_matches: int
    confidence: float


CATEGORIZATION_HINTS: List[CategorizationHint] = [
    CategorizationHint(
        SnippetCategory.IP_RESTRICTION,
        ("remote_ip", "not remote_ip", "@external", "respond 403"),
        2,
        0.95,
    ),
    CategorizationHint(
        SnippetCategory.SECURITY_HEADERS,
        (
            "header",
            "X-Frame-Options",
            "X-Content-Type-Options",
            "Strict-Transport-Security",
        ),
        2,
        0.9,
    ),
    CategorizationHint(
        SnippetCategory.PERFORMANCE, ("encode", "gzip", "cache", "expires"), 1, 0.8
    ),
    CategorizationHint(
        SnippetCategory.HTTPS_BACKEND,
        ("transport http", "tls_insecure_skip_verify"),
        1,
        0.95,
    ),
    CategorizationHint(
        SnippetCategory.OAUTH_HEADERS,
        (
            "header_up X-Real-IP",
            "header_up X-Forwarded-For",
            "header_up X-Forwarded-Proto",
        ),
        2,
        0.9,
    ),
    CategorizationHint(
        SnippetCategory.WEBSOCKET_HEADERS,
        ("header_up Upgrade", "header_up Connection", "websocket"),
        2,
        0.95,
    ),
    CategorizationHint(
        SnippetCategory.FRAME_EMBEDDING,
        ("X-Frame-Options SAMEORIGIN", "frame-ancestors"),
        1,
        0.9,
    ),
    CategorizationHint(
        SnippetCategory.CORS,
        ("Access-Control-Allow-Origin", "Access-Control-Allow-Methods", "cors"),
        1,
        0.9,
    ),
    CategorizationHint(
        SnippetCategory.COMPRESSION,
        ("encode gzip", "encode zstd", "encode br"),
        1,
        0.85,
    ),
    CategorizationHint(SnippetCategory.RATE_LIMIT, ("rate_limit", "limit_req"), 1, 0.9),
]

# Imported inside the reverse_proxy block rather than at site level
PROXY_LEVEL_SNIPPETS = {"performance", "frame_embedding", "https_backend"}


def categorize_snippet(content: str) -> Tuple[SnippetCategory, float]:
    """
    Guess the category of a snippet from its content.

    Each hint scores its base confidence scaled by the fraction of its keywords
    present; the best scoring hint wins.

    Args:
        content: Snippet body without the `(name) { }` wrapper

    Returns:
        Tuple[SnippetCategory, float]: Category and confidence between 0 and 1
    """
    lowered = content.lower()
    best_category = SnippetCategory.UNKNOWN
    best_confidence = 0.0

    for hint in CATEGORIZATION_HINTS:
        matches = sum(1 for kw in hint.keywords if kw.lower() in lowered)
        if matches < hint.min_matches:
            continue
        confidence = hint.confidence * matches / len(hint.keywords)
        if confidence > best_confidence:
            best_category = hint.category
            best_confidence = confidence

    return best_category, best_confidence


def describe_snippet(category: SnippetCategory, content: str) -> str:
    """Short human readable description for a categorized snippet."""
    if category == SnippetCategory.IP_RESTRICTION:
        if "remote_ip" in content:
            return "Restricts access based on IP address ranges"
        return "IP-based access control"

    if category == SnippetCategory.SECURITY_HEADERS:
        features = []
        if "X-Frame-Options" in content:
            features.append("clickjacking protection")
        if "X-Content-Type-Options" in content:
            features.append("MIME sniffing protection")
        if "Strict-Transport-Security" in content:
            features.append("HSTS")
        if features:
            return f"Security headers: {', '.join(features)}"
        return "Security headers for enhanced protection"

    if category == SnippetCategory.PERFORMANCE:
        if "encode" in content:
            return "Response compression for faster loading"
        if "cache" in content:
            return "Caching configuration for better performance"
        return "Performance optimization"

    return {
        SnippetCategory.HTTPS_BACKEND: "HTTPS connection to upstream backend",
        SnippetCategory.OAUTH_HEADERS: "OAuth/SSO authentication headers",
        SnippetCategory.WEBSOCKET_HEADERS: "WebSocket protocol support",
        SnippetCategory.FRAME_EMBEDDING: "Controls iframe embedding behavior",
        SnippetCategory.CORS: "Cross-Origin Resource Sharing (CORS) configuration",
        SnippetCategory.COMPRESSION: "Response compression (gzip/brotli/zstd)",
        SnippetCategory.RATE_LIMIT: "Rate limiting to prevent abuse",
        SnippetCategory.CUSTOM: "Custom configuration snippet",
    }.get(category, "Caddy configuration snippet")
