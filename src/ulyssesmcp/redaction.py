"""
Redaction of secrets and local paths from text that leaves the bridge.

Ulysses error messages are forwarded to the MCP client, and tool
arguments end up in the audit log. Neither may carry access tokens,
correlation IDs or paths into the secure store.
"""

import re
from typing import Any

SENSITIVE_FIELDS = frozenset({
    "access_token",
    "access-token",
    "accessToken",
    "token",
    "password",
    "secret",
    "apiKey",
    "api_key",
})

TRUNCATE_FIELDS = ("text", "note")
TRUNCATE_AT = 100


class SecretsRedactor:
    """Redacts secrets from outgoing messages and audit details."""

    def __init__(self, store_root: str | None = None):
        """Initialize with token patterns; ``store_root`` paths become <store>."""
        self.store_root = store_root
        self.secret_patterns: list[tuple[re.Pattern[str], str]] = [
            # Ulysses access tokens passed as URL parameters
            (
                re.compile(r"access[-_]?token[\"']?\s*[:=]\s*[\"']?[^\s&\"']+", re.IGNORECASE),
                "access-token=<REDACTED_TOKEN>",
            ),
            # Bearer tokens
            (re.compile(r"Bearer\s+[a-zA-Z0-9_.-]{20,}"), "Bearer <REDACTED_TOKEN>"),
            # Correlation IDs: <action>-<monotonic ns>-<hex suffix>
            (re.compile(r"\b[a-z]+(?:-[a-z]+)*-\d{6,}-[0-9a-f]{8,}\b"), "<REDACTED_CALLBACK_ID>"),
            # Artifact file names
            (re.compile(r"callback-[^\s/\"']+\.json"), "<artifact>"),
            # Generic API key patterns
            (
                re.compile(r"api[_-]?key[\"']?\s*[:=]\s*[\"']?([a-zA-Z0-9_-]{20,})[\"']?", re.IGNORECASE),
                "api_key=<REDACTED_API_KEY>",
            ),
            # Long opaque runs (hex, base64, uuids without dashes); path segments are left alone
            (re.compile(r"(?<![A-Za-z0-9+/_-])[A-Za-z0-9+_-]{32,}={0,2}"), "<REDACTED_TOKEN>"),
        ]

    def redact(self, text: str) -> str:
        """Return ``text`` with store paths and token-like substrings removed."""
        redacted = text
        if self.store_root:
            redacted = redacted.replace(self.store_root, "<store>")
        for pattern, replacement in self.secret_patterns:
            redacted = pattern.sub(replacement, redacted)
        return redacted

    def sanitize_details(self, details: dict[str, Any] | None) -> dict[str, Any]:
        """Copy of ``details`` safe for the audit log."""
        if not details:
            return {}

        sanitized = dict(details)
        for key in SENSITIVE_FIELDS:
            if key in sanitized:
                sanitized[key] = "<redacted>"

        for key in TRUNCATE_FIELDS:
            value = sanitized.get(key)
            if isinstance(value, str) and len(value) > TRUNCATE_AT:
                sanitized[key] = value[:TRUNCATE_AT] + "...[truncated]"

        image = sanitized.get("image")
        if isinstance(image, str):
            sanitized["image"] = f"<base64 data, length: {len(image)}>"

        return sanitized
