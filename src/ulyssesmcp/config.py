"""
Configuration for the Ulysses bridge.

All configuration is loaded from environment variables so the server can
be tuned from an MCP client's launch config without code changes. Every
section has defaults that work for a single user on a single Mac.
"""

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

APP_SUPPORT_DIR = Path.home() / "Library" / "Application Support" / "ulysses-mcp"


@dataclass
class StoreConfig:
    """Configuration for the secure ephemeral store."""
    root: Path = APP_SUPPORT_DIR / "tmp"
    retention_seconds: float = 3600.0
    sweep_interval_seconds: float = 600.0

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Load configuration from environment variables."""
        return cls(
            root=Path(os.getenv("ULYSSES_MCP_STORE_DIR", str(APP_SUPPORT_DIR / "tmp"))).expanduser(),
            retention_seconds=float(os.getenv("ULYSSES_MCP_RETENTION_SECONDS", "3600")),
            sweep_interval_seconds=float(os.getenv("ULYSSES_MCP_SWEEP_INTERVAL_SECONDS", "600")),
        )


@dataclass
class RateLimitConfig:
    """
    Configuration for the destructive-action rate limiter.

    The window is fixed, not sliding: a burst straddling a window boundary
    can reach twice max_calls.
    """
    window_ms: int = 60000
    max_calls: int = 10

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        """Load configuration from environment variables."""
        return cls(
            window_ms=int(os.getenv("ULYSSES_MCP_RATE_WINDOW_MS", "60000")),
            max_calls=int(os.getenv("ULYSSES_MCP_RATE_MAX_CALLS", "10")),
        )


@dataclass
class CallbackConfig:
    """
    Configuration for callback correlation.

    late_grace_ms is how long artifacts for timed-out or cancelled requests
    keep being deleted on arrival.
    """
    timeout_ms: int = 30000
    poll_interval_ms: int = 100
    late_grace_ms: int = 60000

    @classmethod
    def from_env(cls) -> "CallbackConfig":
        """Load configuration from environment variables."""
        return cls(
            timeout_ms=int(os.getenv("ULYSSES_MCP_CALLBACK_TIMEOUT_MS", "30000")),
            poll_interval_ms=int(os.getenv("ULYSSES_MCP_POLL_INTERVAL_MS", "100")),
            late_grace_ms=int(os.getenv("ULYSSES_MCP_LATE_GRACE_MS", "60000")),
        )


def _default_receiver_command() -> list[str]:
    return [sys.executable, "-m", "ulyssesmcp.receiver"]


@dataclass
class ReceiverConfig:
    """Configuration for the callback receiver and its supervisor."""
    command: list[str] = field(default_factory=_default_receiver_command)
    startup_attempts: int = 20
    startup_interval_ms: int = 250
    callback_scheme: str = "ulysses-mcp-callback"

    @classmethod
    def from_env(cls) -> "ReceiverConfig":
        """Load configuration from environment variables."""
        command = os.getenv("ULYSSES_MCP_RECEIVER_COMMAND")
        return cls(
            command=shlex.split(command) if command else _default_receiver_command(),
            startup_attempts=int(os.getenv("ULYSSES_MCP_RECEIVER_STARTUP_ATTEMPTS", "20")),
            startup_interval_ms=int(os.getenv("ULYSSES_MCP_RECEIVER_STARTUP_INTERVAL_MS", "250")),
            callback_scheme=os.getenv("ULYSSES_MCP_CALLBACK_SCHEME", "ulysses-mcp-callback"),
        )


@dataclass
class DispatchConfig:
    """Configuration for outbound URL invocation."""
    scheme: str = "ulysses"
    open_command: list[str] = field(default_factory=lambda: ["open"])

    @classmethod
    def from_env(cls) -> "DispatchConfig":
        """Load configuration from environment variables."""
        return cls(
            scheme=os.getenv("ULYSSES_MCP_SCHEME", "ulysses"),
            open_command=shlex.split(os.getenv("ULYSSES_MCP_OPEN_COMMAND", "open")),
        )


@dataclass
class AuditConfig:
    """Configuration for the security audit log."""
    enabled: bool = True
    path: Path = APP_SUPPORT_DIR / "audit.jsonl"

    @classmethod
    def from_env(cls) -> "AuditConfig":
        """Load configuration from environment variables."""
        return cls(
            enabled=os.getenv("ULYSSES_MCP_AUDIT", "1").lower() not in ("0", "false", "no", "off"),
            path=Path(os.getenv("ULYSSES_MCP_AUDIT_LOG", str(APP_SUPPORT_DIR / "audit.jsonl"))).expanduser(),
        )


@dataclass
class BridgeConfig:
    """Combined configuration for the entire bridge."""
    store: StoreConfig = field(default_factory=StoreConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    callback: CallbackConfig = field(default_factory=CallbackConfig)
    receiver: ReceiverConfig = field(default_factory=ReceiverConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """Load all configuration from environment variables."""
        return cls(
            store=StoreConfig.from_env(),
            rate_limit=RateLimitConfig.from_env(),
            callback=CallbackConfig.from_env(),
            receiver=ReceiverConfig.from_env(),
            dispatch=DispatchConfig.from_env(),
            audit=AuditConfig.from_env(),
        )
