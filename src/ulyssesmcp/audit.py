"""
Security audit log.

One JSON object per line, appended to an owner-only file. Records
authorization requests, destructive operations, rate limit violations,
validation failures and operation outcomes. Details pass through the
redactor first; a failed write is logged and otherwise ignored.
"""

import json
import logging
import os
import platform
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ulyssesmcp.config import AuditConfig
from ulyssesmcp.redaction import SecretsRedactor

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Security event types."""
    AUTHORIZATION = "authorization"
    DESTRUCTIVE_OPERATION = "destructive_operation"
    RATE_LIMIT_VIOLATION = "rate_limit_violation"
    VALIDATION_FAILURE = "validation_failure"
    OPERATION_SUCCESS = "operation_success"
    OPERATION_FAILURE = "operation_failure"
    SERVER_START = "server_start"
    SERVER_ERROR = "server_error"


@dataclass
class AuditEvent:
    """A single audit record."""
    event_type: AuditEventType
    success: bool
    action: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "success": self.success,
            "details": self.details,
        }
        if self.action:
            result["action"] = self.action
        if self.error:
            result["error"] = self.error
        return result


class AuditLogger:
    """Append-only JSON Lines audit log."""

    def __init__(self, config: AuditConfig | None = None, redactor: SecretsRedactor | None = None):
        self.config = config or AuditConfig()
        self.redactor = redactor or SecretsRedactor()
        self.enabled = self.config.enabled
        self.path = Path(self.config.path)

        if self.enabled:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            except OSError as e:
                logger.error(f"Failed to create audit log directory: {e}")
                self.enabled = False

    def log(self, event: AuditEvent) -> None:
        if not self.enabled:
            return

        event.details = self.redactor.sanitize_details(event.details)
        if event.error:
            event.error = self.redactor.redact(event.error)
        line = json.dumps(event.to_dict()) + "\n"

        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
            with os.fdopen(fd, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.error(f"Audit log write failed: {e}")

    def log_server_start(self) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.SERVER_START,
            success=True,
            details={
                "pid": os.getpid(),
                "python_version": sys.version.split()[0],
                "platform": platform.system().lower(),
            },
        ))

    def log_server_error(self, error: str) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.SERVER_ERROR,
            success=False,
            error=error,
        ))

    def log_authorization(self, appname: str, success: bool, error: str | None = None) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.AUTHORIZATION,
            action="authorize",
            success=success,
            details={"appname": appname},
            error=error,
        ))

    def log_destructive_operation(
        self, action: str, success: bool, details: dict[str, Any] | None = None, error: str | None = None
    ) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.DESTRUCTIVE_OPERATION,
            action=action,
            success=success,
            details=dict(details or {}),
            error=error,
        ))

    def log_rate_limit_violation(self, action: str, details: dict[str, Any] | None = None) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.RATE_LIMIT_VIOLATION,
            action=action,
            success=False,
            details=dict(details or {}),
        ))

    def log_validation_failure(self, action: str, error: str, details: dict[str, Any] | None = None) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILURE,
            action=action,
            success=False,
            details=dict(details or {}),
            error=error,
        ))

    def log_success(self, action: str, details: dict[str, Any] | None = None) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.OPERATION_SUCCESS,
            action=action,
            success=True,
            details=dict(details or {}),
        ))

    def log_failure(self, action: str, error: str, details: dict[str, Any] | None = None) -> None:
        self.log(AuditEvent(
            event_type=AuditEventType.OPERATION_FAILURE,
            action=action,
            success=False,
            details=dict(details or {}),
            error=error,
        ))
