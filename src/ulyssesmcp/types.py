"""
Core types shared by the bridge, the correlator and the receiver.
"""

from dataclasses import dataclass, field
from typing import Any

from ulyssesmcp.errors import ArtifactCorruption


@dataclass
class CallbackArtifact:
    """
    The on-disk record of a Ulysses callback.

    Written once by the receiver, read at most once by the correlator and
    then deleted. Its existence is the only evidence Ulysses responded.
    """
    callback_id: str
    is_error: bool = False
    data: dict[str, str] = field(default_factory=dict)

    @property
    def error_message(self) -> str | None:
        return self.data.get("errorMessage")

    def to_dict(self) -> dict[str, Any]:
        return {
            "callbackId": self.callback_id,
            "isError": self.is_error,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> "CallbackArtifact":
        """Build an artifact from parsed JSON, raising ArtifactCorruption on bad shape."""
        if not isinstance(raw, dict):
            raise ArtifactCorruption("Callback artifact is not a JSON object")

        callback_id = raw.get("callbackId")
        if not isinstance(callback_id, str) or not callback_id:
            raise ArtifactCorruption("Callback artifact has no callbackId")

        is_error = raw.get("isError", False)
        if not isinstance(is_error, bool):
            raise ArtifactCorruption("Callback artifact isError must be a boolean")

        data = raw.get("data", {})
        if not isinstance(data, dict):
            raise ArtifactCorruption("Callback artifact data must be an object")

        return cls(
            callback_id=callback_id,
            is_error=is_error,
            data={str(k): "" if v is None else str(v) for k, v in data.items()},
        )


@dataclass
class ToolResult:
    """The result of executing a tool, as handed back to the MCP client."""
    content: str
    success: bool = True
    error: str | None = None
