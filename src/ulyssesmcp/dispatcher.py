"""
Command Dispatcher - builds x-callback-url invocations and opens them.

Every parameter value is percent-encoded with no safe characters, so
quotes, shell metacharacters, newlines and other control characters
arrive at Ulysses as inert text. The URL is handed to the OS opener as a
single argv element; no shell is ever involved.
"""

import asyncio
import logging
from collections.abc import Mapping
from urllib.parse import quote

from ulyssesmcp.config import DispatchConfig, ReceiverConfig
from ulyssesmcp.errors import InvocationFailure

logger = logging.getLogger(__name__)


def encode_param(value: str) -> str:
    """Percent-encode everything except RFC 3986 unreserved characters."""
    return quote(value, safe="")


def callback_address(scheme: str, outcome: str, correlation_id: str) -> str:
    """Address the receiver answers on for ``outcome`` ("x-success" or "x-error")."""
    return f"{scheme}://x-callback-url/{outcome}?callbackId={encode_param(correlation_id)}"


class CommandDispatcher:
    """Composes Ulysses URLs and opens them through the OS URL handler."""

    def __init__(
        self,
        config: DispatchConfig | None = None,
        receiver_config: ReceiverConfig | None = None,
    ) -> None:
        self.config = config or DispatchConfig()
        self.receiver_config = receiver_config or ReceiverConfig()

    def build(
        self,
        action: str,
        params: Mapping[str, str] | None = None,
        correlation_id: str | None = None,
    ) -> str:
        """
        Build the invocation URL for ``action``.

        When ``correlation_id`` is given, x-success and x-error addresses
        carrying it are appended so Ulysses can report back to the receiver.
        """
        pairs = [f"{encode_param(key)}={encode_param(str(value))}" for key, value in (params or {}).items()]

        if correlation_id is not None:
            scheme = self.receiver_config.callback_scheme
            success = callback_address(scheme, "x-success", correlation_id)
            error = callback_address(scheme, "x-error", correlation_id)
            pairs.append(f"x-success={encode_param(success)}")
            pairs.append(f"x-error={encode_param(error)}")

        url = f"{self.config.scheme}://x-callback-url/{encode_param(action)}"
        if pairs:
            url += "?" + "&".join(pairs)
        return url

    async def dispatch(self, url: str) -> None:
        """Open ``url`` with the configured opener, raising InvocationFailure on error."""
        argv = [*self.config.open_command, url]
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
        except OSError as e:
            raise InvocationFailure(f"Failed to open Ulysses URL: {e}") from e

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
            raise InvocationFailure(
                f"Failed to open Ulysses URL (exit code {process.returncode})"
                + (f": {detail}" if detail else "")
            )

        logger.debug(f"Opened URL for action {url.split('?', 1)[0]}")
