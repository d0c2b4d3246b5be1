"""
Receiver Supervisor - keeps the callback receiver process alive.

The receiver announces itself by writing its PID into the secure store.
ensure_running() trusts that marker only after a signal-0 liveness probe;
a dead PID is discarded and a fresh receiver is launched in its own
session so it outlives this process. Safe to call before every dispatch;
concurrent callers share one launch.
"""

import asyncio
import errno
import logging
import os
import subprocess
from collections.abc import Callable

from ulyssesmcp.config import ReceiverConfig
from ulyssesmcp.errors import HelperStartFailure
from ulyssesmcp.secure_store import SecureStore

logger = logging.getLogger(__name__)


def process_alive(pid: int) -> bool:
    """Non-destructive liveness probe (signal 0)."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except OSError as e:
        return e.errno == errno.EPERM
    return True


def launch_detached(command: list[str]) -> None:
    """Start ``command`` detached from our session and stdio."""
    subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        close_fds=True,
        start_new_session=True,
    )


class ReceiverSupervisor:
    """Starts the callback receiver on demand, tracked through its PID marker."""

    def __init__(
        self,
        store: SecureStore,
        config: ReceiverConfig | None = None,
        launcher: Callable[[list[str]], None] = launch_detached,
        probe: Callable[[int], bool] = process_alive,
    ) -> None:
        self.store = store
        self.config = config or ReceiverConfig()
        self._launcher = launcher
        self._probe = probe
        self._lock = asyncio.Lock()

    def is_running(self) -> bool:
        pid = self.store.read_pid()
        return pid is not None and self._probe(pid)

    async def ensure_running(self) -> None:
        """Make sure a receiver is alive, starting one if needed."""
        if self.is_running():
            return
        async with self._lock:
            await self._start()

    async def _start(self) -> None:
        # Another caller may have started it while we waited for the lock
        pid = self.store.read_pid()
        if pid is not None:
            if self._probe(pid):
                return
            logger.warning(f"Discarding stale receiver PID marker ({pid})")
            self.store.clear_pid()

        logger.info(f"Starting callback receiver: {' '.join(self.config.command)}")
        try:
            self._launcher(list(self.config.command))
        except OSError as e:
            raise HelperStartFailure(f"Failed to start callback receiver: {e}") from e

        interval = self.config.startup_interval_ms / 1000.0
        for attempt in range(1, self.config.startup_attempts + 1):
            await asyncio.sleep(interval)
            pid = self.store.read_pid()
            if pid is not None and self._probe(pid):
                logger.info(f"Callback receiver running (pid {pid}) after {attempt} check(s)")
                return

        raise HelperStartFailure(
            "Callback receiver did not start within "
            f"{self.config.startup_attempts * self.config.startup_interval_ms} ms. "
            "Check that the receiver command is installed and can register "
            f"the {self.config.callback_scheme}:// URL scheme."
        )
