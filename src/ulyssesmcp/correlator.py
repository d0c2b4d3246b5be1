"""
Callback Correlator - turns fire-and-forget URL opens into awaitable results.

Every request that needs a response gets a correlation ID and a
PendingRequest holding an asyncio Future plus two timer handles: the
timeout and the next poll tick. Each poll tick looks for the matching
callback artifact in the secure store.

State per correlation ID:

    Pending --artifact, isError=false--> Resolved
    Pending --artifact, isError=true---> Rejected (ExternalError)
    Pending --unreadable artifact------> Rejected (ArtifactCorruption)
    Pending --timeout------------------> TimedOut (CallbackTimeout)
    Pending --cancel / dispatch failed-> Cancelled

The first transition pops the entry from the registry; that pop is the
only gate. A timer or poll tick that fires afterwards finds nothing and
does nothing. Whichever transition wins runs _finish(), which cancels
both handles, deletes the artifact and settles the Future, exactly once.

After a timeout or cancel, Ulysses may still answer. A late watcher keeps
deleting that ID's artifact for late_grace_ms so it never lingers in the
store until the stale sweep.

Everything runs on one event loop thread, so the registry needs no lock.
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum

from ulyssesmcp.config import CallbackConfig
from ulyssesmcp.errors import (
    ArtifactCorruption,
    ArtifactNotFound,
    BridgeError,
    CallbackTimeout,
    ExternalError,
    StoreError,
    SymlinkRejected,
)
from ulyssesmcp.redaction import SecretsRedactor
from ulyssesmcp.secure_store import SecureStore

logger = logging.getLogger(__name__)

GENERIC_EXTERNAL_ERROR = "Ulysses returned an error"


class CallbackState(Enum):
    """Lifecycle state of a correlated request."""
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class PendingRequest:
    """One in-flight request waiting for its callback artifact."""
    correlation_id: str
    action: str
    created_at: float
    future: asyncio.Future
    timeout_handle: asyncio.TimerHandle | None = None
    poll_handle: asyncio.TimerHandle | None = None
    polls: int = 0


class CallbackCorrelator:
    """Registry of pending requests and the poll/timeout machinery around it."""

    def __init__(
        self,
        store: SecureStore,
        config: CallbackConfig | None = None,
        redactor: SecretsRedactor | None = None,
    ) -> None:
        self.store = store
        self.config = config or CallbackConfig()
        self.redactor = redactor or SecretsRedactor(store_root=str(store.root))
        self._pending: dict[str, PendingRequest] = {}
        self._late: dict[str, asyncio.TimerHandle] = {}

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending.keys())

    @property
    def late_ids(self) -> list[str]:
        """IDs whose late artifacts are still being watched for."""
        return list(self._late.keys())

    def is_pending(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def new_correlation_id(self, action: str) -> str:
        """``<action>-<monotonic ns>-<random hex>``, unique among pending IDs."""
        while True:
            correlation_id = f"{action}-{time.monotonic_ns()}-{secrets.token_hex(6)}"
            if correlation_id not in self._pending:
                return correlation_id

    def register(self, action: str) -> PendingRequest:
        """
        Enter the Pending state for a new request.

        Must be called from the running event loop, immediately before the
        URL carrying the returned correlation ID is dispatched.
        """
        loop = asyncio.get_running_loop()
        correlation_id = self.new_correlation_id(action)
        pending = PendingRequest(
            correlation_id=correlation_id,
            action=action,
            created_at=loop.time(),
            future=loop.create_future(),
        )
        self._pending[correlation_id] = pending

        pending.timeout_handle = loop.call_later(
            self.config.timeout_ms / 1000.0, self._on_timeout, correlation_id
        )
        pending.poll_handle = loop.call_later(
            self.config.poll_interval_ms / 1000.0, self._poll, correlation_id
        )
        logger.debug(f"Registered callback {correlation_id}")
        return pending

    async def wait(self, pending: PendingRequest) -> dict[str, str]:
        """
        Wait for the outcome of ``pending``.

        Awaits the request's own Future, so an outcome that settled while
        the URL was still being opened is delivered as-is. Returns the
        artifact's data on success and raises the rejection error otherwise.
        If the waiting task is cancelled, the request is cleaned up before
        the cancellation propagates.
        """
        try:
            return await pending.future
        except asyncio.CancelledError:
            self.cancel(pending.correlation_id)
            raise

    def cancel(self, correlation_id: str) -> bool:
        """Drop a pending request without an outcome. Returns False if it already settled."""
        if not self._finish(correlation_id, CallbackState.CANCELLED):
            return False
        self._watch_late(correlation_id)
        return True

    def discard(self, correlation_id: str) -> None:
        """Synchronous cleanup after a failed dispatch."""
        if self._finish(correlation_id, CallbackState.CANCELLED):
            logger.info(f"Discarded callback {correlation_id} after dispatch failure")

    def close(self) -> None:
        """Cancel every pending request and late watcher (server shutdown)."""
        for correlation_id in list(self._pending):
            self._finish(correlation_id, CallbackState.CANCELLED)
        for handle in self._late.values():
            handle.cancel()
        self._late.clear()

    def _poll(self, correlation_id: str) -> None:
        pending = self._pending.get(correlation_id)
        if pending is None:
            return
        pending.polls += 1

        try:
            artifact = self.store.read_artifact(correlation_id)
        except ArtifactNotFound:
            logger.debug(f"No callback yet for {correlation_id} (poll {pending.polls})")
            self._schedule_poll(pending)
            return
        except SymlinkRejected:
            # A link is never a response; keep waiting until the timeout
            self._schedule_poll(pending)
            return
        except ArtifactCorruption as e:
            logger.error(f"Corrupt callback artifact for {correlation_id}: {e}")
            self._finish(correlation_id, CallbackState.REJECTED, error=e)
            return
        except (StoreError, OSError) as e:
            logger.error(f"Unreadable callback artifact for {correlation_id}: {e}")
            self._finish(
                correlation_id,
                CallbackState.REJECTED,
                error=ArtifactCorruption(f"Failed to read callback artifact: {e}"),
            )
            return

        if artifact.callback_id != correlation_id:
            self._finish(
                correlation_id,
                CallbackState.REJECTED,
                error=ArtifactCorruption("Callback artifact does not match its request"),
            )
            return

        if artifact.is_error:
            message = self.redactor.redact(artifact.error_message or GENERIC_EXTERNAL_ERROR)
            self._finish(correlation_id, CallbackState.REJECTED, error=ExternalError(message))
            return

        self._finish(correlation_id, CallbackState.RESOLVED, result=dict(artifact.data))

    def _schedule_poll(self, pending: PendingRequest) -> None:
        loop = asyncio.get_running_loop()
        pending.poll_handle = loop.call_later(
            self.config.poll_interval_ms / 1000.0, self._poll, pending.correlation_id
        )

    def _on_timeout(self, correlation_id: str) -> None:
        pending = self._pending.get(correlation_id)
        if pending is None:
            return
        logger.warning(
            f"Callback {correlation_id} timed out after {self.config.timeout_ms} ms "
            f"({pending.polls} polls)"
        )
        self._finish(
            correlation_id,
            CallbackState.TIMED_OUT,
            error=CallbackTimeout(correlation_id, pending.action, self.config.timeout_ms),
        )
        self._watch_late(correlation_id)

    def _watch_late(self, correlation_id: str) -> None:
        if self.config.late_grace_ms <= 0:
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.late_grace_ms / 1000.0
        self._late[correlation_id] = loop.call_later(
            self.config.poll_interval_ms / 1000.0, self._reap_late, correlation_id, deadline
        )

    def _reap_late(self, correlation_id: str, deadline: float) -> None:
        if self.store.has_artifact(correlation_id):
            logger.info(f"Deleted late callback artifact for {correlation_id}")
            self.store.delete_artifact(correlation_id)

        loop = asyncio.get_running_loop()
        if loop.time() >= deadline:
            self._late.pop(correlation_id, None)
            return
        self._late[correlation_id] = loop.call_later(
            self.config.poll_interval_ms / 1000.0, self._reap_late, correlation_id, deadline
        )

    def _finish(
        self,
        correlation_id: str,
        state: CallbackState,
        result: dict[str, str] | None = None,
        error: BridgeError | None = None,
    ) -> bool:
        """Single cleanup routine; only the first caller per ID gets past the pop."""
        pending = self._pending.pop(correlation_id, None)
        if pending is None:
            return False

        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        if pending.poll_handle is not None:
            pending.poll_handle.cancel()
        self.store.delete_artifact(correlation_id)

        future = pending.future
        if not future.done():
            if state is CallbackState.RESOLVED:
                future.set_result(result or {})
            elif state is CallbackState.CANCELLED:
                future.cancel()
            else:
                future.set_exception(error or ArtifactCorruption("Callback failed"))

        if state is CallbackState.RESOLVED:
            logger.info(f"Callback {correlation_id} resolved")
        return True
