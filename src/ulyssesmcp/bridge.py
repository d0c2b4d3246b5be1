"""
UlyssesBridge - the caller-facing execute() surface.

Request path:

    validate action -> rate limit -> [ensure receiver, register callback]
        -> build URL -> open URL -> [wait for callback artifact]

Actions that need no response return as soon as the URL has been opened,
without allocating a correlation ID or touching the store. For the rest,
the pending callback is registered before the URL is opened, and discarded
synchronously if opening fails so no timer outlives the request.
"""

import asyncio
import logging
from collections.abc import Mapping

from ulyssesmcp.actions import ActionRegistry
from ulyssesmcp.audit import AuditLogger
from ulyssesmcp.config import BridgeConfig
from ulyssesmcp.correlator import CallbackCorrelator
from ulyssesmcp.dispatcher import CommandDispatcher
from ulyssesmcp.errors import BridgeError, InvalidInput, RateLimited
from ulyssesmcp.rate_limit import FixedWindowRateLimiter
from ulyssesmcp.redaction import SecretsRedactor
from ulyssesmcp.secure_store import SecureStore
from ulyssesmcp.supervisor import ReceiverSupervisor

logger = logging.getLogger(__name__)


class UlyssesBridge:
    """
    Request/response contract over Ulysses' one-way x-callback-url API.

    Every collaborator can be injected, so tests build isolated bridges
    with fake openers and launchers and a temporary store.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        registry: ActionRegistry | None = None,
        store: SecureStore | None = None,
        rate_limiter: FixedWindowRateLimiter | None = None,
        supervisor: ReceiverSupervisor | None = None,
        dispatcher: CommandDispatcher | None = None,
        correlator: CallbackCorrelator | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.config = config or BridgeConfig.from_env()
        self.registry = registry or ActionRegistry.default()
        self.store = store or SecureStore(self.config.store.root)
        redactor = SecretsRedactor(store_root=str(self.store.root))
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(self.registry, self.config.rate_limit)
        self.supervisor = supervisor or ReceiverSupervisor(self.store, self.config.receiver)
        self.dispatcher = dispatcher or CommandDispatcher(self.config.dispatch, self.config.receiver)
        self.correlator = correlator or CallbackCorrelator(self.store, self.config.callback, redactor)
        self.audit = audit or AuditLogger(self.config.audit, redactor)
        self._sweep_task: asyncio.Task | None = None

    async def execute(
        self, action_name: str, params: Mapping[str, str] | None = None
    ) -> dict[str, str] | str:
        """
        Run ``action_name`` in Ulysses.

        Returns the callback data for actions that need a response and a
        success marker string for the rest. Raises BridgeError subclasses.
        """
        params = dict(params or {})

        try:
            action = self.registry.validate_action(action_name)
            self.rate_limiter.check_and_consume(action.name)
        except RateLimited as e:
            self.audit.log_rate_limit_violation(action_name, {"retry_after_ms": e.retry_after_ms})
            raise
        except InvalidInput as e:
            self.audit.log_validation_failure(action_name, str(e))
            raise

        try:
            result = await self._run(action.name, action.needs_response, params)
        except BridgeError as e:
            self._audit_outcome(action.name, action.is_destructive, params, str(e))
            raise

        self._audit_outcome(action.name, action.is_destructive, params)
        return result

    def _audit_outcome(
        self, action: str, destructive: bool, params: dict[str, str], error: str | None = None
    ) -> None:
        success = error is None
        if action == "authorize":
            self.audit.log_authorization(params.get("appname", ""), success, error)
        elif destructive:
            self.audit.log_destructive_operation(action, success, params, error)
        elif success:
            self.audit.log_success(action, params)
        else:
            self.audit.log_failure(action, error or "", params)

    async def _run(
        self, action: str, needs_response: bool, params: dict[str, str]
    ) -> dict[str, str] | str:
        if not needs_response:
            url = self.dispatcher.build(action, params)
            await self.dispatcher.dispatch(url)
            return f"Successfully executed {action}"

        await self.supervisor.ensure_running()

        pending = self.correlator.register(action)
        try:
            url = self.dispatcher.build(action, params, pending.correlation_id)
            await self.dispatcher.dispatch(url)
        except BaseException:
            self.correlator.discard(pending.correlation_id)
            if pending.future.done() and not pending.future.cancelled():
                # Outcome landed before the opener failed; the opener error wins
                pending.future.exception()
            raise

        return await self.correlator.wait(pending)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Sweep leftovers from earlier runs and start the periodic sweep."""
        self.audit.log_server_start()
        self.store.sweep_stale(self.config.store.retention_seconds)
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        self.correlator.close()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.store.sweep_interval_seconds)
            removed = self.store.sweep_stale(self.config.store.retention_seconds)
            if removed:
                logger.info(f"Swept {removed} stale callback artifact(s)")

    async def __aenter__(self) -> "UlyssesBridge":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
