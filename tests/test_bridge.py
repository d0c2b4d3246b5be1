"""
End-to-end tests for UlyssesBridge.execute.

The OS opener is replaced by FakeDispatcher, which plays Ulysses: it
records the URL and, when told to, "calls back" by feeding a callback URL
to a real CallbackReceiver writing into the temporary store.
"""

import asyncio
import json
import os
from urllib.parse import parse_qs, urlsplit

import pytest

from ulyssesmcp.bridge import UlyssesBridge
from ulyssesmcp.errors import (
    CallbackTimeout,
    ExternalError,
    HelperStartFailure,
    InvocationFailure,
    RateLimited,
    UnknownAction,
)
from ulyssesmcp.secure_store import ARTIFACT_PREFIX
from ulyssesmcp.supervisor import ReceiverSupervisor

from conftest import FakeDispatcher, callback_urls


def make_bridge(config, store, receiver=None, **dispatcher_kwargs):
    dispatcher = FakeDispatcher(config.dispatch, config.receiver, receiver=receiver, **dispatcher_kwargs)
    return UlyssesBridge(config, store=store, dispatcher=dispatcher), dispatcher


def audit_events(config):
    path = config.audit.path
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


def artifacts_in(store):
    return [name for name in os.listdir(store.root) if name.startswith(ARTIFACT_PREFIX)]


class EchoingDispatcher(FakeDispatcher):
    """Answers get-item with the id it was asked for; the first answer is the slowest."""

    async def dispatch(self, url: str) -> None:
        self.opened.append(url)
        if len(self.opened) == 1:
            await asyncio.sleep(0.05)
        item_id = parse_qs(urlsplit(url).query)["id"][0]
        success, _ = callback_urls(url)
        self.receiver.handle_url(f"{success}&id={item_id}")


class UnbuildableDispatcher(FakeDispatcher):
    """Fails to build any URL that carries callback addresses."""

    def build(self, action, params=None, correlation_id=None):
        if correlation_id is not None:
            raise ValueError("cannot encode callback address")
        return super().build(action, params, correlation_id)


class TestValidation:
    """Rejected requests never reach URL construction."""

    @pytest.mark.asyncio
    async def test_unknown_action(self, bridge_config, store):
        bridge, dispatcher = make_bridge(bridge_config, store)

        with pytest.raises(UnknownAction):
            await bridge.execute("format-disk", {"text": "x"})

        assert dispatcher.built == []
        assert dispatcher.opened == []
        events = audit_events(bridge_config)
        assert events[-1]["event_type"] == "validation_failure"
        assert events[-1]["action"] == "format-disk"


class TestFireAndForget:
    """Actions that need no response."""

    @pytest.mark.asyncio
    async def test_new_sheet_returns_after_open(self, bridge_config, store):
        bridge, dispatcher = make_bridge(bridge_config, store)

        result = await bridge.execute("new-sheet", {"text": "Hello", "group": "/Inbox"})

        assert result == "Successfully executed new-sheet"
        assert dispatcher.opened == ["ulysses://x-callback-url/new-sheet?text=Hello&group=%2FInbox"]
        assert len(bridge.correlator) == 0
        assert artifacts_in(store) == []

    @pytest.mark.asyncio
    async def test_does_not_need_receiver(self, bridge_config, store):
        launched = []
        bridge, _ = make_bridge(bridge_config, store)
        bridge.supervisor = ReceiverSupervisor(store, bridge_config.receiver, launcher=launched.append)

        await bridge.execute("insert", {"id": "abc", "text": "more"})

        assert launched == []

    @pytest.mark.asyncio
    async def test_open_failure_surfaces(self, bridge_config, store):
        bridge, _ = make_bridge(bridge_config, store, fail=True)
        with pytest.raises(InvocationFailure):
            await bridge.execute("new-sheet", {"text": "Hello"})


class TestRateLimiting:
    """Destructive actions are capped per window."""

    @pytest.mark.asyncio
    async def test_eleventh_trash_rejected(self, bridge_config, store):
        bridge, dispatcher = make_bridge(bridge_config, store)

        for i in range(10):
            await bridge.execute("trash", {"id": f"sheet{i}"})

        with pytest.raises(RateLimited):
            await bridge.execute("trash", {"id": "sheet10"})

        assert len(dispatcher.opened) == 10
        events = audit_events(bridge_config)
        assert sum(1 for e in events if e["event_type"] == "destructive_operation") == 10
        assert events[-1]["event_type"] == "rate_limit_violation"

    @pytest.mark.asyncio
    async def test_reads_are_not_limited(self, bridge_config, store, running_receiver):
        bridge, _ = make_bridge(
            bridge_config, store, receiver=running_receiver, respond=lambda success, error: success + "&title=T"
        )
        for _ in range(15):
            assert await bridge.execute("read-sheet", {"id": "abc"}) == {"title": "T"}


class TestCallbacks:
    """Actions that wait for Ulysses to call back."""

    @pytest.mark.asyncio
    async def test_get_version_round_trip(self, bridge_config, store, running_receiver):
        bridge, dispatcher = make_bridge(
            bridge_config,
            store,
            receiver=running_receiver,
            respond=lambda success, error: success + "&apiVersion=2&buildNumber=33000",
        )

        result = await bridge.execute("get-version")

        assert result == {"apiVersion": "2", "buildNumber": "33000"}
        assert len(dispatcher.opened) == 1
        assert "x-success=" in dispatcher.opened[0]
        assert len(bridge.correlator) == 0
        assert artifacts_in(store) == []

    @pytest.mark.asyncio
    async def test_error_callback(self, bridge_config, store, running_receiver):
        bridge, _ = make_bridge(
            bridge_config,
            store,
            receiver=running_receiver,
            respond=lambda success, error: error + "&errorCode=8&errorMessage=Sheet%20not%20found",
        )

        with pytest.raises(ExternalError, match="Sheet not found"):
            await bridge.execute("read-sheet", {"id": "missing"})

        events = audit_events(bridge_config)
        assert events[-1]["event_type"] == "operation_failure"
        assert events[-1]["success"] is False

    @pytest.mark.asyncio
    async def test_no_callback_times_out(self, bridge_config, store, running_receiver):
        bridge, _ = make_bridge(bridge_config, store, receiver=running_receiver)

        with pytest.raises(CallbackTimeout):
            await bridge.execute("get-root-items")
        assert len(bridge.correlator) == 0

    @pytest.mark.asyncio
    async def test_dispatch_failure_leaves_no_pending_request(self, bridge_config, store, running_receiver):
        bridge, _ = make_bridge(bridge_config, store, receiver=running_receiver, fail=True)

        with pytest.raises(InvocationFailure):
            await bridge.execute("get-version")
        assert len(bridge.correlator) == 0

    @pytest.mark.asyncio
    async def test_build_failure_leaves_no_pending_request(self, bridge_config, store, running_receiver):
        dispatcher = UnbuildableDispatcher(bridge_config.dispatch, bridge_config.receiver)
        bridge = UlyssesBridge(bridge_config, store=store, dispatcher=dispatcher)

        with pytest.raises(ValueError):
            await bridge.execute("get-version")
        assert len(bridge.correlator) == 0
        assert dispatcher.opened == []

    @pytest.mark.asyncio
    async def test_callback_before_open_returns(self, bridge_config, store, running_receiver):
        """Ulysses answers while `open` is still running; the answer is not lost."""
        bridge, _ = make_bridge(
            bridge_config,
            store,
            receiver=running_receiver,
            respond=lambda success, error: success + "&apiVersion=2",
            delay=0.2,
        )

        result = await bridge.execute("get-version")

        assert result == {"apiVersion": "2"}
        assert len(bridge.correlator) == 0
        assert artifacts_in(store) == []

    @pytest.mark.asyncio
    async def test_slow_open_still_times_out(self, bridge_config, store, running_receiver):
        bridge, _ = make_bridge(bridge_config, store, receiver=running_receiver, delay=0.7)

        with pytest.raises(CallbackTimeout):
            await bridge.execute("get-root-items")

        assert len(bridge.correlator) == 0
        events = audit_events(bridge_config)
        assert events[-1]["event_type"] == "operation_failure"
        assert "Callback timeout" in events[-1]["error"]

    @pytest.mark.asyncio
    async def test_concurrent_requests_get_their_own_results(self, bridge_config, store, running_receiver):
        dispatcher = EchoingDispatcher(bridge_config.dispatch, bridge_config.receiver, receiver=running_receiver)
        bridge = UlyssesBridge(bridge_config, store=store, dispatcher=dispatcher)

        results = await asyncio.gather(
            bridge.execute("get-item", {"id": "a"}),
            bridge.execute("get-item", {"id": "b"}),
        )

        assert results == [{"id": "a"}, {"id": "b"}]
        assert len(bridge.correlator) == 0
        assert artifacts_in(store) == []

    @pytest.mark.asyncio
    async def test_receiver_start_failure(self, bridge_config, store):
        bridge, dispatcher = make_bridge(bridge_config, store)
        bridge.supervisor = ReceiverSupervisor(store, bridge_config.receiver, launcher=lambda command: None)

        with pytest.raises(HelperStartFailure):
            await bridge.execute("get-version")
        assert dispatcher.opened == []
        assert len(bridge.correlator) == 0

    @pytest.mark.asyncio
    async def test_authorize_is_audited_without_token(self, bridge_config, store, running_receiver):
        bridge, _ = make_bridge(
            bridge_config,
            store,
            receiver=running_receiver,
            respond=lambda success, error: success + "&access-token=0123456789abcdef0123456789abcdef",
        )

        result = await bridge.execute("authorize", {"appname": "ulysses-mcp"})

        assert result == {"access-token": "0123456789abcdef0123456789abcdef"}
        events = audit_events(bridge_config)
        assert events[-1]["event_type"] == "authorization"
        assert events[-1]["details"] == {"appname": "ulysses-mcp"}
        assert "0123456789abcdef" not in bridge_config.audit.path.read_text()


class TestAudit:
    """What the audit log records for ordinary operations."""

    @pytest.mark.asyncio
    async def test_access_token_redacted_from_details(self, bridge_config, store):
        bridge, _ = make_bridge(bridge_config, store)

        await bridge.execute("trash", {"id": "abc", "access-token": "supersecret"})

        event = audit_events(bridge_config)[-1]
        assert event["event_type"] == "destructive_operation"
        assert event["details"]["access-token"] == "<redacted>"
        assert "supersecret" not in bridge_config.audit.path.read_text()

    @pytest.mark.asyncio
    async def test_long_text_truncated(self, bridge_config, store):
        bridge, _ = make_bridge(bridge_config, store)

        await bridge.execute("new-sheet", {"text": "x" * 500})

        event = audit_events(bridge_config)[-1]
        assert event["event_type"] == "operation_success"
        assert event["details"]["text"].endswith("...[truncated]")
        assert len(event["details"]["text"]) < 200


class TestLifecycle:
    """Start/close around the sweep task."""

    @pytest.mark.asyncio
    async def test_context_manager(self, bridge_config, store):
        bridge, _ = make_bridge(bridge_config, store)

        async with bridge:
            assert bridge._sweep_task is not None
            assert not bridge._sweep_task.done()

        assert bridge._sweep_task is None
        assert audit_events(bridge_config)[0]["event_type"] == "server_start"

    @pytest.mark.asyncio
    async def test_close_cancels_pending(self, bridge_config, store):
        bridge, _ = make_bridge(bridge_config, store)
        async with bridge:
            pending = bridge.correlator.register("get-version")
        assert pending.future.cancelled()
        assert len(bridge.correlator) == 0
