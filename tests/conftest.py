"""Shared fixtures: a temporary secure store and fakes for the OS boundaries."""

import asyncio
import os
from urllib.parse import parse_qs, urlsplit

import pytest

from ulyssesmcp.config import (
    AuditConfig,
    BridgeConfig,
    CallbackConfig,
    RateLimitConfig,
    ReceiverConfig,
    StoreConfig,
)
from ulyssesmcp.dispatcher import CommandDispatcher
from ulyssesmcp.errors import InvocationFailure
from ulyssesmcp.receiver import CallbackReceiver
from ulyssesmcp.secure_store import SecureStore


@pytest.fixture
def store(tmp_path):
    return SecureStore(tmp_path / "store")


@pytest.fixture
def bridge_config(tmp_path):
    return BridgeConfig(
        store=StoreConfig(root=tmp_path / "store"),
        rate_limit=RateLimitConfig(window_ms=60000, max_calls=10),
        callback=CallbackConfig(timeout_ms=500, poll_interval_ms=10),
        receiver=ReceiverConfig(command=["true"], startup_attempts=3, startup_interval_ms=10),
        audit=AuditConfig(enabled=True, path=tmp_path / "audit.jsonl"),
    )


def callback_urls(url: str) -> tuple[str, str]:
    """Extract the x-success and x-error addresses from an outbound URL."""
    query = parse_qs(urlsplit(url).query)
    return query["x-success"][0], query["x-error"][0]


class FakeDispatcher(CommandDispatcher):
    """
    Records opened URLs instead of calling the OS opener.

    ``respond`` decides what Ulysses does: None (nothing), or a function
    taking (success_address, error_address) and returning the URL Ulysses
    would open, which is then fed to ``receiver``. ``delay`` keeps
    dispatch() from returning for that many seconds after the reply, like
    a slow `open`.
    """

    def __init__(self, *args, receiver: CallbackReceiver | None = None, respond=None, fail: bool = False, delay: float = 0.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.receiver = receiver
        self.respond = respond
        self.fail = fail
        self.delay = delay
        self.opened: list[str] = []
        self.built: list[str] = []

    def build(self, action, params=None, correlation_id=None):
        url = super().build(action, params, correlation_id)
        self.built.append(url)
        return url

    async def dispatch(self, url: str) -> None:
        if self.fail:
            raise InvocationFailure("No application knows how to open URL")
        self.opened.append(url)
        if self.respond is not None and "x-success=" in url:
            reply = self.respond(*callback_urls(url))
            if reply is not None:
                self.receiver.handle_url(reply)
        if self.delay:
            await asyncio.sleep(self.delay)


@pytest.fixture
def running_receiver(store):
    """A receiver whose PID marker points at this (live) test process."""
    store.write_pid(os.getpid())
    return CallbackReceiver(store)


class RecordingBridge:
    """Stands in for UlyssesBridge and remembers what it was asked to do."""

    def __init__(self, result=None, error=None):
        self.result = result if result is not None else "ok"
        self.error = error
        self.calls: list[tuple[str, dict[str, str]]] = []

    async def execute(self, action, params=None):
        self.calls.append((action, dict(params or {})))
        if self.error is not None:
            raise self.error
        return self.result
