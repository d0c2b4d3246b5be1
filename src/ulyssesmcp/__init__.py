"""
ulyssesmcp - drive the Ulysses writing app from MCP clients.

Ulysses only understands fire-and-forget x-callback-url invocations and
answers, if at all, by opening another URL. This package turns that into a
request/response contract:

1. Actions are whitelisted and their parameters validated before any URL is built
2. Destructive actions are rate limited per fixed window
3. Responses come back through a companion receiver that writes callback
   artifacts into a private, owner-only directory
4. Each waiting request polls for its artifact and settles exactly once:
   resolved, rejected or timed out
"""

__version__ = "0.1.0"

from ulyssesmcp.actions import Action, ActionRegistry
from ulyssesmcp.bridge import UlyssesBridge
from ulyssesmcp.config import BridgeConfig
from ulyssesmcp.correlator import CallbackCorrelator, CallbackState
from ulyssesmcp.dispatcher import CommandDispatcher
from ulyssesmcp.rate_limit import FixedWindowRateLimiter
from ulyssesmcp.secure_store import SecureStore
from ulyssesmcp.supervisor import ReceiverSupervisor
from ulyssesmcp.types import CallbackArtifact

__all__ = [
    "Action",
    "ActionRegistry",
    "BridgeConfig",
    "CallbackArtifact",
    "CallbackCorrelator",
    "CallbackState",
    "CommandDispatcher",
    "FixedWindowRateLimiter",
    "ReceiverSupervisor",
    "SecureStore",
    "UlyssesBridge",
]
