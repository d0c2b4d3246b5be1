"""
Callback receiver - the companion process Ulysses calls back into.

Ulysses answers a request by opening the x-success or x-error address we
gave it, e.g.

    ulysses-mcp-callback://x-callback-url/x-success?callbackId=ID&version=28

The receiver owns that private URL scheme. For every callback URL it
writes one artifact into the secure store, keyed by callbackId, where the
server's correlator is polling for it.

Two ways to run it:
- ``ulysses-mcp-receiver`` with no arguments: an accessory (no Dock icon)
  Cocoa app that handles kAEGetURL Apple Events. Needs PyObjC and must be
  packaged as an app bundle declaring the URL scheme.
- ``ulysses-mcp-receiver --handle URL``: process one URL and exit, for
  wrappers that forward the URL on the command line.
"""

import argparse
import logging
import os
import sys
from urllib.parse import parse_qsl, urlsplit

from ulyssesmcp.config import ReceiverConfig, StoreConfig
from ulyssesmcp.errors import BridgeError, StoreError
from ulyssesmcp.secure_store import SecureStore
from ulyssesmcp.types import CallbackArtifact

logger = logging.getLogger(__name__)


class InvalidCallbackURL(BridgeError):
    """A URL reached the receiver that is not one of our callback addresses."""

    code = "invalid_callback_url"


def parse_callback_url(url: str, scheme: str = "ulysses-mcp-callback") -> CallbackArtifact:
    """Turn a callback URL into the artifact the correlator expects."""
    parts = urlsplit(url)
    if parts.scheme != scheme:
        raise InvalidCallbackURL(f"Unexpected URL scheme: {parts.scheme!r}")

    data: dict[str, str] = {}
    callback_id = None
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key == "callbackId":
            callback_id = value
        else:
            data[key] = value

    if not callback_id:
        raise InvalidCallbackURL("No callbackId in callback URL")

    return CallbackArtifact(
        callback_id=callback_id,
        is_error=parts.path.rstrip("/").endswith("/x-error"),
        data=data,
    )


class CallbackReceiver:
    """Writes callback artifacts and maintains the receiver PID marker."""

    def __init__(self, store: SecureStore, config: ReceiverConfig | None = None) -> None:
        self.store = store
        self.config = config or ReceiverConfig()

    def handle_url(self, url: str) -> CallbackArtifact | None:
        """Persist one callback. Bad URLs are logged and dropped."""
        try:
            artifact = parse_callback_url(url, self.config.callback_scheme)
        except InvalidCallbackURL as e:
            logger.error(f"Ignoring callback URL: {e}")
            return None

        try:
            path = self.store.write_artifact(artifact.callback_id, artifact)
        except StoreError as e:
            logger.error(f"Could not write callback data: {e}")
            return None

        logger.info(f"Wrote callback data to {path.name} (error={artifact.is_error})")
        return artifact

    def announce(self) -> None:
        self.store.write_pid(os.getpid())
        logger.info(f"Receiver PID: {os.getpid()}")

    def retire(self) -> None:
        if self.store.read_pid() == os.getpid():
            self.store.clear_pid()

    def run(self) -> None:
        """Run the Cocoa event loop until the process is terminated."""
        try:
            import objc
            from AppKit import NSApplication, NSApplicationActivationPolicyAccessory
            from Foundation import NSAppleEventManager, NSObject
        except ImportError as e:
            raise ImportError(
                "PyObjC is required to run the callback receiver. "
                "Install it with: pip install pyobjc-framework-Cocoa"
            ) from e

        receiver = self
        # kInternetEventClass / kAEGetURL / keyDirectObject ('GURL', 'GURL', '----')
        event_class = int.from_bytes(b"GURL", "big")
        event_id = int.from_bytes(b"GURL", "big")
        key_direct_object = int.from_bytes(b"----", "big")

        class URLEventHandler(NSObject):
            @objc.typedSelector(b"v@:@@")
            def handleURLEvent_withReplyEvent_(self, event, reply_event):
                descriptor = event.paramDescriptorForKeyword_(key_direct_object)
                url = descriptor.stringValue() if descriptor is not None else None
                if not url:
                    logger.error("Could not parse URL from event")
                    return
                receiver.handle_url(str(url))

        app = NSApplication.sharedApplication()
        app.setActivationPolicy_(NSApplicationActivationPolicyAccessory)
        handler = URLEventHandler.alloc().init()
        NSAppleEventManager.sharedAppleEventManager().setEventHandler_andSelector_forEventClass_andEventID_(
            handler,
            "handleURLEvent:withReplyEvent:",
            event_class,
            event_id,
        )

        self.announce()
        logger.info(f"Waiting for URLs with scheme: {self.config.callback_scheme}://")
        try:
            app.run()
        finally:
            self.retire()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ulysses-mcp-receiver",
        description="Receive Ulysses x-callback-url responses for ulysses-mcp.",
    )
    parser.add_argument("--handle", metavar="URL", help="Process one callback URL and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        store = SecureStore(StoreConfig.from_env().root)
    except StoreError as e:
        logger.error(str(e))
        return 1
    receiver = CallbackReceiver(store, ReceiverConfig.from_env())

    if args.handle:
        return 0 if receiver.handle_url(args.handle) is not None else 1

    receiver.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
