"""Tests for URL composition and OS invocation."""

import sys
from urllib.parse import parse_qs, unquote, urlsplit

import pytest

from ulyssesmcp.config import DispatchConfig, ReceiverConfig
from ulyssesmcp.dispatcher import CommandDispatcher, callback_address, encode_param
from ulyssesmcp.errors import InvocationFailure

from conftest import callback_urls


class TestEncodeParam:
    """Tests for encode_param."""

    def test_space_and_newline(self):
        assert encode_param("a b\nc") == "a%20b%0Ac"

    @pytest.mark.parametrize("raw", ['"', "'", ";", "&", "|", "$", "`", "\\", "/", "?", "#", "=", "+"])
    def test_metacharacters_never_survive(self, raw):
        encoded = encode_param(f"x{raw}y")
        assert raw not in encoded
        assert unquote(encoded) == f"x{raw}y"

    def test_unicode(self):
        assert encode_param("é") == "%C3%A9"

    def test_unreserved_untouched(self):
        assert encode_param("abc-XYZ_0.9~") == "abc-XYZ_0.9~"


class TestBuild:
    """Tests for CommandDispatcher.build."""

    def test_action_without_params(self):
        dispatcher = CommandDispatcher()
        assert dispatcher.build("get-version") == "ulysses://x-callback-url/get-version"

    def test_params_in_insertion_order(self):
        dispatcher = CommandDispatcher()
        url = dispatcher.build("new-sheet", {"text": "Hello World", "format": "markdown"})
        assert url == "ulysses://x-callback-url/new-sheet?text=Hello%20World&format=markdown"

    def test_injection_attempt_is_inert(self):
        dispatcher = CommandDispatcher()
        hostile = "x\"; rm -rf ~; echo \"&group=/&x-success=evil://"
        url = dispatcher.build("new-sheet", {"text": hostile})

        query = parse_qs(urlsplit(url).query)
        assert list(query) == ["text"]
        assert query["text"] == [hostile]

    def test_callback_addresses_appended_last(self):
        dispatcher = CommandDispatcher()
        url = dispatcher.build("read-sheet", {"id": "abc"}, correlation_id="read-sheet-1-ff")

        keys = [pair.split("=", 1)[0] for pair in urlsplit(url).query.split("&")]
        assert keys == ["id", "x-success", "x-error"]

        success, error = callback_urls(url)
        assert success == "ulysses-mcp-callback://x-callback-url/x-success?callbackId=read-sheet-1-ff"
        assert error == "ulysses-mcp-callback://x-callback-url/x-error?callbackId=read-sheet-1-ff"

    def test_no_callback_addresses_without_correlation_id(self):
        url = CommandDispatcher().build("new-sheet", {"text": "hi"})
        assert "x-success" not in url
        assert "x-error" not in url

    def test_custom_schemes(self):
        dispatcher = CommandDispatcher(
            DispatchConfig(scheme="ulysses-test"),
            ReceiverConfig(callback_scheme="my-callback"),
        )
        url = dispatcher.build("get-version", correlation_id="c-1")
        assert url.startswith("ulysses-test://x-callback-url/get-version?")
        assert callback_urls(url)[0].startswith("my-callback://x-callback-url/x-success")

    def test_callback_address_encodes_id(self):
        address = callback_address("cb", "x-error", "a&b")
        assert address == "cb://x-callback-url/x-error?callbackId=a%26b"


class TestDispatch:
    """Tests for CommandDispatcher.dispatch using a throwaway opener."""

    @pytest.mark.asyncio
    async def test_url_passed_as_single_argument(self, tmp_path):
        out = tmp_path / "argv.txt"
        opener = [
            sys.executable,
            "-c",
            "import sys; open(sys.argv[1], 'w').write('\\n'.join(sys.argv[2:]))",
            str(out),
        ]
        dispatcher = CommandDispatcher(DispatchConfig(open_command=opener))
        url = dispatcher.build("new-sheet", {"text": "a b; $(whoami) `id`"})

        await dispatcher.dispatch(url)

        assert out.read_text() == url

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self):
        opener = [sys.executable, "-c", "import sys; sys.stderr.write('no handler'); sys.exit(3)"]
        dispatcher = CommandDispatcher(DispatchConfig(open_command=opener))

        with pytest.raises(InvocationFailure) as exc_info:
            await dispatcher.dispatch("ulysses://x-callback-url/get-version")
        assert "exit code 3" in str(exc_info.value)
        assert "no handler" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_missing_opener_raises(self, tmp_path):
        dispatcher = CommandDispatcher(DispatchConfig(open_command=[str(tmp_path / "no-such-opener")]))
        with pytest.raises(InvocationFailure):
            await dispatcher.dispatch("ulysses://x-callback-url/get-version")
