"""
test_vision.py — Remote vision client: reply parsing and error mapping.

Run with:
    python3 -m pytest tests/test_vision.py -v

The openai client is replaced by a small fake; its exceptions are the
real openai ones, built around httpx request/response objects.
"""

import asyncio
import base64
from types import SimpleNamespace

import httpx
import openai
import pytest

from fakes import plate_image
from plate_scanner.errors import (
    DetectorRuntimeError,
    PayloadTooLargeError,
    RateLimitedError,
    VisionAuthError,
    VisionTransportError,
)
from plate_scanner.vision import VisionServiceClient, encode_jpeg, parse_reply

REQUEST = httpx.Request("POST", "https://vision.test/v1/chat/completions")


def status_error(cls, code):
    return cls(f"HTTP {code}", response=httpx.Response(code, request=REQUEST), body=None)


class FakeCompletions:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeOpenAI:
    def __init__(self, reply=None, error=None):
        self.completions = FakeCompletions(reply, error)
        self.chat = SimpleNamespace(completions=self.completions)
        self.closed = False

    async def close(self):
        self.closed = True


def read(config, fake):
    client = VisionServiceClient(config, client=fake)
    return asyncio.run(client.read_plate(plate_image()))


class TestParseReply:

    @pytest.mark.parametrize("reply,expected", [
        ("GR-1234-20", "GR-1234-20"),
        ("  `GR 1234 20`  ", "GR 1234 20"),
        ('"AS-123-19".', "AS-123-19"),
        ("\nGR-1234-20\nThe plate is clearly visible.", "GR-1234-20"),
        ("NONE", None),
        ("none", None),
        ("No license plate visible", None),
        ("", None),
        (None, None),
        ("   \n  ", None),
    ])
    def test_replies(self, reply, expected):
        assert parse_reply(reply) == expected


class TestEncode:

    def test_round_trips_through_jpeg(self):
        data = base64.b64decode(encode_jpeg(plate_image(), quality=80))
        assert data[:2] == b"\xff\xd8"


class TestReadPlate:

    def test_sends_image_and_prompt(self, config):
        fake = FakeOpenAI("GR-1234-20")
        assert read(config, fake) == "GR-1234-20"
        call = fake.completions.calls[0]
        assert call["model"] == config["remote"]["model"]
        content = call["messages"][0]["content"]
        assert content[0]["type"] == "text"
        assert content[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")

    def test_none_reply(self, config):
        assert read(config, FakeOpenAI("NONE")) is None

    def test_payload_ceiling_checked_before_sending(self, config):
        config["remote"]["max_payload_mb"] = 0.0001
        fake = FakeOpenAI("GR-1234-20")
        with pytest.raises(PayloadTooLargeError):
            read(config, fake)
        assert fake.completions.calls == []

    @pytest.mark.parametrize("error,expected", [
        (status_error(openai.AuthenticationError, 401), VisionAuthError),
        (status_error(openai.PermissionDeniedError, 403), VisionAuthError),
        (status_error(openai.RateLimitError, 429), RateLimitedError),
        (status_error(openai.APIStatusError, 413), PayloadTooLargeError),
        (status_error(openai.InternalServerError, 500), VisionTransportError),
        (openai.APIConnectionError(request=REQUEST), VisionTransportError),
        (openai.APITimeoutError(request=REQUEST), VisionTransportError),
    ])
    def test_error_mapping(self, config, error, expected):
        with pytest.raises(expected):
            read(config, FakeOpenAI(error=error))

    def test_errors_are_detector_runtime_errors(self, config):
        # The fallback chain demotes on these
        with pytest.raises(DetectorRuntimeError):
            read(config, FakeOpenAI(error=status_error(openai.RateLimitError, 429)))

    def test_not_configured_without_key(self, config):
        client = VisionServiceClient(config)
        assert not client.configured
        with pytest.raises(VisionAuthError):
            asyncio.run(client.read_plate(plate_image()))

    def test_close(self, config):
        fake = FakeOpenAI()
        client = VisionServiceClient(config, client=fake)
        asyncio.run(client.close())
        assert fake.closed
