import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from src.chatline.domain.errors import ConfigurationError, UpstreamExhaustedError
from src.chatline.services.compact_codec import ModuleCodec
from src.chatline.services.gemini_proxy import (
    DEFAULT_SYSTEM_PROMPT,
    TOON_SYSTEM_PROMPT,
    GeminiConfig,
    GenerateRequest,
    GenerativeProxy,
    empty_content_reason,
)
from src.chatline.services.token_report import estimate_tokens


def _ok(text: str) -> httpx.Response:
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


class Upstream:
    """Scripted Gemini endpoint; records every request body it receives."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(json.loads(request.content))
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item.status_code, content=item.content, headers=item.headers)


class RecordingSleep:
    def __init__(self) -> None:
        self.waits = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


def _fake_codec(encode=None, decode=None) -> ModuleCodec:
    module = SimpleNamespace(__name__="fake_toon", encode=encode or (lambda data: "users[1]{id}:\n  1"))
    if decode is not None:
        module.decode = decode
    return ModuleCodec(module)


def _proxy(upstream=None, codec=None, sleep=None, api_key="test-key", **cfg) -> GenerativeProxy:
    config = GeminiConfig(api_key=api_key, base_url="https://gemini.test/v1beta", **cfg)
    transport = httpx.MockTransport(upstream) if upstream is not None else None
    return GenerativeProxy(config, codec, transport=transport, sleep=sleep or RecordingSleep())


def _user_text(call) -> str:
    return call["contents"][0]["parts"][0]["text"]


def _system_text(call) -> str:
    return call["system_instruction"]["parts"][0]["text"]


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("hello") == {"bytes": 5, "estimatedTokens": 2}
    assert estimate_tokens("") == {"bytes": 0, "estimatedTokens": 0}
    assert estimate_tokens("é") == {"bytes": 2, "estimatedTokens": 1}


def test_prompt_without_context_is_sent_unchanged():
    prepared, report = _proxy().prepare(GenerateRequest(prompt="hi"))
    assert prepared.text == "hi"
    assert prepared.system_instruction == DEFAULT_SYSTEM_PROMPT
    assert prepared.context_format is None
    assert report["context"] == {}
    assert report["prompt"] == {"finalPromptBytes": 2, "finalPromptEstimatedTokens": 1}


def test_context_falls_back_to_json_without_codec():
    req = GenerateRequest(prompt="Summarize", contextData={"users": [{"id": 1}]})
    prepared, report = _proxy(codec=None).prepare(req)

    assert prepared.text == 'Summarize\n\n### Context Data (Format: JSON)\n{"users":[{"id":1}]}'
    assert "toon" not in report["context"]
    assert "savings" not in report["context"]
    assert report["context"]["json"] == estimate_tokens('{"users":[{"id":1}]}')


def test_context_uses_compact_encoding_when_codec_loaded():
    req = GenerateRequest(prompt="Summarize", contextData={"users": [{"id": 1}]})
    prepared, report = _proxy(codec=_fake_codec()).prepare(req)

    assert prepared.context_format == "TOON"
    assert prepared.text.startswith("Summarize\n\n### Context Data (Format: TOON)\n")
    ctx = report["context"]
    json_bytes = ctx["json"]["bytes"]
    toon_bytes = ctx["toon"]["bytes"]
    assert ctx["savings"]["bytesSaved"] == json_bytes - toon_bytes
    assert ctx["savings"]["tokensSaved"] == ctx["json"]["estimatedTokens"] - ctx["toon"]["estimatedTokens"]
    assert ctx["savings"]["percentSaved"] == round((json_bytes - toon_bytes) / json_bytes * 100, 2)
    assert report["prompt"]["finalPromptBytes"] == len(prepared.text.encode("utf-8"))


def test_codec_encode_failure_falls_back_to_json():
    def boom(_data):
        raise ValueError("cannot encode")

    req = GenerateRequest(prompt="p", contextData=[1, 2])
    prepared, report = _proxy(codec=_fake_codec(encode=boom)).prepare(req)

    assert prepared.context_format == "JSON"
    assert prepared.text.endswith("(Format: JSON)\n[1,2]")
    assert "toon" not in report["context"]


@pytest.mark.parametrize(
    "system_prompt, response_format, expected",
    [
        ("Be terse.", "toon", "Be terse."),
        ("   ", "toon", TOON_SYSTEM_PROMPT),
        (None, "toon", TOON_SYSTEM_PROMPT),
        (None, None, DEFAULT_SYSTEM_PROMPT),
        (42, None, DEFAULT_SYSTEM_PROMPT),
    ],
)
def test_system_instruction_selection(system_prompt, response_format, expected):
    req = GenerateRequest(prompt="p", systemPrompt=system_prompt, config={"responseFormat": response_format})
    prepared, _ = _proxy().prepare(req)
    assert prepared.system_instruction == expected


def test_prompt_must_be_a_non_empty_string():
    with pytest.raises(ValueError):
        GenerateRequest(prompt="")
    with pytest.raises(ValueError):
        GenerateRequest(prompt=123)


@pytest.mark.asyncio
async def test_generate_requires_api_key():
    with pytest.raises(ConfigurationError):
        await _proxy(api_key=None).generate(GenerateRequest(prompt="hi"))


@pytest.mark.asyncio
async def test_generate_sends_system_and_user_parts():
    upstream = Upstream(_ok("hello there"))
    proxy = _proxy(upstream)

    result = await proxy.generate(GenerateRequest(prompt="hi"))

    assert result["text"] == "hello there"
    assert "data" not in result
    assert result["tokenReport"]["response"] == {"text": estimate_tokens("hello there")}
    assert len(upstream.calls) == 1
    assert _user_text(upstream.calls[0]) == "hi"
    assert upstream.calls[0]["contents"][0]["role"] == "user"
    assert _system_text(upstream.calls[0]) == DEFAULT_SYSTEM_PROMPT


@pytest.mark.asyncio
async def test_two_failures_then_success_waits_one_then_two_seconds():
    upstream = Upstream(httpx.Response(500, text="busy"), httpx.Response(503, text="busy"), _ok("third time"))
    sleep = RecordingSleep()

    result = await _proxy(upstream, sleep=sleep).generate(GenerateRequest(prompt="hi"))

    assert result["text"] == "third time"
    assert len(upstream.calls) == 3
    assert sleep.waits == [1.0, 2.0]
    assert sum(sleep.waits) >= 3.0


@pytest.mark.asyncio
async def test_exhaustion_reports_last_error_and_token_report():
    upstream = Upstream(httpx.Response(500, text="overloaded"))
    sleep = RecordingSleep()
    req = GenerateRequest(prompt="hi", contextData={"a": 1})

    with pytest.raises(UpstreamExhaustedError) as info:
        await _proxy(upstream, sleep=sleep).generate(req)

    assert len(upstream.calls) == 3
    assert sleep.waits == [1.0, 2.0]
    assert info.value.attempts == 3
    assert "500" in str(info.value)
    assert "overloaded" in str(info.value)
    assert info.value.token_report["context"]["json"] == estimate_tokens('{"a":1}')


@pytest.mark.asyncio
async def test_transport_errors_and_bad_bodies_are_retried():
    upstream = Upstream(
        httpx.ConnectError("refused"),
        httpx.Response(200, text="<html>not json</html>"),
        _ok("recovered"),
    )
    result = await _proxy(upstream).generate(GenerateRequest(prompt="hi"))
    assert result["text"] == "recovered"
    assert len(upstream.calls) == 3


@pytest.mark.asyncio
async def test_blocked_prompt_surfaces_block_reason():
    blocked = httpx.Response(
        200,
        json={"candidates": [{"finishReason": "SAFETY"}], "promptFeedback": {"blockReason": "SAFETY"}},
    )
    with pytest.raises(UpstreamExhaustedError) as info:
        await _proxy(Upstream(blocked)).generate(GenerateRequest(prompt="hi"))
    assert str(info.value) == "Prompt blocked: SAFETY"


def test_empty_content_reasons():
    assert empty_content_reason({}) == "No content generated."
    assert empty_content_reason({"candidates": [{"finishReason": "MAX_TOKENS"}]}) == "Generation failed: MAX_TOKENS"
    assert empty_content_reason(
        {"candidates": [{"finishReason": "SAFETY"}], "promptFeedback": {"blockReason": "OTHER"}}
    ) == "Prompt blocked: OTHER"


@pytest.mark.asyncio
async def test_attempt_deadline_counts_as_failure():
    class SlowTransport(httpx.AsyncBaseTransport):
        def __init__(self) -> None:
            self.calls = 0

        async def handle_async_request(self, request):
            self.calls += 1
            await asyncio.sleep(1)
            return _ok("late")

    transport = SlowTransport()
    config = GeminiConfig(api_key="k", base_url="https://gemini.test/v1beta", attempt_timeout=0.01)
    proxy = GenerativeProxy(config, None, transport=transport, sleep=RecordingSleep())

    with pytest.raises(UpstreamExhaustedError) as info:
        await proxy.generate(GenerateRequest(prompt="hi"))
    assert transport.calls == 3
    assert "timed out" in str(info.value)


@pytest.mark.asyncio
async def test_compact_response_is_decoded():
    codec = _fake_codec(decode=lambda text: {"users": [{"id": 1}]})
    upstream = Upstream(_ok("users[1]{id}:\n  1"))
    req = GenerateRequest(prompt="list", config={"responseFormat": "toon"})

    result = await _proxy(upstream, codec=codec).generate(req)

    assert result["data"] == {"users": [{"id": 1}]}
    assert result["text"] == "users[1]{id}:\n  1"
    response = result["tokenReport"]["response"]
    assert response["toon"] == estimate_tokens(result["text"])
    assert response["decodedJson"] == estimate_tokens('{"users":[{"id":1}]}')
    assert response["savings"]["bytesExtra"] == response["decodedJson"]["bytes"] - response["toon"]["bytes"]
    assert _system_text(upstream.calls[0]) == TOON_SYSTEM_PROMPT


@pytest.mark.asyncio
async def test_undecodable_compact_response_returns_raw_text():
    def broken(_text):
        raise ValueError("bad toon")

    upstream = Upstream(_ok("not really toon"))
    req = GenerateRequest(prompt="list", config={"responseFormat": "toon"})

    result = await _proxy(upstream, codec=_fake_codec(decode=broken)).generate(req)

    assert result["text"] == "not really toon"
    assert "data" not in result
    assert result["tokenReport"]["response"] == {"toon": estimate_tokens("not really toon")}


@pytest.mark.asyncio
async def test_compact_request_without_decoder_returns_plain_text():
    upstream = Upstream(_ok("plain"))
    req = GenerateRequest(prompt="list", config={"responseFormat": "toon"})

    result = await _proxy(upstream, codec=_fake_codec()).generate(req)

    assert result == {"text": "plain", "tokenReport": result["tokenReport"]}
    assert result["tokenReport"]["response"] == {"text": estimate_tokens("plain")}


@pytest.mark.asyncio
async def test_api_key_is_sent_as_query_parameter():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return _ok("ok")

    await _proxy(handler, model="gemini-test").generate(GenerateRequest(prompt="hi"))

    assert seen[0].params["key"] == "test-key"
    assert seen[0].path == "/v1beta/models/gemini-test:generateContent"


@pytest.mark.parametrize("context", [0, 0.0, "", False, None])
def test_falsy_scalar_context_is_not_attached(context):
    prepared, report = _proxy().prepare(GenerateRequest(prompt="Hello", contextData=context))
    assert prepared.text == "Hello"
    assert report["context"] == {}


@pytest.mark.parametrize("context, encoded", [({}, "{}"), ([], "[]"), (True, "true"), ("x", '"x"')])
def test_truthy_or_container_context_is_attached(context, encoded):
    prepared, _ = _proxy().prepare(GenerateRequest(prompt="Hello", contextData=context))
    assert prepared.text == f"Hello\n\n### Context Data (Format: JSON)\n{encoded}"


@pytest.mark.asyncio
async def test_malformed_candidates_are_retried_not_raised():
    upstream = Upstream(httpx.Response(200, json={"candidates": {"0": {"finishReason": "STOP"}}}), _ok("fine"))
    result = await _proxy(upstream).generate(GenerateRequest(prompt="hi"))
    assert result["text"] == "fine"
    assert len(upstream.calls) == 2
    assert empty_content_reason({"candidates": {"a": 1}}) == "No content generated."
