import asyncio
from datetime import datetime, timezone
import json

import httpx
import pytest

from backend.main import (
    DEFAULT_PERSONA_TRAITS,
    ChatCompletionClient,
    Entry,
    UpstreamLLMError,
    companion_prompt,
    expert_prompt,
    parse_stream_line,
)


def _client(handler) -> ChatCompletionClient:
    return ChatCompletionClient(
        "https://llm.test/v1/",
        "sk-test",
        "test-model",
        transport=httpx.MockTransport(handler),
    )


def _sse_body(*payloads: str) -> bytes:
    return "".join(f"data: {payload}\n\n" for payload in payloads).encode("utf-8")


def _chunk(content: str) -> str:
    return json.dumps({"choices": [{"delta": {"content": content}}]})


async def _drain(client: ChatCompletionClient) -> list[str]:
    return [delta async for delta in client.stream("system", "user")]


def test_parse_stream_line() -> None:
    assert parse_stream_line(f"data: {_chunk('hi')}") == (False, "hi")
    assert parse_stream_line("data: [DONE]") == (True, "")
    assert parse_stream_line(": keep-alive") == (False, "")
    assert parse_stream_line('data: {"choices": [{"delta": {}}]}') == (False, "")
    with pytest.raises(UpstreamLLMError):
        parse_stream_line("data: {not json")
    with pytest.raises(UpstreamLLMError):
        parse_stream_line('data: {"error": {"message": "overloaded"}}')


def test_stream_yields_deltas_until_done() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert str(request.url) == "https://llm.test/v1/chat/completions"
        body = _sse_body(_chunk("Hello"), _chunk(", friend"), "[DONE]", _chunk("ignored"))
        return httpx.Response(200, content=body)

    assert asyncio.run(_drain(_client(handler))) == ["Hello", ", friend"]
    assert seen[0]["stream"] is True
    assert seen[0]["model"] == "test-model"
    assert seen[0]["messages"][0] == {"role": "system", "content": "system"}


def test_stream_reports_http_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    with pytest.raises(UpstreamLLMError):
        asyncio.run(_drain(_client(handler)))


def test_stream_reports_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(UpstreamLLMError):
        asyncio.run(_drain(_client(handler)))


def test_complete_returns_message_content() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert "stream" not in json.loads(request.content)
        return httpx.Response(
            200, json={"choices": [{"message": {"content": "  Try one thing.  "}}]}
        )

    assert asyncio.run(_client(handler).complete("s", "u")) == "Try one thing."


def test_complete_rejects_empty_reply() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": ""}}]})

    with pytest.raises(UpstreamLLMError):
        asyncio.run(_client(handler).complete("s", "u"))


def test_prompt_templates_include_context() -> None:
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    entry = Entry(id=2, user_id="u1", created_at=now, text="Stuck on the garden", sentiment=0.0)
    related = Entry(
        id=1,
        user_id="u1",
        created_at=now,
        text="x" * 200,
        sentiment=0.0,
        keywords=["garden", "soil"],
    )
    companion = companion_prompt(DEFAULT_PERSONA_TRAITS, "untangle", entry, related)
    assert "challenge_rate=0.35" in companion.system
    assert "Stuck on the garden" in companion.user
    assert "x" * 140 + "..." in companion.user
    assert "List the hidden assumptions" in companion.user

    expert = expert_prompt(DEFAULT_PERSONA_TRAITS, "plan", entry, None)
    assert "Mode: PLAN" in expert.system
    assert "Earlier related reflection:\nNone" in expert.user
