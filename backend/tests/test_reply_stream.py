import asyncio
import json
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from backend import main
from backend.main import (
    Entry,
    IngestResult,
    InMemoryJournalStore,
    ReplyStream,
    StreamState,
    UpstreamLLMError,
    format_sse_text,
    ingest_entry,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _parse_sse(body: str) -> list[tuple[str, str]]:
    events: list[tuple[str, str]] = []
    event = None
    data: list[str] = []
    for line in body.split("\n"):
        if line.startswith("event: "):
            event = line[len("event: "):]
        elif line.startswith("data: "):
            data.append(line[len("data: "):])
        elif line == "" and event is not None:
            events.append((event, "\n".join(data)))
            event = None
            data = []
    return events


class FakeLLM:
    def __init__(self, deltas: list[str], fail_after: int | None = None) -> None:
        self.deltas = deltas
        self.fail_after = fail_after
        self.prompts: list[tuple[str, str]] = []
        self.closed = False

    async def stream(self, system_prompt: str, user_prompt: str):
        self.prompts.append((system_prompt, user_prompt))
        try:
            for index, delta in enumerate(self.deltas):
                if self.fail_after is not None and index >= self.fail_after:
                    raise UpstreamLLMError("Malformed payload in LLM stream.")
                yield delta
        finally:
            self.closed = True


def _result(mode: str = "reflect") -> IngestResult:
    entry = Entry(
        id=7,
        user_id="u1",
        created_at=NOW,
        text="The garden project feels stuck",
        sentiment=-0.33,
        keywords=["garden", "project", "feels", "stuck"],
    )
    return IngestResult(entry=entry, mode=mode)


async def _collect(stream: ReplyStream) -> list[tuple[str, str]]:
    body = "".join([chunk async for chunk in stream.events()])
    return _parse_sse(body)


def test_text_frames_split_on_newlines() -> None:
    assert format_sse_text("delta", "one\r\ntwo\n") == (
        "event: delta\ndata: one\ndata: two\ndata: \n\n"
    )


def test_stream_endpoint_uses_the_fallback_reply(
    client: TestClient, auth_context: tuple[dict[str, str], str]
) -> None:
    headers, user_id = auth_context
    response = client.get(
        "/entry/stream",
        headers=headers,
        params={"text": "test", "mode": "plan"},
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _parse_sse(response.text)
    assert [name for name, _ in events] == ["meta", "delta", "delta", "delta", "end"]
    meta = json.loads(events[0][1])
    assert meta["mode"] == "plan"
    assert meta["entry"]["user_id"] == user_id
    assert meta["related"] is None
    assert events[3][1] == "Ritual → Draft a 24h micro-plan with one measurable outcome."
    assert json.loads(events[4][1]) == {"ok": True}


def test_stream_endpoint_accepts_query_token(
    client: TestClient, auth_context: tuple[dict[str, str], str]
) -> None:
    headers, _ = auth_context
    token = headers["Authorization"].split(" ", 1)[1]
    response = client.get("/entry/stream", params={"text": "hello there", "token": token})
    assert response.status_code == 200
    assert _parse_sse(response.text)[0][0] == "meta"


def test_stream_endpoint_rejects_blank_text(
    client: TestClient, auth_context: tuple[dict[str, str], str]
) -> None:
    headers, _ = auth_context
    response = client.get("/entry/stream", headers=headers, params={"text": "  "})
    assert response.status_code == 400
    assert response.json() == {"error": "text required"}


def test_llm_deltas_are_forwarded_in_order() -> None:
    llm = FakeLLM(["Hello", "", " there.\nNext line"])
    stream = ReplyStream(_result(), llm_client=llm)
    events = asyncio.run(_collect(stream))
    assert [name for name, _ in events] == ["meta", "delta", "delta", "end"]
    assert events[2][1] == " there.\nNext line"
    assert stream.state is StreamState.ENDED
    assert llm.closed
    assert "The garden project feels stuck" in llm.prompts[0][1]


def test_upstream_failure_becomes_an_error_event() -> None:
    llm = FakeLLM(["Hello", "world"], fail_after=1)
    stream = ReplyStream(_result(), llm_client=llm)
    events = asyncio.run(_collect(stream))
    assert [name for name, _ in events] == ["meta", "delta", "error"]
    assert json.loads(events[2][1]) == {"message": "Malformed payload in LLM stream."}
    assert stream.state is StreamState.ERRORED


def test_stream_deadline_is_enforced() -> None:
    stream = ReplyStream(_result(), llm_client=FakeLLM(["Hello"]), max_seconds=-1)
    events = asyncio.run(_collect(stream))
    assert [name for name, _ in events] == ["meta", "error"]
    assert stream.state is StreamState.ERRORED


def test_client_disconnect_stops_the_upstream() -> None:
    checks = []

    async def is_disconnected() -> bool:
        checks.append(True)
        return len(checks) > 1

    llm = FakeLLM(["one", "two", "three"])
    stream = ReplyStream(_result(), llm_client=llm, is_disconnected=is_disconnected)
    events = asyncio.run(_collect(stream))
    assert [name for name, _ in events] == ["meta", "delta"]
    assert stream.state is StreamState.CANCELLED
    assert llm.closed


def test_closing_the_response_cancels_the_upstream(store: InMemoryJournalStore) -> None:
    llm = FakeLLM(["one", "two", "three"])
    result = ingest_entry(store, "u1", "The garden project feels stuck", now=NOW)
    stream = ReplyStream(result, llm_client=llm)

    async def consume_partially() -> list[str]:
        events = stream.events()
        chunks = [await events.__anext__(), await events.__anext__()]
        await events.aclose()
        return chunks

    chunks = asyncio.run(consume_partially())
    assert chunks[0].startswith("event: meta")
    assert chunks[1] == "event: delta\ndata: one\n\n"
    assert stream.state is StreamState.CANCELLED
    assert llm.closed
    assert [entry.id for entry in store.list_recent_entries("u1")] == [result.entry.id]


def test_stream_endpoint_with_llm_client(
    client: TestClient,
    auth_context: tuple[dict[str, str], str],
    monkeypatch,
) -> None:
    headers, _ = auth_context
    monkeypatch.setattr(main, "LLM_CLIENT", FakeLLM(["Breathe.", " Then one step."]))
    response = client.get(
        "/entry/stream", headers=headers, params={"text": "Rough day at work"}
    )
    events = _parse_sse(response.text)
    assert [name for name, _ in events] == ["meta", "delta", "delta", "end"]
    assert "".join(data for name, data in events if name == "delta") == (
        "Breathe. Then one step."
    )


class KeepAliveLLM:
    def __init__(self, pause: float) -> None:
        self.pause = pause
        self.closed = False

    async def stream(self, system_prompt: str, user_prompt: str):
        try:
            while True:
                await asyncio.sleep(self.pause)
                yield ""
        finally:
            self.closed = True


def test_keep_alive_only_upstream_hits_the_deadline() -> None:
    llm = KeepAliveLLM(pause=0.01)
    stream = ReplyStream(_result(), llm_client=llm, max_seconds=0.1)
    events = asyncio.run(asyncio.wait_for(_collect(stream), 2.0))
    assert [name for name, _ in events] == ["meta", "error"]
    assert json.loads(events[1][1]) == {"message": "Reply stream exceeded 0.1 seconds."}
    assert stream.state is StreamState.ERRORED
    assert llm.closed


def test_stalled_upstream_hits_the_deadline() -> None:
    llm = KeepAliveLLM(pause=30.0)
    stream = ReplyStream(_result(), llm_client=llm, max_seconds=0.1)
    events = asyncio.run(asyncio.wait_for(_collect(stream), 2.0))
    assert [name for name, _ in events] == ["meta", "error"]
    assert stream.state is StreamState.ERRORED
    assert llm.closed
