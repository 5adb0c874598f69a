from __future__ import annotations

import json

import pytest

from upsync.errors import ErrorKind, SyncError
from upsync.models import AnthropicClient, StaticCompletionClient


def rate_limited(retry_after: float | None = None) -> SyncError:
    return SyncError("slow down", kind=ErrorKind.RATE_LIMIT, details={"retry_after": retry_after})


def test_rate_limit_is_retried_with_exponential_backoff() -> None:
    sleeps: list[float] = []
    client = StaticCompletionClient(rate_limited(), rate_limited(), "ok", sleep=sleeps.append, retry_base_delay=60)

    assert client.complete("prompt") == "ok"
    assert sleeps == [60, 120]
    assert client.prompts == ["prompt"] * 3


def test_retries_are_bounded_and_last_error_propagates() -> None:
    sleeps: list[float] = []
    errors = [rate_limited() for _ in range(4)]
    client = StaticCompletionClient(*errors, "never", sleep=sleeps.append, retry_base_delay=1, max_retries=3)

    with pytest.raises(SyncError) as excinfo:
        client.complete("prompt")

    assert excinfo.value is errors[-1]
    assert sleeps == [1, 2, 4]
    assert len(client.prompts) == 4


def test_retry_after_hint_replaces_base_delay() -> None:
    sleeps: list[float] = []
    client = StaticCompletionClient(rate_limited(retry_after=5), "ok", sleep=sleeps.append)

    assert client.complete("prompt") == "ok"
    assert sleeps == [5]


def test_other_errors_are_not_retried() -> None:
    sleeps: list[float] = []
    failure = SyncError("boom", kind=ErrorKind.TRANSPORT)
    client = StaticCompletionClient(failure, "ok", sleep=sleeps.append)

    with pytest.raises(SyncError) as excinfo:
        client.complete("prompt")

    assert excinfo.value is failure
    assert sleeps == []
    assert len(client.prompts) == 1


def test_deadline_stops_retrying_early() -> None:
    sleeps: list[float] = []
    client = StaticCompletionClient(
        rate_limited(),
        rate_limited(),
        "ok",
        sleep=sleeps.append,
        clock=lambda: 1000.0,
        retry_base_delay=60,
    )

    with pytest.raises(SyncError) as excinfo:
        client.complete("prompt", deadline=100)

    assert excinfo.value.kind is ErrorKind.RATE_LIMIT
    assert sleeps == [60]


def _messages_response(*blocks: dict) -> str:
    return json.dumps({"id": "msg_1", "type": "message", "role": "assistant", "content": list(blocks)})


def test_anthropic_client_joins_text_blocks() -> None:
    payloads: list[dict] = []

    def transport(payload: dict) -> str:
        payloads.append(payload)
        return _messages_response(
            {"type": "text", "text": "TITLE: Hello"},
            {"type": "tool_use", "id": "t1", "name": "noop", "input": {}},
            {"type": "text", "text": "\n---"},
        )

    client = AnthropicClient(model="claude-test", max_tokens=100, transport=transport)

    assert client.complete("prompt") == "TITLE: Hello\n---"
    assert payloads == [
        {"model": "claude-test", "max_tokens": 100, "messages": [{"role": "user", "content": "prompt"}]}
    ]


def test_anthropic_rate_limit_error_body_is_retried() -> None:
    responses = [
        json.dumps({"type": "error", "error": {"type": "rate_limit_error", "message": "too many"}}),
        _messages_response({"type": "text", "text": "done"}),
    ]
    sleeps: list[float] = []
    client = AnthropicClient(transport=lambda _payload: responses.pop(0), sleep=sleeps.append, retry_base_delay=2)

    assert client.complete("prompt") == "done"
    assert sleeps == [2]


def test_anthropic_empty_response_is_a_transport_error() -> None:
    client = AnthropicClient(transport=lambda _payload: _messages_response())

    with pytest.raises(SyncError) as excinfo:
        client.complete("prompt")

    assert excinfo.value.kind is ErrorKind.TRANSPORT


def test_anthropic_plain_text_response_is_passed_through() -> None:
    client = AnthropicClient(transport=lambda _payload: "TITLE: raw")

    assert client.complete("prompt") == "TITLE: raw"


def test_anthropic_requires_key_for_default_transport(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CLAUDE_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

    with pytest.raises(SyncError) as excinfo:
        AnthropicClient()

    assert excinfo.value.kind is ErrorKind.CONFIG
