import asyncio
import json

import pytest

from openshell.domain.exceptions import EmptyReplyError, NonZeroExitError, ProtocolError
from openshell.domain.models import ChatMessage, ProcessResult, StreamOptions
from openshell.providers import jsonl_runner
from openshell.providers.base import StreamCallbacks
from openshell.providers.claude_client import ClaudeCliClient, extract_assistant_text


def _delta(text):
    return json.dumps({
        "type": "stream_event",
        "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}},
    })


def _assistant(*texts):
    return json.dumps({
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": t} for t in texts] + [{"type": "tool_use"}]},
    })


def _result(text, is_error=False):
    return json.dumps({"type": "result", "result": text, "is_error": is_error})


def _stream(monkeypatch, lines, result):
    events = []
    texts = []

    async def _run(command, args, cwd, stdin_text, on_line, on_stderr=None, timeout=None):
        for line in lines:
            await on_line(line)
        return result

    monkeypatch.setattr(jsonl_runner, "run_jsonl_cli", _run)
    client = ClaudeCliClient("claude")
    callbacks = StreamCallbacks(on_text=texts.append, on_event=events.append)
    coro = client.stream([ChatMessage(role="user", content="hi")], callbacks)
    return coro, events, texts


def test_deltas_then_result(monkeypatch):
    lines = [_delta("Hel"), _delta("lo"), "[debug] noise", _result("Hello!"), _delta("late")]
    coro, events, texts = _stream(monkeypatch, lines, ProcessResult(exit_code=0))
    assert asyncio.run(coro) == "Hello!"
    assert texts == ["Hel", "Hello", "Hello!"]
    assert [e.kind for e in events] == ["text", "text", "text", "done"]


def test_assistant_message_replaces_reply(monkeypatch):
    lines = [_delta("draft"), _assistant(" first ", "second")]
    coro, _, texts = _stream(monkeypatch, lines, ProcessResult(exit_code=0))
    assert asyncio.run(coro) == "first\nsecond"
    assert texts[-1] == "first\nsecond"


def test_error_result_aborts(monkeypatch):
    lines = [_delta("partial"), _result("Credit balance is too low", is_error=True)]
    coro, events, _ = _stream(monkeypatch, lines, ProcessResult(exit_code=1))
    with pytest.raises(ProtocolError, match="Credit balance is too low"):
        asyncio.run(coro)
    assert [e.kind for e in events] == ["text", "error"]


def test_non_zero_exit_is_fatal_even_with_reply(monkeypatch):
    lines = [_delta("text")]
    coro, _, _ = _stream(monkeypatch, lines, ProcessResult(exit_code=1, stderr_tail="\nauth failed\n"))
    with pytest.raises(NonZeroExitError, match="code 1: auth failed"):
        asyncio.run(coro)


def test_empty_reply(monkeypatch):
    coro, _, _ = _stream(monkeypatch, [_result("   ")], ProcessResult(exit_code=0))
    with pytest.raises(EmptyReplyError):
        asyncio.run(coro)


def test_build_args():
    client = ClaudeCliClient("claude", model="sonnet", bypass_approvals=True)
    assert client.build_args(StreamOptions(model="opus", reasoning_effort="high")) == [
        "-p",
        "--verbose",
        "--output-format",
        "stream-json",
        "--include-partial-messages",
        "--dangerously-skip-permissions",
        "--model",
        "opus",
    ]
    assert "--model" not in ClaudeCliClient("claude").build_args()


def test_extract_assistant_text_ignores_non_text_blocks():
    payload = {"message": {"content": [{"type": "thinking", "text": "x"}, {"type": "text", "text": "y"}]}}
    assert extract_assistant_text(payload) == "y"
    assert extract_assistant_text({}) == ""
