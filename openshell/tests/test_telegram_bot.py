import asyncio

import pytest

from openshell.agents.chat_service import ChatService
from openshell.bots.telegram_bot import MESSAGE_LIMIT, TelegramBot, build_prompt_with_reply_context, chat_key_for
from openshell.domain.exceptions import ApiError, EmptyReplyError
from openshell.infrastructure.storage.json_store import JsonSessionStore
from openshell.providers.base import StreamRun


class FakeTelegramClient:
    def __init__(self, edit_errors=None):
        self.sent = []
        self.edits = []
        self.actions = []
        self._edit_errors = list(edit_errors or [])

    async def send_message(self, chat_id, text, reply_to_message_id=None):
        self.sent.append((chat_id, text))
        return {"message_id": len(self.sent)}

    async def edit_message_text(self, chat_id, message_id, text):
        if self._edit_errors:
            raise self._edit_errors.pop(0)
        self.edits.append((chat_id, message_id, text))

    async def send_chat_action(self, chat_id, action="typing"):
        self.actions.append(chat_id)


class FakeProvider:
    def __init__(self, name, chunks=("Hel", "Hello"), fail=None):
        self.name = name
        self.chunks = chunks
        self.fail = fail
        self.prompts = []

    async def stream(self, messages, callbacks=None, options=None):
        self.prompts.append(messages[-1].content)
        run = StreamRun(callbacks)
        await run.status("running: ls")
        for chunk in self.chunks:
            await run.text(chunk)
        if self.fail is not None:
            await run.fail(self.fail.message)
            raise self.fail
        return await run.succeed(self.chunks[-1])


def _bot(providers, client=None):
    store = JsonSessionStore("codex", 10)
    service = ChatService(store, {p.name: p for p in providers})
    client = client or FakeTelegramClient()
    return TelegramBot(client, service, edit_interval=0.01, runtime_models={"codex": "gpt-5"}), client, service


def _update(text, chat_id=5, user_id=9, **message):
    message.update({"chat": {"id": chat_id}, "from": {"id": user_id}, "text": text})
    return {"update_id": 1, "message": message}


def test_text_message_streams_into_placeholder():
    bot, client, service = _bot([FakeProvider("codex")])
    asyncio.run(bot.handle_update(_update("hi")))
    assert client.sent == [(5, "[codex] generating...")]
    assert client.actions == [5]
    assert client.edits[-1] == (5, 1, "[codex] Hello")
    assert [m.content for m in service._sessions.get_history("telegram:5")] == ["hi", "Hello"]


def test_provider_failure_is_shown_in_placeholder():
    error = EmptyReplyError(code="EMPTY_REPLY", message="codex CLI produced no content")
    bot, client, service = _bot([FakeProvider("codex", fail=error)])
    asyncio.run(bot.handle_update(_update("hi")))
    assert client.edits[-1] == (5, 1, "error: codex CLI produced no content")
    assert service._sessions.get_history("telegram:5") == []


def test_bot_and_empty_messages_are_ignored():
    provider = FakeProvider("codex")
    bot, client, _ = _bot([provider])
    update = _update("hi")
    update["message"]["from"]["is_bot"] = True

    async def scenario():
        await bot.handle_update(update)
        await bot.handle_update(_update("   "))
        await bot.handle_update({"update_id": 2})

    asyncio.run(scenario())
    assert client.sent == []
    assert provider.prompts == []


def test_reply_context_is_prepended():
    provider = FakeProvider("codex")
    bot, _, _ = _bot([provider])
    reply = {"text": "earlier answer", "from": {"username": "someone"}}
    asyncio.run(bot.handle_update(_update("explain", reply_to_message=reply)))
    assert provider.prompts == [
        "[Reply Context]\nFrom: @someone\nMessage: earlier answer\n\n[User Message]\nexplain"
    ]


def test_build_prompt_with_reply_context_clips_long_text():
    prompt = build_prompt_with_reply_context("q", {"text": "x" * 2000, "from": {"id": 3}})
    assert "From: 3" in prompt
    assert "x" * 1200 + "..." in prompt
    assert build_prompt_with_reply_context("q", None) == "q"
    assert build_prompt_with_reply_context("q", {"text": "  "}) == "q"


def test_model_command_switch_and_overrides():
    bot, client, service = _bot([FakeProvider("codex"), FakeProvider("claude")])
    key = chat_key_for(5)

    async def scenario():
        await bot.handle_update(_update("/model claude"))
        await bot.handle_update(_update("/model codex gpt-x high"))
        await bot.handle_update(_update("/model"))
        await bot.handle_update(_update("/model codex gpt-y ultra"))
        await bot.handle_update(_update("/model claude sonnet high"))

    asyncio.run(scenario())
    replies = [text for _, text in client.sent]
    assert replies[0] == "Provider switched to 'claude'."
    assert replies[1].startswith("provider=codex model set to 'gpt-x'.")
    assert "chat model=gpt-x" in replies[2]
    assert "chat effort=high" in replies[2]
    assert "default model=gpt-5" in replies[2]
    assert replies[3].startswith("Unsupported effort 'ultra'")
    assert "'high' ignored" in replies[4]
    assert service.get_model(key, "codex") == "gpt-x"
    assert service.get_reasoning_effort(key, "codex") == "high"
    assert service.get_provider(key) == "claude"
    assert service.get_model(key, "claude") == "sonnet"


def test_model_default_clears_overrides():
    bot, client, service = _bot([FakeProvider("codex")])
    key = chat_key_for(5)
    service.set_model(key, "codex", "gpt-x")
    service.set_reasoning_effort(key, "codex", "low")
    asyncio.run(bot.handle_update(_update("/model default")))
    assert client.sent[-1][1] == "provider=codex model/effort overrides cleared."
    assert service.get_model(key, "codex") is None
    assert service.get_reasoning_effort(key, "codex") is None


def test_model_command_rejects_unconfigured_provider():
    bot, client, service = _bot([FakeProvider("codex")])
    asyncio.run(bot.handle_update(_update("/model claude")))
    assert client.sent[-1][1] == "Provider 'claude' is not configured."
    assert service.get_provider(chat_key_for(5)) == "codex"


def test_reset_and_help_commands():
    bot, client, service = _bot([FakeProvider("codex")])
    service._sessions.append_exchange(chat_key_for(5), "q", "a")

    async def scenario():
        await bot.handle_update(_update("/reset@openshell_bot"))
        await bot.handle_update(_update("/help"))
        await bot.handle_update(_update("/unknown"))

    asyncio.run(scenario())
    assert client.sent[0][1] == "Chat history cleared."
    assert client.sent[1][1].startswith("OpenShell (Telegram)")
    assert len(client.sent) == 2
    assert service._sessions.get_history(chat_key_for(5)) == []


def test_not_modified_edit_is_tolerated():
    not_modified = ApiError(code="API_ERROR", message="Bad Request: message is not modified")
    client = FakeTelegramClient(edit_errors=[not_modified])
    bot, _, service = _bot([FakeProvider("codex")], client=client)
    asyncio.run(bot.handle_update(_update("hi")))
    assert client.edits == []
    assert len(service._sessions.get_history("telegram:5")) == 2


def test_too_long_edit_is_retried_shorter():
    too_long = ApiError(code="API_ERROR", message="Bad Request: message is too long")
    client = FakeTelegramClient(edit_errors=[too_long])
    bot, _, _ = _bot([FakeProvider("codex", chunks=("y" * 3000,))], client=client)
    asyncio.run(bot.handle_update(_update("hi")))
    assert len(client.edits) == 1
    assert len(client.edits[0][2]) <= MESSAGE_LIMIT // 2
    assert client.edits[0][2].endswith("...[truncated]")


def test_other_edit_errors_propagate():
    forbidden = ApiError(code="API_ERROR", message="Forbidden: bot was blocked by the user")
    client = FakeTelegramClient(edit_errors=[forbidden])
    bot, _, _ = _bot([FakeProvider("codex")], client=client)
    with pytest.raises(ApiError, match="blocked"):
        asyncio.run(bot.handle_update(_update("hi")))


class PollingClient(FakeTelegramClient):
    def __init__(self, updates=()):
        super().__init__()
        self._batches = [list(updates)]

    async def get_me(self):
        return {"id": 1, "username": "openshell_bot"}

    async def get_updates(self, offset=None, timeout=30):
        if self._batches:
            return self._batches.pop(0)
        # 模拟长轮询一直挂起
        await asyncio.Event().wait()


class HangingProvider(FakeProvider):
    def __init__(self, name):
        super().__init__(name)
        self.cancelled = False

    async def stream(self, messages, callbacks=None, options=None):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def test_request_stop_ends_long_polling_and_cancels_updates():
    provider = HangingProvider("codex")
    client = PollingClient(updates=[_update("hi")])
    bot, _, service = _bot([provider], client=client)

    async def scenario():
        runner = asyncio.create_task(bot.run(poll_timeout=30))
        await asyncio.sleep(0.05)
        assert len(bot._tasks) == 1
        bot.request_stop()
        await asyncio.wait_for(runner, timeout=1)
        await bot.stop(grace=1)

    asyncio.run(scenario())
    assert provider.cancelled
    assert bot._tasks == set()
    assert len(service.locks) == 0
    assert service._sessions.get_history("telegram:5") == []


def test_stop_cancels_hanging_update_within_grace():
    provider = HangingProvider("codex")
    bot, client, service = _bot([provider])

    async def scenario():
        bot._spawn(bot.handle_update(_update("hi")))
        await asyncio.sleep(0.02)
        await asyncio.wait_for(bot.stop(grace=1), timeout=2)

    asyncio.run(scenario())
    assert provider.cancelled
    assert client.sent == [(5, "[codex] generating...")]
    assert bot._tasks == set()
    assert len(service.locks) == 0


def test_placeholder_names_fallback_provider():
    bot, client, _ = _bot([FakeProvider("claude")])
    asyncio.run(bot.handle_update(_update("hi")))
    assert client.sent == [(5, "[claude] generating...")]
    assert client.edits[-1] == (5, 1, "[claude] Hello")
