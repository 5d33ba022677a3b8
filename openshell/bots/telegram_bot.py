"""Telegram 聊天桥接。

把 Telegram 的文本消息交给 ChatService，并通过 StreamEditController
节流地编辑一条占位消息来展示流式回复。每个 update 在独立 task 中处理，
不同聊天并发执行，同一聊天由 ChatService 串行化。
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from openshell.agents.chat_service import ChatService
from openshell.bots.telegram_client import TelegramClient
from openshell.domain.exceptions import ApiError, BusinessError
from openshell.domain.models import PROVIDER_NAMES
from openshell.infrastructure.logging.logger import log_event, logger
from openshell.infrastructure.storage.json_store import normalize_override
from openshell.providers.base import StreamCallbacks
from openshell.providers.registry import get_provider_config
from openshell.streaming import StreamEditController, truncate_for_platform

MESSAGE_LIMIT = 4096
REPLY_CONTEXT_LIMIT = 1200
POLL_RETRY_SECONDS = 3.0
STOP_GRACE_SECONDS = 5.0

HELP = "\n".join([
    "OpenShell (Telegram)",
    "/model codex|claude                              - switch provider",
    "/model [provider] <model|default> [effort|default] - set model / effort override",
    "/reset                                           - clear this chat's history",
    "/help                                            - show this help",
])

MODEL_USAGE = "Usage: /model [codex|claude] <model|default> [effort|default]"


def chat_key_for(chat_id: Any) -> str:
    return f"telegram:{chat_id}"


def build_prompt_with_reply_context(text: str, reply: Optional[Dict[str, Any]]) -> str:
    """用户回复了某条消息时，把被回复的内容作为上下文放在前面。"""

    if not reply:
        return text
    reply_text = (reply.get("text") or reply.get("caption") or "").strip()
    if not reply_text:
        return text

    sender_info = reply.get("from") or {}
    if sender_info.get("username"):
        sender = f"@{sender_info['username']}"
    elif sender_info.get("first_name") or sender_info.get("last_name"):
        sender = f"{sender_info.get('first_name', '')} {sender_info.get('last_name', '')}".strip()
    elif sender_info.get("id") is not None:
        sender = str(sender_info["id"])
    else:
        sender = "unknown"

    if len(reply_text) > REPLY_CONTEXT_LIMIT:
        reply_text = reply_text[:REPLY_CONTEXT_LIMIT] + "..."
    return "\n".join([
        "[Reply Context]",
        f"From: {sender}",
        f"Message: {reply_text}",
        "",
        "[User Message]",
        text,
    ])


class TelegramBot:
    def __init__(
        self,
        client: TelegramClient,
        chat_service: ChatService,
        edit_interval: float,
        runtime_models: Optional[Dict[str, Optional[str]]] = None,
    ):
        self._client = client
        self._chat = chat_service
        self._edit_interval = edit_interval
        self._runtime_models = runtime_models or {}
        self._bot_user_id: Optional[int] = None
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._poll: Optional[asyncio.Task] = None

    async def run(self, poll_timeout: int = 30) -> None:
        """长轮询 getUpdates，直到 request_stop() 或 stop() 被调用。"""

        me = await self._client.get_me()
        self._bot_user_id = me.get("id")
        logger.info(f"Telegram bot starting as @{me.get('username')}")
        offset: Optional[int] = None
        while not self._stopping.is_set():
            self._poll = asyncio.create_task(self._client.get_updates(offset=offset, timeout=poll_timeout))
            try:
                updates = await self._poll
            except asyncio.CancelledError:
                # request_stop 只取消轮询请求本身
                if self._stopping.is_set():
                    break
                raise
            except BusinessError as e:
                log_event(logging.WARNING, "getUpdates failed", {}, error=e.message)
                try:
                    await asyncio.wait_for(self._stopping.wait(), POLL_RETRY_SECONDS)
                except asyncio.TimeoutError:
                    pass
                continue
            finally:
                self._poll = None
            for update in updates:
                offset = update["update_id"] + 1
                self._spawn(self.handle_update(update))
        logger.info("Telegram bot polling stopped")

    def request_stop(self) -> None:
        """停止轮询并取消进行中的 update（可作为信号处理函数）。

        被取消的 update 会终止其 CLI 子进程。
        """

        self._stopping.set()
        if self._poll is not None:
            self._poll.cancel()
        for task in list(self._tasks):
            task.cancel()

    async def stop(self, grace: float = STOP_GRACE_SECONDS) -> None:
        """取消所有进行中的 update，最多等待 grace 秒让子进程退出。"""

        self.request_stop()
        pending = set(self._tasks)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=grace)
            if still_running:
                log_event(logging.WARNING, "Update tasks did not finish before shutdown", {}, count=len(still_running))

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_event(logging.ERROR, "Update handling failed", {}, error=str(exc))

    async def handle_update(self, update: Dict[str, Any]) -> None:
        message = update.get("message")
        if not isinstance(message, dict):
            return
        sender = message.get("from") or {}
        if not sender or sender.get("is_bot") or sender.get("id") == self._bot_user_id:
            return
        text = (message.get("text") or "").strip()
        if not text:
            return
        if text.startswith("/"):
            await self.handle_command(message, text)
            return
        await self.handle_text(message, text)

    async def handle_command(self, message: Dict[str, Any], text: str) -> None:
        chat_id = message["chat"]["id"]
        parts = text.split()
        command = parts[0][1:].split("@", 1)[0].lower()
        args = parts[1:]
        chat_key = chat_key_for(chat_id)
        try:
            if command in ("start", "help"):
                reply = HELP
            elif command == "reset":
                self._chat.reset(chat_key)
                reply = "Chat history cleared."
            elif command == "model":
                reply = self._model_command(chat_key, args)
            else:
                return
        except BusinessError as e:
            reply = e.message
        await self._client.send_message(chat_id, truncate_for_platform(reply, MESSAGE_LIMIT))

    def _model_command(self, chat_key: str, args: List[str]) -> str:
        explicit = bool(args) and args[0].lower() in PROVIDER_NAMES
        if explicit and len(args) == 1:
            changed = self._chat.set_provider(chat_key, args[0])
            return f"Provider switched to '{changed}'."

        target = args[0].lower() if explicit else self._chat.get_provider(chat_key)
        if target not in self._chat.available_providers():
            return f"Provider '{target}' is not configured."
        cfg = get_provider_config(target)

        values = args[1:] if explicit else args
        if not values:
            selected = self._chat.get_model(chat_key, target)
            lines = [
                f"provider={target}",
                f"chat model={selected or '(no override)'}",
                f"default model={self._runtime_models.get(target) or '(CLI default)'}",
            ]
            if cfg.supports_reasoning_effort:
                effort = self._chat.get_reasoning_effort(chat_key, target)
                lines.append(f"chat effort={effort or '(no override)'}")
            lines.append(MODEL_USAGE)
            return "\n".join(lines)
        if len(values) > 2:
            return MODEL_USAGE

        model_arg = values[0]
        effort_arg = values[1] if len(values) > 1 else None

        if normalize_override(model_arg) is None:
            if explicit:
                self._chat.set_provider(chat_key, target)
            self._chat.set_model(chat_key, target, None)
            self._chat.set_reasoning_effort(chat_key, target, None)
            return f"provider={target} model/effort overrides cleared."

        lines = []
        if cfg.supports_reasoning_effort:
            if effort_arg is not None:
                # effort 校验失败时直接抛出，模型也不会被修改
                self._chat.set_reasoning_effort(chat_key, target, effort_arg)
        else:
            self._chat.set_reasoning_effort(chat_key, target, None)
            if effort_arg is not None:
                lines.append(f"{cfg.label} does not support effort levels; '{effort_arg}' ignored.")

        if explicit:
            self._chat.set_provider(chat_key, target)
        self._chat.set_model(chat_key, target, model_arg)
        lines.insert(0, f"provider={target} model set to '{model_arg}'.")
        if cfg.supports_reasoning_effort:
            effort = self._chat.get_reasoning_effort(chat_key, target)
            lines.append(f"effort={effort or '(no override)'}")
        return "\n".join(lines)

    async def handle_text(self, message: Dict[str, Any], text: str) -> None:
        chat_id = message["chat"]["id"]
        chat_key = chat_key_for(chat_id)
        prompt = build_prompt_with_reply_context(text, message.get("reply_to_message"))
        selected = self._chat.active_provider(chat_key)
        sent = await self._client.send_message(chat_id, f"[{selected}] generating...")
        message_id = sent["message_id"]

        async def publish(value: str) -> None:
            await self._edit(chat_id, message_id, value)

        editor = StreamEditController(publish, self._edit_interval)
        has_text = False

        async def on_status(status: str) -> None:
            if has_text:
                return
            editor.queue(truncate_for_platform(f"[{selected}] {status}", MESSAGE_LIMIT))

        async def on_text(partial: str) -> None:
            nonlocal has_text
            has_text = bool(partial.strip())
            editor.queue(truncate_for_platform(f"[{selected}] {partial}", MESSAGE_LIMIT))

        try:
            await self._client.send_chat_action(chat_id)
            result = await self._chat.ask_stream(
                chat_key,
                prompt,
                StreamCallbacks(on_text=on_text, on_status=on_status),
            )
            final = f"[{result.provider}] {result.reply}"
        except Exception as e:
            error = e.message if isinstance(e, BusinessError) else str(e)
            final = f"error: {error or 'request failed'}"
        await editor.flush(truncate_for_platform(final, MESSAGE_LIMIT))

    async def _edit(self, chat_id: int, message_id: int, text: str) -> None:
        try:
            await self._client.edit_message_text(chat_id, message_id, text)
        except ApiError as e:
            if "message is not modified" in e.message:
                return
            if "message is too long" in e.message:
                # Telegram 按 UTF-16 计长，字符数未超限也可能被拒
                await self._client.edit_message_text(
                    chat_id, message_id, truncate_for_platform(text, MESSAGE_LIMIT // 2)
                )
                return
            raise
