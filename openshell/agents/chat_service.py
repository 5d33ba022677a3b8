"""会话编排核心模块。

ask_stream 的执行顺序：获取会话槽位 → 解析 Provider → 构造 prompt →
调用 Provider 流式接口 → 成功后写入历史 → 释放槽位。
同一会话 key 的请求严格串行，不同 key 完全并发。
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Mapping, Optional
from uuid import uuid4

from openshell.domain.exceptions import BusinessError, ValidationError
from openshell.domain.models import PROVIDER_NAMES, AskResult, StreamOptions
from openshell.infrastructure.logging.logger import log_event
from openshell.infrastructure.storage.json_store import JsonSessionStore, normalize_override
from openshell.providers.base import ProviderClient, StreamCallbacks
from openshell.providers.registry import get_provider_config


@dataclass
class _LockEntry:
    lock: asyncio.Lock
    users: int = 0


class ChatLocks:
    """按会话 key 的互斥锁表。

    条目在首次使用时创建，最后一个持有者/等待者离开时删除，表中不会残留空闲 key。
    """

    def __init__(self):
        self._entries: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, chat_key: str) -> bool:
        return chat_key in self._entries

    @asynccontextmanager
    async def hold(self, chat_key: str) -> AsyncIterator[None]:
        entry = self._entries.get(chat_key)
        if entry is None:
            entry = _LockEntry(lock=asyncio.Lock())
            self._entries[chat_key] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(chat_key) is entry:
                del self._entries[chat_key]


class ChatService:
    def __init__(
        self,
        sessions: JsonSessionStore,
        providers: Mapping[str, ProviderClient],
        system_prompt: Optional[str] = None,
    ):
        self._sessions = sessions
        self._providers = dict(providers)
        self._system_prompt = system_prompt
        self._locks = ChatLocks()

    @property
    def locks(self) -> ChatLocks:
        return self._locks

    def available_providers(self) -> List[str]:
        return list(self._providers)

    def get_provider(self, chat_key: str) -> str:
        return self._sessions.get_provider(chat_key)

    def active_provider(self, chat_key: str) -> str:
        """下一次 ask_stream 实际会使用的 Provider（含回退规则，不写入存储）。"""

        name = self._sessions.get_provider(chat_key)
        if name in self._providers or not self._providers:
            return name
        return next(iter(self._providers))

    def set_provider(self, chat_key: str, provider: str) -> str:
        name = (provider or "").strip().lower()
        if name not in PROVIDER_NAMES:
            raise ValidationError(
                code="UNKNOWN_PROVIDER",
                message=f"Supported providers: {', '.join(PROVIDER_NAMES)}.",
            )
        self._require_configured(name)
        self._sessions.set_provider(chat_key, name)
        return name

    def reset(self, chat_key: str) -> None:
        self._sessions.reset(chat_key)

    def get_model(self, chat_key: str, provider: str) -> Optional[str]:
        return self._sessions.get_model(chat_key, provider)

    def set_model(self, chat_key: str, provider: str, model: Optional[str]) -> None:
        self._require_configured(provider)
        self._sessions.set_model(chat_key, provider, model)

    def get_reasoning_effort(self, chat_key: str, provider: str) -> Optional[str]:
        return self._sessions.get_reasoning_effort(chat_key, provider)

    def set_reasoning_effort(self, chat_key: str, provider: str, effort: Optional[str]) -> None:
        """设置 reasoning effort；空值或 default 清除。

        仅支持 effort 的 Provider 可以设置，且取值必须在允许列表内。
        """

        self._require_configured(provider)
        normalized = normalize_override(effort)
        if normalized is not None:
            cfg = get_provider_config(provider)
            normalized = normalized.lower()
            if not cfg.supports_reasoning_effort:
                raise ValidationError(
                    code="EFFORT_UNSUPPORTED",
                    message=f"{cfg.label} does not support reasoning effort.",
                )
            if normalized not in cfg.reasoning_efforts:
                raise ValidationError(
                    code="INVALID_EFFORT",
                    message=f"Unsupported effort '{effort}'. Supported: {', '.join(cfg.reasoning_efforts)}",
                )
        self._sessions.set_reasoning_effort(chat_key, provider, normalized)

    async def ask_stream(
        self,
        chat_key: str,
        user_text: str,
        callbacks: Optional[StreamCallbacks] = None,
    ) -> AskResult:
        """执行一次会话请求。

        Args:
            chat_key: 会话 key
            user_text: 用户输入
            callbacks: 流式回调

        Returns:
            AskResult(provider, reply)

        Raises:
            BusinessError 的各个子类；失败时历史保持不变。
        """
        if not (user_text or "").strip():
            # 空消息写入历史后无法从存储中还原
            raise ValidationError(code="EMPTY_MESSAGE", message="Message text is empty.")
        log_ctx = {"trace_id": f"tr-{uuid4().hex}", "chat_key": chat_key}
        async with self._locks.hold(chat_key):
            start_time = time.monotonic()
            provider_name, provider = self._resolve_provider(chat_key, log_ctx)
            log_ctx["provider"] = provider_name

            messages = self._sessions.build_prompt(chat_key, user_text, self._system_prompt)
            options = StreamOptions(
                model=self._sessions.get_model(chat_key, provider_name),
                reasoning_effort=self._sessions.get_reasoning_effort(chat_key, provider_name),
            )
            log_event(
                logging.INFO,
                "Calling provider",
                log_ctx,
                message_count=len(messages),
                model=options.model,
                reasoning_effort=options.reasoning_effort,
            )
            try:
                reply = await provider.stream(messages, callbacks, options)
            except Exception as e:
                code = e.code if isinstance(e, BusinessError) else type(e).__name__
                log_event(logging.ERROR, "Provider call failed", log_ctx, code=code, error=str(e))
                raise

            self._sessions.append_exchange(chat_key, user_text, reply)
            log_event(
                logging.INFO,
                "Completed chat request",
                log_ctx,
                elapsed_seconds=round(time.monotonic() - start_time, 2),
                reply_chars=len(reply),
            )
            return AskResult(provider=provider_name, reply=reply)

    def _resolve_provider(self, chat_key: str, log_ctx: dict) -> tuple:
        name = self._sessions.get_provider(chat_key)
        provider = self._providers.get(name)
        if provider is not None:
            return name, provider
        if not self._providers:
            raise ValidationError(code="NO_PROVIDERS", message="No LLM providers are available.")
        fallback = next(iter(self._providers))
        log_event(logging.INFO, "Falling back to available provider", log_ctx, selected=name, fallback=fallback)
        self._sessions.set_provider(chat_key, fallback)
        return fallback, self._providers[fallback]

    def _require_configured(self, provider: str) -> None:
        if provider not in self._providers:
            raise ValidationError(code="PROVIDER_NOT_CONFIGURED", message=f"Provider '{provider}' is not configured.")
