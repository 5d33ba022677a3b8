"""基于单个 JSON 文件的会话存储。

文件格式（version 1）::

    {
      "version": 1,
      "savedAt": "2026-01-01T00:00:00Z",
      "sessions": {
        "<chat key>": {
          "provider": "codex",
          "history": [{"role": "user", "content": "..."}],
          "modelOverrides": {"codex": "gpt-5"},
          "reasoningEffortOverrides": {"codex": "high"}
        }
      }
    }

每次修改后都会整体写入临时文件再 os.replace，崩溃时旧文件不会损坏。
读写失败只记 warning，内存状态继续可用。
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from openshell.domain.models import PROVIDER_NAMES, ChatMessage, ChatSession
from openshell.domain.exceptions import ValidationError
from openshell.infrastructure.logging.logger import log_event

STORE_VERSION = 1
RESET_KEYWORDS = {"default", "reset", "none"}


def normalize_override(value: Optional[str]) -> Optional[str]:
    """空白或 default/reset/none 视为清除。"""

    text = (value or "").strip()
    if not text or text.lower() in RESET_KEYWORDS:
        return None
    return text


class JsonSessionStore:
    def __init__(
        self,
        default_provider: str,
        max_history: int,
        path: str | Path | None = None,
    ):
        if default_provider not in PROVIDER_NAMES:
            raise ValidationError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {default_provider!r}")
        if max_history < 2:
            raise ValidationError(code="INVALID_MAX_HISTORY", message="max_history must be at least 2")
        self._default_provider = default_provider
        self._max_history = max_history
        self._path = Path(path).expanduser().resolve() if path else None
        self._sessions: Dict[str, ChatSession] = {}
        self._load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def session_count(self) -> int:
        return len(self._sessions)

    def keys(self) -> List[str]:
        return list(self._sessions)

    def get_provider(self, chat_key: str) -> str:
        return self._get_or_create(chat_key).provider

    def set_provider(self, chat_key: str, provider: str) -> None:
        if provider not in PROVIDER_NAMES:
            raise ValidationError(
                code="UNKNOWN_PROVIDER",
                message=f"Supported providers: {', '.join(PROVIDER_NAMES)}.",
            )
        self._get_or_create(chat_key).provider = provider
        self._persist()

    def get_model(self, chat_key: str, provider: str) -> Optional[str]:
        return self._get_or_create(chat_key).model_overrides.get(provider)

    def set_model(self, chat_key: str, provider: str, model: Optional[str]) -> None:
        self._set_override(self._get_or_create(chat_key).model_overrides, provider, model)

    def get_reasoning_effort(self, chat_key: str, provider: str) -> Optional[str]:
        return self._get_or_create(chat_key).reasoning_effort_overrides.get(provider)

    def set_reasoning_effort(self, chat_key: str, provider: str, effort: Optional[str]) -> None:
        self._set_override(self._get_or_create(chat_key).reasoning_effort_overrides, provider, effort)

    def get_history(self, chat_key: str) -> List[ChatMessage]:
        session = self._sessions.get(chat_key)
        return list(session.history) if session else []

    def reset(self, chat_key: str) -> None:
        """删除整个会话（历史与 override），其他会话不受影响。"""

        self._sessions.pop(chat_key, None)
        self._persist()

    def append_exchange(self, chat_key: str, user_text: str, assistant_text: str) -> None:
        session = self._get_or_create(chat_key)
        session.history.append(ChatMessage(role="user", content=user_text))
        session.history.append(ChatMessage(role="assistant", content=assistant_text))
        session.history = self._trim_history(session.history)
        self._persist()

    def build_prompt(self, chat_key: str, user_text: str, system_prompt: Optional[str] = None) -> List[ChatMessage]:
        """按 system → 历史 → 新 user 的顺序构造消息列表，不修改已存储的历史。"""

        session = self._get_or_create(chat_key)
        messages: List[ChatMessage] = []
        if system_prompt:
            messages.append(ChatMessage(role="system", content=system_prompt))
        messages.extend(session.history)
        messages.append(ChatMessage(role="user", content=user_text))
        return messages

    def _set_override(self, overrides: Dict[str, str], provider: str, value: Optional[str]) -> None:
        if provider not in PROVIDER_NAMES:
            raise ValidationError(code="UNKNOWN_PROVIDER", message=f"Unknown provider: {provider!r}")
        normalized = normalize_override(value)
        if normalized is None:
            overrides.pop(provider, None)
        else:
            overrides[provider] = normalized
        self._persist()

    def _get_or_create(self, chat_key: str) -> ChatSession:
        session = self._sessions.get(chat_key)
        if session is None:
            session = ChatSession(provider=self._default_provider)
            self._sessions[chat_key] = session
        return session

    def _trim_history(self, history: List[ChatMessage]) -> List[ChatMessage]:
        trimmed = history[-self._max_history:]
        # 首条必须是 user
        while trimmed and trimmed[0].role == "assistant":
            trimmed = trimmed[1:]
        return trimmed

    # ---- 持久化 ----

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log_event(logging.WARNING, "Failed to load session store", {"path": str(self._path)}, error=str(e))
            return
        if not isinstance(raw, dict) or raw.get("version") != STORE_VERSION or not isinstance(raw.get("sessions"), dict):
            log_event(logging.WARNING, "Session store format is invalid", {"path": str(self._path)})
            return
        for chat_key, value in raw["sessions"].items():
            if not isinstance(value, dict):
                continue
            provider = value.get("provider")
            self._sessions[chat_key] = ChatSession(
                provider=provider if provider in PROVIDER_NAMES else self._default_provider,
                history=self._trim_history(self._to_history(value.get("history"))),
                model_overrides=self._to_overrides(value.get("modelOverrides")),
                reasoning_effort_overrides=self._to_overrides(value.get("reasoningEffortOverrides")),
            )

    def _persist(self) -> None:
        if self._path is None:
            return
        obj = {
            "version": STORE_VERSION,
            "savedAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "sessions": {key: self._to_payload(session) for key, session in self._sessions.items()},
        }
        tmp_path = self._path.with_name(f"{self._path.name}.{uuid4().hex}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            log_event(logging.WARNING, "Failed to persist session store", {"path": str(self._path)}, error=str(e))
            tmp_path.unlink(missing_ok=True)

    @staticmethod
    def _to_payload(session: ChatSession) -> Dict[str, Any]:
        return {
            "provider": session.provider,
            "history": [{"role": m.role, "content": m.content} for m in session.history],
            "modelOverrides": dict(session.model_overrides),
            "reasoningEffortOverrides": dict(session.reasoning_effort_overrides),
        }

    @staticmethod
    def _to_history(raw: Any) -> List[ChatMessage]:
        items: List[ChatMessage] = []
        if not isinstance(raw, list):
            return items
        for item in raw:
            if not isinstance(item, dict):
                continue
            role = item.get("role")
            content = item.get("content")
            if role in ("user", "assistant") and isinstance(content, str) and content:
                items.append(ChatMessage(role=role, content=content))
        return items

    @staticmethod
    def _to_overrides(raw: Any) -> Dict[str, str]:
        if not isinstance(raw, dict):
            return {}
        overrides: Dict[str, str] = {}
        for provider in PROVIDER_NAMES:
            value = raw.get(provider)
            if isinstance(value, str) and value.strip():
                overrides[provider] = value.strip()
        return overrides
