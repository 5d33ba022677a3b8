"""对外 API 服务模块。

负责把 settings、Provider 查找表与会话存储组装成 ChatService，
供 CLI 与 Telegram Bot 共用。
"""

from typing import Optional

from openshell.agents.chat_service import ChatService
from openshell.config.settings import Settings, settings
from openshell.domain.exceptions import ValidationError
from openshell.infrastructure.logging.logger import logger
from openshell.infrastructure.storage.json_store import JsonSessionStore
from openshell.providers import create_provider_registry


_sessions: Optional[JsonSessionStore] = None
_service: Optional[ChatService] = None


def open_session_store(cfg: Optional[Settings] = None) -> JsonSessionStore:
    cfg = cfg or settings
    return JsonSessionStore(
        default_provider=cfg.default_provider,
        max_history=cfg.max_history,
        path=cfg.session_store_path,
    )


def build_chat_service(cfg: Optional[Settings] = None, sessions: Optional[JsonSessionStore] = None) -> ChatService:
    """创建 ChatService；没有任何可用 Provider 时抛出 ValidationError。"""

    cfg = cfg or settings
    providers = create_provider_registry(cfg)
    if not providers:
        raise ValidationError(code="NO_PROVIDERS", message="No providers are configured.")
    sessions = sessions or open_session_store(cfg)
    logger.info(
        f"Running with providers: {', '.join(providers)}; "
        f"session store: {sessions.path}; restored sessions: {sessions.session_count()}"
    )
    return ChatService(sessions, providers, system_prompt=cfg.system_prompt)


def get_default_service() -> ChatService:
    """获取默认的 ChatService 实例（单例）。"""
    global _sessions, _service
    if _sessions is None:
        _sessions = open_session_store(settings)
    if _service is None:
        _service = build_chat_service(settings, _sessions)
    return _service
