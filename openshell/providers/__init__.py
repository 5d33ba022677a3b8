"""CLI Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口与单次调用状态机 (base)。
- 维护 Provider 静态配置 (registry)。
- 驱动 JSONL 子进程 (jsonl_runner)。
- 提供各 CLI 的具体实现 (codex_client、claude_client)。
"""

import logging
import shutil
from pathlib import Path
from typing import Callable, Dict, Optional

from openshell.config.settings import Settings, settings as default_settings
from openshell.infrastructure.logging.logger import log_event
from openshell.providers.base import ProviderClient
from openshell.providers.claude_client import ClaudeCliClient
from openshell.providers.codex_client import CodexCliClient


def command_exists(command: str) -> bool:
    """命令可在 PATH 中找到，或是一个存在的文件路径。"""

    text = (command or "").strip()
    if not text:
        return False
    if ("/" in text or "\\" in text) and Path(text).expanduser().is_file():
        return True
    return shutil.which(text) is not None


def _build_codex(cfg: Settings) -> ProviderClient:
    return CodexCliClient(
        cfg.codex_command,
        cfg.cli_workdir,
        model=cfg.codex_model,
        bypass_approvals=cfg.cli_bypass_approvals,
        timeout=cfg.cli_timeout,
    )


def _build_claude(cfg: Settings) -> ProviderClient:
    return ClaudeCliClient(
        cfg.claude_command,
        cfg.cli_workdir,
        model=cfg.claude_model,
        bypass_approvals=cfg.cli_bypass_approvals,
        timeout=cfg.cli_timeout,
    )


PROVIDER_FACTORIES: Dict[str, Callable[[Settings], ProviderClient]] = {
    "codex": _build_codex,
    "claude": _build_claude,
}

PROVIDER_COMMANDS: Dict[str, Callable[[Settings], str]] = {
    "codex": lambda cfg: cfg.codex_command,
    "claude": lambda cfg: cfg.claude_command,
}


def create_provider(name: str, cfg: Optional[Settings] = None) -> ProviderClient:
    """根据名称创建 Provider 实例，不检查命令是否存在。"""

    factory = PROVIDER_FACTORIES.get((name or "").lower())
    if factory is None:
        raise KeyError(f"Unknown provider: {name!r}")
    return factory(cfg or default_settings)


def create_provider_registry(cfg: Optional[Settings] = None) -> Dict[str, ProviderClient]:
    """为每个命令可用的 Provider 创建实例，返回按名称索引的查找表。"""

    cfg = cfg or default_settings
    providers: Dict[str, ProviderClient] = {}
    for name, factory in PROVIDER_FACTORIES.items():
        command = PROVIDER_COMMANDS[name](cfg)
        if not command_exists(command):
            log_event(logging.WARNING, "CLI not found; provider disabled", {"provider": name}, command=command)
            continue
        providers[name] = factory(cfg)
        log_event(logging.INFO, "Provider enabled", providers[name].describe())
        if cfg.cli_bypass_approvals:
            log_event(
                logging.WARNING,
                "CLI runs without approval/sandbox checks; unsafe in untrusted environments",
                {"provider": name},
            )
    return providers


__all__ = [
    "ProviderClient",
    "CodexCliClient",
    "ClaudeCliClient",
    "command_exists",
    "create_provider",
    "create_provider_registry",
]
