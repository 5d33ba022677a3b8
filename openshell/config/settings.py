"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("OPENSHELL_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- Telegram ----
    telegram_bot_token: Optional[str] = Field(default=None, description="Telegram Bot Token，仅 run 命令需要")
    telegram_api_base: str = Field(default="https://api.telegram.org", description="Bot API 基础URL")
    telegram_poll_timeout: int = Field(default=30, ge=0, le=120, description="getUpdates 长轮询秒数")

    # ---- Provider 相关配置 ----
    default_provider: str = Field(default="codex", description="新会话默认使用的 Provider：codex 或 claude")
    codex_command: str = Field(default="codex", description="Codex CLI 命令")
    codex_model: Optional[str] = Field(default=None, description="Codex 默认模型，空表示 CLI 默认值")
    claude_command: str = Field(default="claude", description="Claude CLI 命令")
    claude_model: Optional[str] = Field(default=None, description="Claude 默认模型，空表示 CLI 默认值")
    cli_workdir: str = Field(default_factory=lambda: str(Path.cwd()), description="CLI 子进程工作目录")
    cli_bypass_approvals: bool = Field(
        default=True,
        description="是否让 CLI 跳过审批/沙箱（不安全，仅限可信环境）",
    )
    cli_timeout: float = Field(default=0.0, ge=0.0, description="单次 CLI 调用超时（秒），0 表示不限制")

    # ---- 会话 ----
    max_history: int = Field(default=20, ge=2, le=200, description="每个会话保留的最大历史消息数")
    system_prompt: Optional[str] = Field(default=None, description="系统提示词，空表示不使用")
    session_store_path: str = Field(default=".openshell/session-store.json", description="会话存储文件路径")
    stream_edit_interval_ms: int = Field(default=900, ge=200, le=10000, description="流式编辑最小间隔（毫秒）")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("default_provider", mode="before")
    @classmethod
    def normalize_provider(cls, v: Any) -> str:
        return "claude" if str(v or "").strip().lower() == "claude" else "codex"

    @field_validator("telegram_bot_token", "codex_model", "claude_model", "system_prompt", mode="before")
    @classmethod
    def blank_as_missing(cls, v: Optional[str]) -> Optional[str]:
        return _blank_to_none(v)

    @field_validator("session_store_path", mode="before")
    @classmethod
    def resolve_store_path(cls, v: Optional[str]) -> str:
        raw = _blank_to_none(v) or ".openshell/session-store.json"
        return str(Path(raw).expanduser().resolve())

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v: Any) -> str:
        return str(v or "INFO").strip().upper()

    @property
    def stream_edit_interval(self) -> float:
        """流式编辑最小间隔（秒）。"""

        return self.stream_edit_interval_ms / 1000.0

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
