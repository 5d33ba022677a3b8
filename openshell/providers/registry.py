"""Provider 静态配置。

本模块集中描述每个 CLI Provider 不随部署变化的事实：

- label: 展示名称。
- supports_reasoning_effort: 是否接受 reasoning effort 参数。
- reasoning_efforts: 允许的 effort 取值。

命令路径、默认模型等部署相关的值来自 settings。
"""

from dataclasses import dataclass
from typing import Mapping, Tuple


REASONING_EFFORT_LEVELS: Tuple[str, ...] = ("none", "minimal", "low", "medium", "high", "xhigh")


@dataclass(frozen=True)
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    label: str
    supports_reasoning_effort: bool
    reasoning_efforts: Tuple[str, ...] = ()


CODEX_CONFIG = ProviderConfig(
    name="codex",
    label="Codex CLI",
    supports_reasoning_effort=True,
    reasoning_efforts=REASONING_EFFORT_LEVELS,
)

CLAUDE_CONFIG = ProviderConfig(
    name="claude",
    label="Claude CLI",
    supports_reasoning_effort=False,
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "codex": CODEX_CONFIG,
    "claude": CLAUDE_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = (name or "").strip().lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
