"""统一的对话与流式事件数据模型。

本模块定义了 CLI 桥接管线内部在不同 Provider 之间共享的标准数据结构：

- ChatMessage: 一条对话消息（system/user/assistant）。
- ChatSession: 某个会话 key 下的全部状态（provider、历史、override）。
- StreamEvent: Provider 适配器对外输出的统一事件（status/text/done/error）。
- ProcessResult: 子进程执行器在进程退出时给出的结果。

所有 Provider 适配器（如 CodexCliClient）都必须只依赖这些模型，
并负责在各自的 JSONL 事件格式和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Tuple


# 目前支持的 Provider 标识，顺序即默认的回退顺序
PROVIDER_NAMES: Tuple[str, ...] = ("codex", "claude")

# 对话消息角色
Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息，追加到历史后不再修改。"""

    role: Role
    content: str


@dataclass
class ChatSession:
    """单个会话 key 的状态。

    - provider: 当前选中的 Provider。
    - history: 按插入顺序保存的消息，长度受 max_history 限制，首条总是 user。
    - model_overrides / reasoning_effort_overrides: 按 Provider 保存的覆盖值，
      缺省表示使用 Provider 默认值。
    """

    provider: str
    history: List[ChatMessage] = field(default_factory=list)
    model_overrides: Dict[str, str] = field(default_factory=dict)
    reasoning_effort_overrides: Dict[str, str] = field(default_factory=dict)


StreamEventKind = Literal["status", "text", "done", "error"]


@dataclass(frozen=True)
class StreamEvent:
    """Provider 适配器产生的统一流式事件。

    kind:
        - "status": 过程状态（如正在执行某条命令），不影响回复文本。
        - "text": 当前完整回复的快照，而不是增量。
        - "done": 终止事件，携带最终回复。
        - "error": 终止事件，携带错误信息，之后不会再有事件。
    """

    kind: StreamEventKind
    text: str = ""


@dataclass(frozen=True)
class ProcessResult:
    """子进程退出结果。执行器本身不解释退出码。"""

    exit_code: int
    signal: Optional[str] = None
    stderr_tail: str = ""


@dataclass(frozen=True)
class StreamOptions:
    """单次调用的可选参数，缺省时使用 Provider 自身配置。"""

    model: Optional[str] = None
    reasoning_effort: Optional[str] = None


@dataclass(frozen=True)
class AskResult:
    provider: str
    reply: str
