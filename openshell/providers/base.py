"""Provider 抽象接口。

上层 ChatService 不直接依赖具体 CLI 的 JSONL 事件格式，而是依赖此协议：

- 每个 CLI 实现一个 ProviderClient（如 CodexCliClient）。
- 负责：渲染 prompt、构造参数、驱动子进程，并把 JSONL 行归类为统一的
  StreamEvent（status/text/done/error）。

这样可以在不改 ChatService 代码的前提下接入更多 CLI。
"""

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from openshell.domain.models import ChatMessage, StreamEvent, StreamOptions


TextCallback = Callable[[str], Union[Awaitable[None], None]]
EventCallback = Callable[[StreamEvent], Union[Awaitable[None], None]]


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """调用同步或异步回调；返回 awaitable 时等待其完成。"""

    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


@dataclass
class StreamCallbacks:
    """调用方提供的回调。

    - on_text: 收到当前完整回复快照时调用。
    - on_status: 收到状态通知（如正在执行命令）时调用。
    - on_event: 收到任意 StreamEvent（含 done/error 终止事件）时调用。
    """

    on_text: Optional[TextCallback] = None
    on_status: Optional[TextCallback] = None
    on_event: Optional[EventCallback] = None


class StreamRun:
    """单次调用的状态机：not_started → streaming → succeeded | failed。

    进入终止状态后不再接受任何事件，保证每次调用恰好一个 done 或 error。
    """

    def __init__(self, callbacks: Optional[StreamCallbacks] = None):
        self._callbacks = callbacks or StreamCallbacks()
        self.state = "not_started"
        self.reply = ""

    @property
    def finished(self) -> bool:
        return self.state in ("succeeded", "failed")

    def start(self) -> None:
        if self.state == "not_started":
            self.state = "streaming"

    async def status(self, text: str) -> None:
        if self.finished:
            return
        self.start()
        await invoke_callback(self._callbacks.on_status, text)
        await invoke_callback(self._callbacks.on_event, StreamEvent(kind="status", text=text))

    async def text(self, snapshot: str) -> None:
        if self.finished:
            return
        self.start()
        self.reply = snapshot
        await invoke_callback(self._callbacks.on_text, snapshot)
        await invoke_callback(self._callbacks.on_event, StreamEvent(kind="text", text=snapshot))

    async def succeed(self, final_text: str) -> str:
        if not self.finished:
            self.state = "succeeded"
            await invoke_callback(self._callbacks.on_event, StreamEvent(kind="done", text=final_text))
        return final_text

    async def fail(self, message: str) -> None:
        if self.finished:
            return
        self.state = "failed"
        await invoke_callback(self._callbacks.on_event, StreamEvent(kind="error", text=message))


class ProviderClient(Protocol):
    """CLI Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/会话存储。
    - stream(messages, callbacks, options): 执行一次调用，返回最终回复文本；
      失败时抛出 ProviderError 的子类。
    - describe(): 启动日志中展示的命令与默认模型。
    """

    name: str

    async def stream(
        self,
        messages: List[ChatMessage],
        callbacks: Optional[StreamCallbacks] = None,
        options: Optional[StreamOptions] = None,
    ) -> str:
        ...

    def describe(self) -> Dict[str, Any]:
        ...


def last_meaningful_line(stderr_tail: str, noise: tuple = ()) -> str:
    """返回 stderr 末尾最后一条非空、非已知噪声的行。"""

    lines = [
        line.strip()
        for line in (stderr_tail or "").split("\n")
        if line.strip() and not any(pattern in line for pattern in noise)
    ]
    return lines[-1] if lines else ""
