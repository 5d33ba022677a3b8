"""流式编辑节流器。

把高频的回复快照合并为低频的 publish 调用：

- queue(text): 只保留最新的一条待发布值；轮到发布时若与上次已发布值相同则跳过。
- flush(text): 设置最终值并等待发布完成，即使与上次发布值相同也会再发一次。
- 任意两次 publish 之间至少间隔 interval 秒。

状态只有 idle / draining 两种，draining 期间由单个后台任务循环消费
待发布槽位，不会递归调度。
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from openshell.infrastructure.logging.logger import log_event

Publish = Callable[[str], Awaitable[None]]

TRUNCATE_SUFFIX = "\n\n...[truncated]"


class StreamEditController:
    def __init__(self, publish: Publish, interval: float):
        self._publish = publish
        self._interval = max(0.0, interval)
        self._pending: Optional[str] = None
        self._force = False
        self._last_applied: Optional[str] = None
        self._last_published_at: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> str:
        return "draining" if self._task is not None and not self._task.done() else "idle"

    @property
    def last_applied(self) -> Optional[str]:
        return self._last_applied

    def queue(self, text: str) -> None:
        if self._force:
            # flush 的最终值优先
            return
        if not text:
            return
        # 与已发布值是否重复在发布前再判断，发布中途排入的值不能丢
        self._pending = text
        self._ensure_draining()

    async def flush(self, text: str) -> None:
        self._pending = text
        self._force = True
        task = self._ensure_draining()
        await task

    def _ensure_draining(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain())
            self._task.add_done_callback(self._on_drain_done)
        return self._task

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self._pending is not None:
            if self._last_published_at is not None:
                wait = self._interval - (loop.time() - self._last_published_at)
                if wait > 0:
                    await asyncio.sleep(wait)
            if self._pending is None:
                break
            # 等待期间到达的更新只保留最新一条
            text, self._pending = self._pending, None
            forced, self._force = self._force, False
            if not forced and (not text or text == self._last_applied):
                continue
            try:
                await self._publish(text)
            except Exception as e:
                if forced:
                    raise
                log_event(logging.WARNING, "Stream edit publish failed", {}, error=str(e))
                continue
            finally:
                self._last_published_at = loop.time()
            self._last_applied = text

    @staticmethod
    def _on_drain_done(task: asyncio.Task) -> None:
        # flush 会 await 同一个 task 并拿到异常；这里只防止未取回异常的告警
        if not task.cancelled():
            task.exception()


def truncate_for_platform(text: str, limit: int, suffix: str = TRUNCATE_SUFFIX) -> str:
    """超过 limit 时截断并追加可见的截断标记，结果长度不超过 limit。"""

    if len(text) <= limit:
        return text
    head = max(0, limit - len(suffix))
    return f"{text[:head]}{suffix}"[:limit]
