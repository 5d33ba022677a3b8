"""CLI prompt 渲染工具。

CLI 子进程只接受一段纯文本，这里把消息列表渲染为带角色标签的对话记录，
末尾留出一个开放的 ASSISTANT 段，引导 CLI 接着回答。
"""

from typing import Iterable

from openshell.domain.models import ChatMessage


ROLE_LABELS = {
    "system": "SYSTEM",
    "user": "USER",
    "assistant": "ASSISTANT",
}


def render_cli_prompt(messages: Iterable[ChatMessage]) -> str:
    body = "\n\n".join(
        f"{ROLE_LABELS.get(m.role, 'USER')}:\n{m.content.strip()}" for m in messages
    )
    return f"{body}\n\nASSISTANT:\n"
