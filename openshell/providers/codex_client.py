"""Codex CLI Provider 适配器。

本模块负责：

1. 接收统一的 ChatMessage 列表，渲染为 CLI prompt。
2. 构造 `codex exec --json` 的参数（可选模型与 reasoning effort）。
3. 驱动 JSONL 执行器，把 Codex 的事件归类为状态、文本快照或结构化错误。
4. 根据退出码与已生成的回复决定成功或失败。

Codex 的部分版本会在已经输出完整回复后仍以非零码退出，此时若没有
结构化错误，就记录 warning 并返回已生成的回复。
"""

import json
import logging
from typing import Any, Dict, List, Optional

from openshell.domain.exceptions import EmptyReplyError, NonZeroExitError, ProtocolError, ProviderError
from openshell.domain.models import ChatMessage, ProcessResult, StreamOptions
from openshell.infrastructure.logging.logger import log_event
from openshell.prompts import render_cli_prompt
from openshell.providers import jsonl_runner
from openshell.providers.base import StreamCallbacks, StreamRun, last_meaningful_line

STDERR_NOISE = ("rollout::list: state db missing rollout path for thread",)


def extract_error_message(raw: Any) -> str:
    """优先取 JSON 错误体中的 detail/message，否则返回原始文本。"""

    text = str(raw or "").strip()
    if not text:
        return ""
    try:
        parsed = json.loads(text)
    except ValueError:
        return text
    if isinstance(parsed, dict):
        for key in ("detail", "message"):
            value = parsed.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return text


class CodexEventParser:
    """逐行解析 Codex JSONL 事件。

    - reply 保存在 StreamRun 中，随 agent_message / delta 更新。
    - error_message 记录最近一次结构化错误（error 事件不终止调用）。
    - turn.failed 为终止错误，turn.completed 为终止成功标记，之后的行全部忽略。
    """

    def __init__(self, run: StreamRun):
        self._run = run
        self.error_message = ""
        self.completed = False

    @property
    def reply(self) -> str:
        return self._run.reply

    async def handle_line(self, line: str) -> None:
        if self.completed:
            return
        try:
            event = json.loads(line)
        except ValueError:
            return
        if not isinstance(event, dict):
            return

        etype = event.get("type")
        item = event.get("item") if isinstance(event.get("item"), dict) else {}

        if etype == "item.started":
            if item.get("type") == "command_execution" and item.get("command"):
                await self._run.status(f"running: {item['command']}")
            return

        if etype == "error":
            message = extract_error_message(event.get("message"))
            if message:
                self.error_message = message
            return

        if etype == "turn.failed":
            error = event.get("error") if isinstance(event.get("error"), dict) else {}
            message = extract_error_message(error.get("message"))
            self.completed = True
            raise ProtocolError(
                code="CLI_PROTOCOL_ERROR",
                message=message or self.error_message or "codex CLI reported a failed turn",
                provider="codex",
            )

        if etype == "turn.completed":
            self.completed = True
            return

        if etype in ("item.completed", "item.updated"):
            if item.get("type") == "agent_message" and isinstance(item.get("text"), str):
                await self._run.text(item["text"])
            return

        if etype == "response.output_text.delta" and isinstance(event.get("delta"), str) and event["delta"]:
            await self._run.text(self._run.reply + event["delta"])
            return

        if etype == "response.completed" and isinstance(event.get("output_text"), str):
            await self._run.text(event["output_text"])


class CodexCliClient:
    """Codex CLI 客户端实现。"""

    name = "codex"

    def __init__(
        self,
        command: str,
        cwd: Optional[str] = None,
        model: Optional[str] = None,
        bypass_approvals: bool = False,
        timeout: Optional[float] = None,
    ):
        self._command = command
        self._cwd = cwd
        self._model = model
        self._bypass_approvals = bypass_approvals
        self._timeout = timeout or None

    def build_args(self, options: Optional[StreamOptions] = None) -> List[str]:
        options = options or StreamOptions()
        args = ["exec", "--json", "--skip-git-repo-check"]
        model = (options.model or "").strip() or self._model
        effort = (options.reasoning_effort or "").strip().lower()
        if self._bypass_approvals:
            args.append("--dangerously-bypass-approvals-and-sandbox")
        if model:
            args.extend(["--model", model])
        if effort:
            args.extend(["-c", f'model_reasoning_effort="{effort}"'])
        args.append("-")
        return args

    async def stream(
        self,
        messages: List[ChatMessage],
        callbacks: Optional[StreamCallbacks] = None,
        options: Optional[StreamOptions] = None,
    ) -> str:
        """执行一次流式调用，返回最终回复。

        步骤：
        1. 渲染 prompt 并构造参数。
        2. 运行子进程，逐行交给 CodexEventParser。
        3. 结合退出码、结构化错误与已生成回复得出结果。
        """

        run = StreamRun(callbacks)
        run.start()
        parser = CodexEventParser(run)
        try:
            result = await jsonl_runner.run_jsonl_cli(
                self._command,
                self.build_args(options),
                self._cwd,
                render_cli_prompt(messages),
                parser.handle_line,
                timeout=self._timeout,
            )
            final_reply = self._finish(result, parser)
        except ProviderError as e:
            await run.fail(e.message)
            raise
        except Exception as e:
            await run.fail(str(e))
            raise
        return await run.succeed(final_reply)

    def _finish(self, result: ProcessResult, parser: CodexEventParser) -> str:
        final_reply = parser.reply.strip()
        if result.exit_code != 0:
            if final_reply and not parser.error_message:
                log_event(
                    logging.WARNING,
                    "codex exited with non-zero code but returned text; returning the generated reply",
                    {"provider": self.name},
                    exit_code=result.exit_code,
                )
                return final_reply
            detail = parser.error_message or last_meaningful_line(result.stderr_tail, STDERR_NOISE)
            raise NonZeroExitError(
                code="CLI_EXIT_ERROR",
                message=f"codex CLI exited with code {result.exit_code}" + (f": {detail}" if detail else ""),
                provider=self.name,
                exit_code=result.exit_code,
            )
        if not final_reply:
            if parser.error_message:
                raise ProtocolError(code="CLI_PROTOCOL_ERROR", message=parser.error_message, provider=self.name)
            raise EmptyReplyError(code="EMPTY_REPLY", message="codex CLI produced no content", provider=self.name)
        return final_reply

    def describe(self) -> Dict[str, Any]:
        return {"provider": self.name, "command": self._command, "model": self._model}
