"""Claude CLI Provider 适配器。

使用 `claude -p --output-format stream-json --include-partial-messages`，
事件归类：

- stream_event / content_block_delta / text_delta：增量，追加到运行中的回复。
- assistant：完整消息，文本块拼接后整体替换回复。
- result：终止事件；is_error 为真时中止调用，否则 result 即最终回复。
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


def extract_assistant_text(payload: Dict[str, Any]) -> str:
    message = payload.get("message") if isinstance(payload.get("message"), dict) else {}
    content = message.get("content")
    if not isinstance(content, list):
        return ""
    texts = []
    for block in content:
        if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
            text = block["text"].strip()
            if text:
                texts.append(text)
    return "\n".join(texts)


class ClaudeEventParser:
    def __init__(self, run: StreamRun):
        self._run = run
        self.final_result = ""
        self.completed = False

    @property
    def reply(self) -> str:
        return self._run.reply

    async def handle_line(self, line: str) -> None:
        if self.completed:
            return
        try:
            payload = json.loads(line)
        except ValueError:
            return
        if not isinstance(payload, dict):
            return

        ptype = payload.get("type")
        if ptype == "result":
            self.completed = True
            result = payload.get("result")
            if payload.get("is_error"):
                message = result.strip() if isinstance(result, str) else ""
                raise ProtocolError(
                    code="CLI_PROTOCOL_ERROR",
                    message=message or "claude CLI error",
                    provider="claude",
                )
            if isinstance(result, str):
                self.final_result = result
                await self._run.text(result)
            return

        if ptype == "assistant":
            text = extract_assistant_text(payload)
            if text:
                await self._run.text(text)
            return

        if ptype == "stream_event":
            event = payload.get("event") if isinstance(payload.get("event"), dict) else {}
            delta = event.get("delta") if isinstance(event.get("delta"), dict) else {}
            if (
                event.get("type") == "content_block_delta"
                and delta.get("type") == "text_delta"
                and isinstance(delta.get("text"), str)
            ):
                await self._run.text(self._run.reply + delta["text"])


class ClaudeCliClient:
    """Claude CLI 客户端实现，不支持 reasoning effort。"""

    name = "claude"

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
        args = ["-p", "--verbose", "--output-format", "stream-json", "--include-partial-messages"]
        if self._bypass_approvals:
            args.append("--dangerously-skip-permissions")
        model = (options.model or "").strip() or self._model
        if model:
            args.extend(["--model", model])
        return args

    async def stream(
        self,
        messages: List[ChatMessage],
        callbacks: Optional[StreamCallbacks] = None,
        options: Optional[StreamOptions] = None,
    ) -> str:
        run = StreamRun(callbacks)
        run.start()
        parser = ClaudeEventParser(run)
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

    def _finish(self, result: ProcessResult, parser: ClaudeEventParser) -> str:
        if result.exit_code != 0:
            detail = last_meaningful_line(result.stderr_tail)
            log_event(logging.WARNING, "claude CLI failed", {"provider": self.name}, exit_code=result.exit_code)
            raise NonZeroExitError(
                code="CLI_EXIT_ERROR",
                message=f"claude CLI exited with code {result.exit_code}" + (f": {detail}" if detail else ""),
                provider=self.name,
                exit_code=result.exit_code,
            )
        final_reply = (parser.final_result or parser.reply).strip()
        if not final_reply:
            raise EmptyReplyError(code="EMPTY_REPLY", message="claude CLI produced no content", provider=self.name)
        return final_reply

    def describe(self) -> Dict[str, Any]:
        return {"provider": self.name, "command": self._command, "model": self._model}
