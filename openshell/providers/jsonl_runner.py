"""JSONL 子进程执行器。

启动子进程，把一段文本写入 stdin 后关闭，然后把 stdout 的每一行
（按 \\n 切分并去掉首尾空白）依次交给异步回调。上一行的回调完成之前
不会投递下一行，下游适配器依赖这一点维护运行中的回复文本。

stderr 只保留最后 STDERR_TAIL_BYTES 字节用于诊断。执行器不解释退出码。
"""

import asyncio
import logging
import signal
from typing import Awaitable, Callable, List, Optional, Union

from openshell.domain.exceptions import CliTimeoutError, SpawnError
from openshell.domain.models import ProcessResult
from openshell.infrastructure.logging.logger import log_event
from openshell.providers.base import invoke_callback

STDERR_TAIL_BYTES = 12_000
READ_CHUNK_BYTES = 64 * 1024
TERMINATE_GRACE_SECONDS = 2.0

LineHandler = Callable[[str], Union[Awaitable[None], None]]


async def run_jsonl_cli(
    command: str,
    args: List[str],
    cwd: Optional[str],
    stdin_text: str,
    on_line: LineHandler,
    on_stderr: Optional[LineHandler] = None,
    timeout: Optional[float] = None,
) -> ProcessResult:
    """运行命令并逐行投递 stdout。

    Raises:
        SpawnError: 进程无法启动。
        CliTimeoutError: 设置了 timeout 且超时，子进程已被终止。
        on_line / on_stderr 抛出的任何异常：子进程会先被终止，异常原样抛出。
    """

    log_ctx = {"command": command}
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise SpawnError(code="SPAWN_FAILED", message=f"Failed to start '{command}': {e}", command=command) from e

    log_event(logging.DEBUG, "Spawned CLI process", log_ctx, pid=process.pid, args=args)
    callback_lock = asyncio.Lock()
    stderr_tail = bytearray()
    stdin_task = asyncio.create_task(_write_stdin(process, stdin_text))
    stderr_task = asyncio.create_task(_pump_stderr(process, stderr_tail, on_stderr, callback_lock))

    async def _communicate() -> int:
        await _pump_stdout(process, on_line, callback_lock)
        await stderr_task
        return await process.wait()

    try:
        returncode = await asyncio.wait_for(_communicate(), timeout or None)
    except asyncio.TimeoutError:
        await _terminate(process)
        log_event(logging.WARNING, "CLI process timed out", log_ctx, timeout=timeout)
        raise CliTimeoutError(
            code="CLI_TIMEOUT",
            message=f"'{command}' did not finish within {timeout:g} seconds",
            command=command,
        )
    except BaseException:
        await _terminate(process)
        raise
    finally:
        for task in (stdin_task, stderr_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(stdin_task, stderr_task, return_exceptions=True)

    signal_name = None
    exit_code = returncode
    if returncode < 0:
        try:
            signal_name = signal.Signals(-returncode).name
        except ValueError:
            signal_name = str(-returncode)
        exit_code = 1
    tail = bytes(stderr_tail).decode("utf-8", errors="replace").strip()
    log_event(logging.DEBUG, "CLI process exited", log_ctx, exit_code=exit_code, signal=signal_name)
    return ProcessResult(exit_code=exit_code, signal=signal_name, stderr_tail=tail)


async def _write_stdin(process: asyncio.subprocess.Process, text: str) -> None:
    stdin = process.stdin
    try:
        stdin.write(text.encode("utf-8"))
        await stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        # 子进程提前退出，结果由退出码体现
        pass
    finally:
        stdin.close()


def _split_lines(buffer: bytes) -> tuple:
    *complete, rest = buffer.split(b"\n")
    lines = [raw.decode("utf-8", errors="replace").strip() for raw in complete]
    return [line for line in lines if line], rest


async def _pump_stdout(
    process: asyncio.subprocess.Process,
    on_line: LineHandler,
    lock: asyncio.Lock,
) -> None:
    buffer = b""
    while True:
        chunk = await process.stdout.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        lines, buffer = _split_lines(buffer + chunk)
        for line in lines:
            async with lock:
                await invoke_callback(on_line, line)
    remain = buffer.decode("utf-8", errors="replace").strip()
    if remain:
        async with lock:
            await invoke_callback(on_line, remain)


async def _pump_stderr(
    process: asyncio.subprocess.Process,
    tail: bytearray,
    on_stderr: Optional[LineHandler],
    lock: asyncio.Lock,
) -> None:
    buffer = b""
    while True:
        chunk = await process.stderr.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        tail.extend(chunk)
        if len(tail) > STDERR_TAIL_BYTES:
            del tail[:-STDERR_TAIL_BYTES]
        if on_stderr is None:
            continue
        lines, buffer = _split_lines(buffer + chunk)
        for line in lines:
            async with lock:
                await invoke_callback(on_stderr, line)
    remain = buffer.decode("utf-8", errors="replace").strip()
    if remain and on_stderr is not None:
        async with lock:
            await invoke_callback(on_stderr, remain)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
    except ProcessLookupError:
        pass
