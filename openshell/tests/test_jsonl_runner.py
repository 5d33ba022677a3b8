import asyncio
import sys
import time

import pytest

from openshell.domain.exceptions import CliTimeoutError, SpawnError
from openshell.providers.jsonl_runner import STDERR_TAIL_BYTES, run_jsonl_cli


def _run(script, stdin_text="", **kwargs):
    lines = []

    async def on_line(line):
        lines.append(line)

    result = asyncio.run(run_jsonl_cli(sys.executable, ["-c", script], None, stdin_text, on_line, **kwargs))
    return result, lines


def test_lines_delivered_in_order_including_trailing_line():
    result, lines = _run("import sys; sys.stdout.write('a\\n\\n  b  \\nc')")
    assert lines == ["a", "b", "c"]
    assert result.exit_code == 0
    assert result.signal is None


def test_stdin_is_written_and_closed():
    result, lines = _run("import sys; print(sys.stdin.read().upper())", "hello")
    assert lines == ["HELLO"]
    assert result.exit_code == 0


def test_handler_invocations_never_overlap():
    active = []
    seen = []

    async def on_line(line):
        active.append(line)
        assert len(active) == 1
        await asyncio.sleep(0.01)
        seen.append(line)
        active.pop()

    asyncio.run(run_jsonl_cli(sys.executable, ["-c", "for i in range(5): print(i)"], None, "", on_line))
    assert seen == ["0", "1", "2", "3", "4"]


def test_stderr_tail_is_bounded_and_exit_code_reported():
    result, lines = _run("import sys; sys.stderr.write('x' * 20000 + 'END'); sys.exit(3)")
    assert lines == []
    assert result.exit_code == 3
    assert len(result.stderr_tail) <= STDERR_TAIL_BYTES
    assert result.stderr_tail.endswith("END")


def test_stderr_observer_receives_lines():
    errors = []

    async def on_line(line):
        pass

    async def on_stderr(line):
        errors.append(line)

    script = "import sys; sys.stderr.write('warn one\\nwarn two')"
    asyncio.run(run_jsonl_cli(sys.executable, ["-c", script], None, "", on_line, on_stderr=on_stderr))
    assert errors == ["warn one", "warn two"]


def test_handler_failure_terminates_child_and_propagates():
    script = "import time\nprint('first', flush=True)\ntime.sleep(30)\nprint('late')"

    async def on_line(line):
        raise RuntimeError(f"bad line {line}")

    start = time.monotonic()
    with pytest.raises(RuntimeError, match="bad line first"):
        asyncio.run(run_jsonl_cli(sys.executable, ["-c", script], None, "", on_line))
    assert time.monotonic() - start < 10


def test_spawn_failure_is_distinct_error():
    async def on_line(line):
        pass

    with pytest.raises(SpawnError) as exc:
        asyncio.run(run_jsonl_cli("/nonexistent/openshell-no-such-binary", [], None, "", on_line))
    assert exc.value.code == "SPAWN_FAILED"


def test_timeout_kills_child():
    async def on_line(line):
        pass

    start = time.monotonic()
    with pytest.raises(CliTimeoutError):
        asyncio.run(
            run_jsonl_cli(sys.executable, ["-c", "import time; time.sleep(30)"], None, "", on_line, timeout=0.5)
        )
    assert time.monotonic() - start < 10


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals only")
def test_signal_exit_is_reported():
    result, _ = _run("import os, signal; os.kill(os.getpid(), signal.SIGKILL)")
    assert result.exit_code == 1
    assert result.signal == "SIGKILL"
