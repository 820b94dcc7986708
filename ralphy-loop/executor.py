"""Run the Claude Code CLI in headless mode for one loop iteration."""

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from stream_parser import ExecutionStats, StreamCollector, ToolActivity

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sonnet"
DEFAULT_TIMEOUT_SECONDS = 300


class ExecutorError(Exception):
    """Raised when the claude process cannot produce a usable result."""


@dataclass
class ExecuteResult:
    success: bool
    output: str = ""
    exit_code: int | None = None
    duration_ms: int = 0
    error: str | None = None
    stats: ExecutionStats | None = None


def _clean_env() -> dict[str, str]:
    """Return a copy of os.environ without the CLAUDECODE variable."""
    return {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}


def build_claude_command(model: str, auto_accept: bool, stream_json: bool = False) -> list[str]:
    cmd = ["claude", "--print", "--model", model]
    if stream_json:
        # claude refuses stream-json in print mode without --verbose
        cmd += ["--output-format", "stream-json", "--verbose"]
    if auto_accept:
        cmd.append("--dangerously-skip-permissions")
    return cmd


def _check_signal(returncode: int) -> None:
    if returncode < 0:
        try:
            sig_name = signal.Signals(-returncode).name
        except ValueError:
            sig_name = f"signal {-returncode}"
        raise ExecutorError(f"Claude execution was killed ({sig_name})")


def _run(cmd: list[str], prompt: str, timeout: float, cwd: str | None) -> subprocess.CompletedProcess:
    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=_clean_env(),
            input=prompt,
            # Own session: a terminal Ctrl+C only reaches the orchestrator.
            start_new_session=True,
        )
    except subprocess.TimeoutExpired as e:
        raise ExecutorError(f"Claude execution timed out after {timeout:g}s") from e
    except OSError as e:
        raise ExecutorError(f"Claude execution failed: {e}") from e

    _check_signal(proc.returncode)
    return proc


def _stream(
    cmd: list[str],
    prompt: str,
    timeout: float,
    cwd: str | None,
    on_line: Callable[[str], None],
) -> subprocess.CompletedProcess:
    """Like :func:`_run`, but hand each stdout line to *on_line* as it arrives."""
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=cwd,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1,
            env=_clean_env(),
            start_new_session=True,
        )
    except OSError as e:
        raise ExecutorError(f"Claude execution failed: {e}") from e

    timed_out = threading.Event()

    def _expire() -> None:
        timed_out.set()
        proc.kill()

    stderr_lines: list[str] = []
    drain = threading.Thread(target=lambda: stderr_lines.extend(proc.stderr), daemon=True)
    timer = threading.Timer(timeout, _expire)
    stdout_lines: list[str] = []
    drain.start()
    timer.start()
    try:
        try:
            proc.stdin.write(prompt)
            proc.stdin.close()
        except BrokenPipeError:
            logger.debug("claude closed stdin before reading the whole prompt")
        for line in proc.stdout:
            stdout_lines.append(line)
            on_line(line)
        proc.wait()
    finally:
        timer.cancel()
        if proc.poll() is None:
            proc.kill()
            proc.wait()
    drain.join(timeout=5)

    if timed_out.is_set():
        raise ExecutorError(f"Claude execution timed out after {timeout:g}s")
    _check_signal(proc.returncode)
    return subprocess.CompletedProcess(cmd, proc.returncode, "".join(stdout_lines), "".join(stderr_lines))


def execute_claude(
    prompt: str,
    model: str = DEFAULT_MODEL,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    auto_accept: bool = True,
    cwd: str | None = None,
    on_output: Callable[[str], None] | None = None,
    on_tool_activity: Callable[[ToolActivity], None] | None = None,
) -> ExecuteResult:
    """Send *prompt* to ``claude --print`` on stdin and capture stdout.

    A non-zero exit code is still a successful execution; the caller decides
    what it means.  Timeouts, signals and spawn failures produce
    ``success=False`` with a distinguishable error message.

    With *on_output*, stdout is streamed: each line is passed to the
    callback while claude runs.  With *on_tool_activity*, claude is asked
    for stream-json instead; tool calls are reported as they happen and the
    returned output is the plain-text transcript rebuilt from the events.
    """
    stream_json = on_tool_activity is not None
    cmd = build_claude_command(model, auto_accept, stream_json=stream_json)
    logger.debug("$ %s (timeout=%ss)", " ".join(cmd), timeout)

    collector = StreamCollector(on_tool_activity=on_tool_activity) if stream_json else None
    started = time.monotonic()
    try:
        if collector is not None:
            proc = _stream(cmd, prompt, timeout, cwd, collector.feed)
        elif on_output is not None:
            proc = _stream(cmd, prompt, timeout, cwd, on_output)
        else:
            proc = _run(cmd, prompt, timeout, cwd)
    except ExecutorError as e:
        logger.error("%s", e)
        return ExecuteResult(
            success=False,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=str(e),
        )

    duration_ms = int((time.monotonic() - started) * 1000)
    if proc.returncode != 0:
        logger.debug("claude stderr: %s", (proc.stderr or "")[:500])
    return ExecuteResult(
        success=True,
        output=collector.output if collector is not None else proc.stdout or "",
        exit_code=proc.returncode,
        duration_ms=duration_ms,
        stats=collector.stats if collector is not None else None,
    )


def is_claude_available() -> bool:
    """Return True if ``claude --version`` runs successfully."""
    try:
        proc = subprocess.run(
            ["claude", "--version"],
            capture_output=True,
            text=True,
            timeout=30,
            env=_clean_env(),
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0
