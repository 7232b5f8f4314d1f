"""
Check Executor

Runs cmd checks deterministically and turns each run into a
check_executed ledger event.

Behavior:
- Shell execution, stdout and stderr combined
- exit 0 -> pass, non-zero -> fail
- timeout or launch failure -> error, exit_code None
- Hard timeout per check (check override, else DEFAULT_TIMEOUT_SECONDS);
  the shell's process group and process tree are killed on expiry
- Output truncated to MAX_OUTPUT_LINES lines, then MAX_OUTPUT_BYTES bytes
- Checks run one at a time in plan order; manual checks are never run
"""

import logging
import os
import signal
import subprocess
from pathlib import Path
from typing import Optional, Callable, List, Sequence, Union

import psutil

from .run_model import utc_now_iso
from .verification_model import CheckExecutedEvent, CheckStatus, VerificationCheckDef

logger = logging.getLogger("check_executor")

DEFAULT_TIMEOUT_SECONDS = 120
MAX_OUTPUT_LINES = 50
MAX_OUTPUT_BYTES = 4096
TRUNCATION_MARKER = "\n(truncated)"
# Room left for the marker when cutting by bytes
MARKER_RESERVE_BYTES = 20
# Upper bound on waiting for killed processes and the output pipe
KILL_GRACE_SECONDS = 5

ProgressCallback = Callable[[str, int, int], None]


# -----------------------------------------------------------------------------
# Output Truncation
# -----------------------------------------------------------------------------
def truncate_output(
    output: str,
    max_lines: int = MAX_OUTPUT_LINES,
    max_bytes: int = MAX_OUTPUT_BYTES,
) -> str:
    """
    Limit output to max_lines lines, then to max_bytes UTF-8 bytes.

    A byte cut keeps at most max_bytes - MARKER_RESERVE_BYTES bytes and never
    splits a character. The marker is appended when either limit applied.
    """
    lines = output.split("\n")
    truncated = False
    result = output

    if len(lines) > max_lines:
        result = "\n".join(lines[:max_lines])
        truncated = True

    encoded = result.encode("utf-8")
    if len(encoded) > max_bytes:
        result = encoded[:max_bytes - MARKER_RESERVE_BYTES].decode("utf-8", errors="ignore")
        truncated = True

    if truncated:
        result += TRUNCATION_MARKER
    return result


def _format_seconds(seconds: float) -> str:
    return f"{seconds:g}"


# -----------------------------------------------------------------------------
# Process Helpers
# -----------------------------------------------------------------------------
def _kill_process_group(pgid: int) -> None:
    """SIGKILL a whole session group, including processes already orphaned by the shell."""
    if os.name == "nt":
        return
    try:
        os.killpg(pgid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def _kill_process_tree(pid: int) -> None:
    """
    Kill a process, its process group and all of its descendants.

    The shell leads its own session, so backgrounded processes it has
    already left behind are reached through the group; descendants that
    started a new session are reached through psutil.
    """
    try:
        parent = psutil.Process(pid)
        processes = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        processes = []

    _kill_process_group(pid)
    for proc in processes:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    psutil.wait_procs(processes, timeout=KILL_GRACE_SECONDS)


def _collect_after_kill(process: subprocess.Popen, partial: Optional[bytes]) -> bytes:
    """Read what is left on the pipe after a kill, bounded by KILL_GRACE_SECONDS."""
    try:
        raw, _ = process.communicate(timeout=KILL_GRACE_SECONDS)
        return raw or b""
    except subprocess.TimeoutExpired as e:
        logger.warning(f"Output pipe of pid {process.pid} still open after kill, closing it")
        if process.stdout is not None:
            process.stdout.close()
        return e.output or partial or b""


# -----------------------------------------------------------------------------
# Execution
# -----------------------------------------------------------------------------
def execute_check(
    check_def: VerificationCheckDef,
    cwd: Optional[Union[str, Path]] = None,
    timeout: Optional[float] = None,
) -> CheckExecutedEvent:
    """
    Execute one cmd check.

    Args:
        check_def: Check with a cmd
        cwd: Working directory (default: current directory)
        timeout: Seconds; overrides the check's own timeout when given

    Raises:
        ValueError: if the check is manual or has no cmd
    """
    if check_def.manual or not check_def.cmd:
        raise ValueError(f"Check '{check_def.name}' is not executable (manual checks are recorded, not run)")

    limit = timeout or check_def.timeout or DEFAULT_TIMEOUT_SECONDS
    logger.info(f"Running check {check_def.name}: {check_def.cmd} (timeout {_format_seconds(limit)}s)")

    try:
        process = subprocess.Popen(
            check_def.cmd,
            shell=True,
            cwd=str(cwd) if cwd else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as e:
        logger.warning(f"Check {check_def.name} failed to launch: {e}")
        return CheckExecutedEvent(
            name=check_def.name,
            status=CheckStatus.ERROR,
            exit_code=None,
            output_tail=truncate_output(f"(exec error: {e})"),
            at=utc_now_iso(),
        )

    try:
        raw, _ = process.communicate(timeout=limit)
    except subprocess.TimeoutExpired as e:
        _kill_process_tree(process.pid)
        raw = _collect_after_kill(process, e.output)
        output = raw.decode("utf-8", errors="replace").strip()
        logger.warning(f"Check {check_def.name} timed out after {_format_seconds(limit)}s")
        return CheckExecutedEvent(
            name=check_def.name,
            status=CheckStatus.ERROR,
            exit_code=None,
            output_tail=truncate_output(f"(timeout after {_format_seconds(limit)}s)\n{output}"),
            at=utc_now_iso(),
        )

    output = truncate_output((raw or b"").decode("utf-8", errors="replace").strip())
    status = CheckStatus.PASS if process.returncode == 0 else CheckStatus.FAIL
    logger.info(f"Check {check_def.name}: {status.value} (exit {process.returncode})")

    return CheckExecutedEvent(
        name=check_def.name,
        status=status,
        exit_code=process.returncode,
        output_tail=output,
        at=utc_now_iso(),
    )


def execute_all_checks(
    check_defs: Sequence[VerificationCheckDef],
    on_progress: Optional[ProgressCallback] = None,
    cwd: Optional[Union[str, Path]] = None,
    timeout: Optional[float] = None,
) -> List[CheckExecutedEvent]:
    """Execute every cmd check sequentially, in plan order."""
    return CheckExecutor(cwd=cwd).run_all(check_defs, on_progress=on_progress, timeout=timeout)


class CheckExecutor:
    """
    Executor bound to a working directory and default timeout.

    A per-call timeout wins over the check's own timeout, which wins over
    default_timeout.
    """

    def __init__(
        self,
        cwd: Optional[Union[str, Path]] = None,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._cwd = cwd
        self._default_timeout = default_timeout

    def run(self, check_def: VerificationCheckDef, timeout: Optional[float] = None) -> CheckExecutedEvent:
        return execute_check(
            check_def,
            cwd=self._cwd,
            timeout=timeout or check_def.timeout or self._default_timeout,
        )

    def run_all(
        self,
        check_defs: Sequence[VerificationCheckDef],
        on_progress: Optional[ProgressCallback] = None,
        timeout: Optional[float] = None,
    ) -> List[CheckExecutedEvent]:
        cmd_checks = [c for c in check_defs if c.cmd and not c.manual]
        events = []
        for index, check_def in enumerate(cmd_checks, start=1):
            if on_progress is not None:
                on_progress(check_def.name, index, len(cmd_checks))
            events.append(self.run(check_def, timeout=timeout))
        return events
