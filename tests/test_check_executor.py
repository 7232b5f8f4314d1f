"""
Check Executor Tests

Test Categories:
1. Output Truncation Tests
2. Exit Status Tests
3. Timeout Tests
4. Launch Failure Tests
5. Sequencing Tests
"""

import time
from pathlib import Path

import pytest

from runcontrol.check_executor import (
    MAX_OUTPUT_BYTES,
    MAX_OUTPUT_LINES,
    TRUNCATION_MARKER,
    CheckExecutor,
    execute_all_checks,
    execute_check,
    truncate_output,
)
from runcontrol.verification_model import CheckStatus, VerificationCheckDef


def cmd_check(cmd: str, name: str = "check", timeout: float = None) -> VerificationCheckDef:
    return VerificationCheckDef(name=name, cmd=cmd, timeout=timeout)


# -----------------------------------------------------------------------------
# Test 1: Output Truncation
# -----------------------------------------------------------------------------
class TestTruncation:
    """Lines are capped first, then bytes, with a marker appended."""

    def test_short_output_untouched(self):
        assert truncate_output("ok") == "ok"

    def test_line_limit(self):
        output = "\n".join(f"line {i}" for i in range(1, MAX_OUTPUT_LINES + 2))

        result = truncate_output(output)

        lines = result.split("\n")
        assert len(lines) == MAX_OUTPUT_LINES + 1
        assert lines[MAX_OUTPUT_LINES - 1] == f"line {MAX_OUTPUT_LINES}"
        assert result.endswith(TRUNCATION_MARKER)

    def test_exact_line_limit_untouched(self):
        output = "\n".join("x" for _ in range(MAX_OUTPUT_LINES))
        assert truncate_output(output) == output

    def test_byte_limit(self):
        result = truncate_output("x" * (MAX_OUTPUT_BYTES + 1))

        assert result.endswith(TRUNCATION_MARKER)
        body = result[:-len(TRUNCATION_MARKER)]
        assert len(body.encode("utf-8")) == 4076

    def test_exact_byte_limit_untouched(self):
        output = "x" * MAX_OUTPUT_BYTES
        assert truncate_output(output) == output

    def test_multibyte_never_split(self):
        result = truncate_output("€" * 2000)

        body = result[:-len(TRUNCATION_MARKER)]
        assert len(body.encode("utf-8")) <= 4076
        assert set(body) == {"€"}


# -----------------------------------------------------------------------------
# Test 2: Exit Status
# -----------------------------------------------------------------------------
class TestExitStatus:
    """exit 0 is pass, anything else is fail."""

    def test_pass(self):
        event = execute_check(cmd_check("echo hello", name="greet"))

        assert event.name == "greet"
        assert event.status == CheckStatus.PASS
        assert event.exit_code == 0
        assert event.output_tail == "hello"
        assert event.by == "agent"

    def test_fail_keeps_exit_code(self):
        event = execute_check(cmd_check("echo oops; exit 3"))

        assert event.status == CheckStatus.FAIL
        assert event.exit_code == 3
        assert event.output_tail == "oops"

    def test_stderr_is_captured(self):
        event = execute_check(cmd_check("echo problem 1>&2; exit 1"))
        assert event.output_tail == "problem"

    def test_long_output_truncated(self):
        event = execute_check(cmd_check("seq 1 100"))

        assert event.status == CheckStatus.PASS
        assert event.output_tail.endswith(TRUNCATION_MARKER)
        assert event.output_tail.split("\n")[MAX_OUTPUT_LINES - 1] == str(MAX_OUTPUT_LINES)

    def test_runs_in_cwd(self, temp_dir):
        event = execute_check(cmd_check("pwd"), cwd=temp_dir)
        assert Path(event.output_tail).resolve() == temp_dir.resolve()

    def test_manual_check_rejected(self):
        with pytest.raises(ValueError):
            execute_check(VerificationCheckDef(name="review", manual=True))


# -----------------------------------------------------------------------------
# Test 3: Timeouts
# -----------------------------------------------------------------------------
class TestTimeouts:
    """Expired checks are errors and their process tree is killed."""

    def test_timeout_is_error(self):
        started = time.monotonic()
        event = execute_check(cmd_check("sleep 5"), timeout=0.5)

        assert time.monotonic() - started < 4
        assert event.status == CheckStatus.ERROR
        assert event.exit_code is None
        assert event.output_tail.startswith("(timeout after 0.5s)")

    def test_check_timeout_used(self):
        event = execute_check(cmd_check("sleep 5", timeout=0.5))
        assert event.output_tail.startswith("(timeout after 0.5s)")

    def test_partial_output_kept(self):
        event = execute_check(cmd_check("echo started; sleep 5"), timeout=1)
        assert event.output_tail == "(timeout after 1s)\nstarted"

    def test_child_processes_killed(self):
        started = time.monotonic()
        event = execute_check(cmd_check("sleep 30 & sleep 30; wait"), timeout=0.5)

        assert event.status == CheckStatus.ERROR
        assert time.monotonic() - started < 10

    def test_orphaned_background_process_killed(self):
        """A process the shell left behind still holds the pipe; the timeout must bound it."""
        started = time.monotonic()
        event = execute_check(cmd_check("(sleep 30 &); echo started"), timeout=1)

        assert time.monotonic() - started < 8
        assert event.status == CheckStatus.ERROR
        assert event.output_tail == "(timeout after 1s)\nstarted"

    def test_timeout_output_respects_limits(self):
        event = execute_check(cmd_check("seq 1 60; sleep 5"), timeout=1)

        assert event.output_tail.startswith("(timeout after 1s)\n1\n")
        assert event.output_tail.endswith(TRUNCATION_MARKER)
        assert len(event.output_tail.split("\n")) <= MAX_OUTPUT_LINES + 1

    def test_timeout_output_respects_byte_limit(self):
        event = execute_check(cmd_check("head -c 10000 /dev/zero | tr '\\0' x; sleep 5"), timeout=1)

        assert event.output_tail.startswith("(timeout after 1s)")
        assert len(event.output_tail.encode("utf-8")) <= MAX_OUTPUT_BYTES + len(TRUNCATION_MARKER)


# -----------------------------------------------------------------------------
# Test 4: Launch Failures
# -----------------------------------------------------------------------------
class TestLaunchFailure:
    def test_missing_cwd_is_error(self, temp_dir):
        event = execute_check(cmd_check("true"), cwd=temp_dir / "missing")

        assert event.status == CheckStatus.ERROR
        assert event.exit_code is None
        assert event.output_tail.startswith("(exec error:")


# -----------------------------------------------------------------------------
# Test 5: Sequencing
# -----------------------------------------------------------------------------
class TestSequencing:
    """Cmd checks run in plan order; manual checks are skipped."""

    def test_run_all_skips_manual(self):
        checks = [
            cmd_check("true", name="first"),
            VerificationCheckDef(name="review", manual=True),
            cmd_check("false", name="second"),
        ]
        progress = []

        events = CheckExecutor().run_all(checks, on_progress=lambda *args: progress.append(args))

        assert [e.name for e in events] == ["first", "second"]
        assert [e.status for e in events] == [CheckStatus.PASS, CheckStatus.FAIL]
        assert progress == [("first", 1, 2), ("second", 2, 2)]

    def test_execute_all_checks(self, temp_dir):
        (temp_dir / "marker.txt").write_text("present")
        events = execute_all_checks([cmd_check("cat marker.txt")], cwd=temp_dir)

        assert events[0].status == CheckStatus.PASS
        assert events[0].output_tail == "present"

    def test_executor_default_timeout(self):
        event = CheckExecutor(default_timeout=0.5).run(cmd_check("sleep 5"))
        assert event.status == CheckStatus.ERROR

    def test_call_timeout_overrides_check(self):
        event = CheckExecutor().run(cmd_check("sleep 5", timeout=60), timeout=0.5)
        assert event.output_tail.startswith("(timeout after 0.5s)")
