"""
Pytest configuration for run control tests.

This module provides:
1. Temporary state directory and project root fixtures
2. Wired engine components (store, audit log, state machine, recorder, claims)
3. Plan document helpers
"""

import tempfile
from pathlib import Path

import pytest

from runcontrol.audit_log import AuditLog
from runcontrol.check_executor import CheckExecutor
from runcontrol.claim_coordinator import ClaimCoordinator
from runcontrol.plan_reader import PlanReader
from runcontrol.run_model import RunState
from runcontrol.run_store import RunStore
from runcontrol.state_machine import StateMachine
from runcontrol.verification_recorder import VerificationRecorder


# -----------------------------------------------------------------------------
# Plan Helpers
# -----------------------------------------------------------------------------
def write_plan(project_root: Path, plan_path: str, verification: str = None, body: str = "") -> str:
    """Write a plan document, optionally with a <verification> block. Returns plan_path."""
    path = project_root / plan_path
    path.parent.mkdir(parents=True, exist_ok=True)
    text = f"# Plan\n\n{body}\n"
    if verification is not None:
        text += f"\n<verification>\n{verification}\n</verification>\n"
    path.write_text(text)
    return plan_path


MIXED_CHECKS = """\
- name: lint
  cmd: "true"
- name: ux_review
  manual: true
"""


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def temp_dir():
    """Create a temporary directory used as project root."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def audit_log(temp_dir):
    return AuditLog(temp_dir / ".runcontrol" / "events.jsonl")


@pytest.fixture
def store(temp_dir, audit_log):
    return RunStore(temp_dir / ".runcontrol" / "runs", audit_log=audit_log, project_root=temp_dir)


@pytest.fixture
def state_machine(store, audit_log):
    return StateMachine(store, audit_log)


@pytest.fixture
def plan_reader(temp_dir):
    return PlanReader(temp_dir)


@pytest.fixture
def recorder(store, state_machine, plan_reader, audit_log, temp_dir):
    return VerificationRecorder(
        store,
        state_machine,
        plan_reader,
        audit_log=audit_log,
        executor=CheckExecutor(cwd=temp_dir, default_timeout=10),
    )


@pytest.fixture
def coordinator(store, state_machine, audit_log):
    return ClaimCoordinator(store, state_machine=state_machine, audit_log=audit_log)


@pytest.fixture
def active_run(store, temp_dir):
    """A run in active/executing for a plan with one cmd and one manual check."""
    plan_path = write_plan(temp_dir, "plans/01-01-PLAN.md", MIXED_CHECKS)
    return store.create_run(plan_path, intent="Test run", initial_state=RunState.ACTIVE_EXECUTING)
