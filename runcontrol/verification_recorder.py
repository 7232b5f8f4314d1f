"""
Verification Recorder

Orchestrates recording verification outcomes against a run:

- record_pass: human assertion that verification passed
- record_fail: human report of an issue, logged as UAT-NNN
- record_manual: verdict for one manual check, event-sourced
- run_checks: execute all cmd checks and append their events
- skip_verification: pass without running anything (flagged autopass)

Every operation accepts a run in active/* or verifying/*; from active/* it
first moves through verifying/testing.

Rules:
- Check definitions are re-parsed from the plan on every call
- Validation failures return an unsuccessful RecordResult with the valid
  alternatives and leave the run untouched
- Once a ledger event is saved, a failed follow-up transition is a warning
  on the result, not an error: the event is the truth, the state catches up
  on the next call
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple

from .audit_log import AuditLog
from .check_executor import CheckExecutor, ProgressCallback
from .plan_reader import PlanReader
from .run_model import Run, RunControlError, RunState, UatRecord, utc_now_iso
from .run_store import RunStore, parse_plan_ref
from .state_machine import StateMachine, match_state, valid_targets
from .verification_ledger import append_event, derive_for_run, pending_checks
from .verification_model import (
    CheckExecutedEvent,
    CheckKind,
    CheckStatus,
    ManualRecordedEvent,
    OverallStatus,
    ParseResult,
    RunStartedEvent,
    VerificationSnapshot,
)
from .verification_parser import check_defs_summary, parse_verification

logger = logging.getLogger("verification_recorder")

RECORDABLE_STATES = ["active/*", "verifying/*"]
UAT_ISSUE_COMMAND = "manual-uat"

NEXT_ACTIONS = {
    OverallStatus.PASS: "complete",
    OverallStatus.FAIL: "fix",
    OverallStatus.PENDING: "continue manual checks",
}


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
@dataclass
class RecordResult:
    """
    Outcome of a recorder operation.

    On failure, error_code and error describe the rejection and
    valid_options lists what the caller could use instead (states or check
    names).
    """
    success: bool
    run_id: str
    plan_ref: str
    state: RunState
    error: Optional[str] = None
    error_code: Optional[str] = None
    valid_options: List[str] = field(default_factory=list)
    pending_checks: List[str] = field(default_factory=list)
    cmd_checks_asserted: List[str] = field(default_factory=list)
    already_complete: bool = False
    already_passed: bool = False
    manual_checks_skipped: bool = False
    issue_id: Optional[str] = None
    check_name: Optional[str] = None
    planned: List[str] = field(default_factory=list)
    events: List[CheckExecutedEvent] = field(default_factory=list)
    snapshot: Optional[VerificationSnapshot] = None
    next_action: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def overall(self) -> Optional[OverallStatus]:
        return self.snapshot.overall_status if self.snapshot else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "run_id": self.run_id,
            "plan_ref": self.plan_ref,
            "state": self.state.value,
            "error": self.error,
            "error_code": self.error_code,
            "valid_options": self.valid_options,
            "pending_checks": self.pending_checks,
            "cmd_checks_asserted": self.cmd_checks_asserted,
            "already_complete": self.already_complete,
            "already_passed": self.already_passed,
            "manual_checks_skipped": self.manual_checks_skipped,
            "issue_id": self.issue_id,
            "check_name": self.check_name,
            "planned": self.planned,
            "events": [e.to_dict() for e in self.events],
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "overall": self.overall.value if self.overall else None,
            "next_action": self.next_action,
            "warnings": self.warnings,
        }


# -----------------------------------------------------------------------------
# Verification Recorder
# -----------------------------------------------------------------------------
class VerificationRecorder:
    """Records verification outcomes and reconciles them with run state."""

    def __init__(
        self,
        store: RunStore,
        state_machine: StateMachine,
        plan_reader: PlanReader,
        audit_log: Optional[AuditLog] = None,
        executor: Optional[CheckExecutor] = None,
    ):
        self._store = store
        self._state_machine = state_machine
        self._plan_reader = plan_reader
        self._audit_log = audit_log
        self._executor = executor or CheckExecutor()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def load_checks(self, run: Run) -> Optional[ParseResult]:
        """Parse the run's plan now. None if the plan cannot be read."""
        text = self._plan_reader.read_plan_text(run.plan_path)
        if text is None:
            return None
        parsed = parse_verification(text)
        logger.debug(f"Run {run.run_id}: parsed {run.plan_path}: {check_defs_summary(parsed)}")
        return parsed

    def snapshot(self, run: Run) -> VerificationSnapshot:
        """Current derived verification status; unparseable plans have no checks."""
        parsed = self.load_checks(run)
        check_defs = parsed.checks if parsed is not None and parsed.success else ()
        return derive_for_run(run, check_defs)

    # -------------------------------------------------------------------------
    # Record Pass
    # -------------------------------------------------------------------------

    def record_pass(self, run: Run, skip_manual: bool = False, actor: str = "human") -> RecordResult:
        """
        Record that verification passed.

        Pending manual checks block unless skip_manual is set; the pass is then
        flagged as autopass. Never-executed cmd checks only produce a warning
        and are listed in cmd_checks_asserted.
        """
        if run.state == RunState.COMPLETE:
            return self._result(run, success=True, already_complete=True)
        if not (match_state(run.state, "active") or match_state(run.state, "verifying")):
            return self._invalid_state(run, "record pass")

        snapshot, warnings = self._snapshot_with_warnings(run)
        pending_manual = [c.name for c in pending_checks(snapshot, CheckKind.MANUAL)]
        pending_cmd = [c.name for c in pending_checks(snapshot, CheckKind.CMD)]

        if pending_manual and not skip_manual:
            message = "Manual checks pending. Record them or pass skip_manual to override."
            if run.state == RunState.VERIFYING_PASSED:
                message = (
                    "Inconsistent state: verifying/passed but manual checks pending. "
                    "Record them or pass skip_manual to acknowledge."
                )
            return self._error(
                run,
                "MANUAL_CHECKS_PENDING",
                message,
                pending_checks=pending_manual,
                snapshot=snapshot,
                warnings=warnings,
            )

        skipped = bool(skip_manual and pending_manual)

        if run.state == RunState.VERIFYING_PASSED:
            if skipped and not (run.verification.uat and run.verification.uat.autopass):
                uat = run.verification.uat or UatRecord(status="pass", ran_at=utc_now_iso())
                uat.autopass = True
                run.verification.uat = uat
                self._store.save(run)
            return self._result(
                run,
                success=True,
                already_passed=True,
                manual_checks_skipped=skipped,
                snapshot=snapshot,
                warnings=warnings,
            )

        error = self._advance(run, RunState.VERIFYING_PASSED, actor)
        if error is not None:
            return error

        if pending_cmd:
            message = f"Cmd checks not executed (human assertion): {', '.join(pending_cmd)}"
            logger.warning(f"Run {run.run_id}: {message}")
            warnings.append(message)

        existing = run.verification.uat.checks if run.verification.uat else []
        run.verification.uat = UatRecord(
            status="pass",
            ran_at=utc_now_iso(),
            checks=existing,
            issues_logged=sum(1 for c in existing if c.get("status") == "fail"),
            autopass=skipped,
        )
        self._store.save(run)

        self._log_audit(
            "verification_passed",
            run,
            by=actor,
            cmd_checks_asserted=pending_cmd,
            manual_checks_skipped=pending_manual if skipped else [],
        )
        logger.info(f"Run {run.run_id}: verification passed{' (autopass)' if skipped else ''}")

        return self._result(
            run,
            success=True,
            manual_checks_skipped=skipped,
            cmd_checks_asserted=pending_cmd,
            snapshot=snapshot,
            next_action=NEXT_ACTIONS[OverallStatus.PASS],
            warnings=warnings,
        )

    # -------------------------------------------------------------------------
    # Record Fail
    # -------------------------------------------------------------------------

    def record_fail(self, run: Run, issue: str, actor: str = "human") -> RecordResult:
        """
        Record a verification failure with an issue description.

        Each call logs one issue as UAT-NNN. A run already in verifying/failed
        stays there and accumulates issues.
        """
        if not issue or not issue.strip():
            return self._error(run, "ISSUE_REQUIRED", "An issue description is required to record a failure")

        if run.state != RunState.VERIFYING_FAILED:
            error = self._advance(run, RunState.VERIFYING_FAILED, actor)
            if error is not None:
                return error

        uat = run.verification.uat or UatRecord()
        failed_count = sum(1 for c in uat.checks if c.get("status") == "fail")
        issue_id = f"UAT-{failed_count + 1:03d}"
        now = utc_now_iso()

        checks = list(uat.checks)
        checks.append({
            "name": issue_id,
            "command": UAT_ISSUE_COMMAND,
            "status": "fail",
            "output": issue.strip(),
            "ran_at": now,
        })
        run.verification.uat = UatRecord(
            status="fail",
            ran_at=now,
            checks=checks,
            issues_logged=failed_count + 1,
        )
        run.touch()
        self._store.save(run)

        self._log_audit("verification_failed", run, by=actor, issue_id=issue_id, issue=issue.strip())
        logger.info(f"Run {run.run_id}: verification failed ({issue_id})")

        return self._result(
            run,
            success=True,
            issue_id=issue_id,
            next_action=NEXT_ACTIONS[OverallStatus.FAIL],
        )

    # -------------------------------------------------------------------------
    # Record Manual Check
    # -------------------------------------------------------------------------

    def record_manual(
        self,
        run: Run,
        check_name: str,
        passed: bool,
        reason: Optional[str] = None,
        actor: str = "agent",
        no_auto_pass: bool = False,
    ) -> RecordResult:
        """
        Record the verdict for one manual check.

        Appends a manual_recorded event, re-derives, and moves the run to
        verifying/failed or verifying/passed once the aggregate resolves
        (no_auto_pass keeps it in place on pass).
        """
        if not (match_state(run.state, "active") or match_state(run.state, "verifying")):
            return self._invalid_state(run, "record manual check")

        parsed = self.load_checks(run)
        if parsed is None:
            return self._error(run, "PLAN_NOT_FOUND", f"Cannot read plan '{run.plan_path}'")
        if not parsed.success:
            return self._error(
                run,
                "PARSE_FAILED",
                f"Failed to parse verification section: {'; '.join(parsed.errors)}",
            )

        check_def = next((c for c in parsed.checks if c.name == check_name), None)
        manual_names = [c.name for c in parsed.checks if c.manual]
        if check_def is None:
            return self._error(
                run,
                "UNKNOWN_CHECK",
                f"Unknown check '{check_name}'. Valid: {', '.join(c.name for c in parsed.checks) or 'none'}",
                valid_options=manual_names,
            )
        if not check_def.manual:
            return self._error(
                run,
                "NOT_MANUAL",
                f"Cannot record '{check_name}': not a manual check. "
                f"Only checks with 'manual: true' can be recorded; cmd checks are run.",
                valid_options=manual_names,
            )

        if match_state(run.state, "active"):
            error = self._advance(run, RunState.VERIFYING_TESTING, actor)
            if error is not None:
                return error

        event = ManualRecordedEvent(
            name=check_name,
            status=CheckStatus.PASS if passed else CheckStatus.FAIL,
            at=utc_now_iso(),
            by=actor,
            reason=reason,
        )
        append_event(run, event)
        self._store.save(run)
        self._log_audit("manual_recorded", run, **event.to_dict())

        snapshot = derive_for_run(run, parsed.checks)
        warnings = self._reconcile(run, snapshot, actor, no_auto_pass)

        return self._result(
            run,
            success=True,
            check_name=check_name,
            snapshot=snapshot,
            next_action=NEXT_ACTIONS[snapshot.overall_status],
            warnings=warnings,
        )

    # -------------------------------------------------------------------------
    # Automated Checks
    # -------------------------------------------------------------------------

    def run_checks(
        self,
        run: Run,
        timeout: Optional[float] = None,
        dry_run: bool = False,
        no_auto_pass: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        actor: str = "agent",
    ) -> RecordResult:
        """
        Execute every cmd check of the plan and record the results.

        dry_run only lists the checks that would run. timeout overrides every
        check's own timeout.
        """
        if not (match_state(run.state, "active") or match_state(run.state, "verifying")):
            return self._invalid_state(run, "run checks")

        parsed = self.load_checks(run)
        if parsed is None:
            return self._error(run, "PLAN_NOT_FOUND", f"Cannot read plan '{run.plan_path}'")
        if not parsed.success:
            return self._error(
                run,
                "PARSE_FAILED",
                f"Failed to parse verification section: {'; '.join(parsed.errors)}",
            )

        cmd_checks = [c for c in parsed.checks if c.cmd and not c.manual]
        planned = [c.name for c in cmd_checks]
        if dry_run:
            return self._result(
                run,
                success=True,
                planned=planned,
                snapshot=derive_for_run(run, parsed.checks),
            )

        if match_state(run.state, "active"):
            error = self._advance(run, RunState.VERIFYING_TESTING, actor)
            if error is not None:
                return error
        elif run.state == RunState.VERIFYING_FIXING:
            error = self._advance(run, RunState.VERIFYING_RETESTING, actor)
            if error is not None:
                return error

        started = RunStartedEvent(at=utc_now_iso(), by=actor, checks_planned=tuple(planned))
        append_event(run, started)
        self._store.save(run)
        self._log_audit("run_started", run, **started.to_dict())

        events = []
        for index, check_def in enumerate(cmd_checks, start=1):
            if on_progress is not None:
                on_progress(check_def.name, index, len(cmd_checks))
            event = self._executor.run(check_def, timeout=timeout)
            append_event(run, event)
            self._store.save(run)
            self._log_audit("check_executed", run, **event.to_dict())
            events.append(event)

        snapshot = derive_for_run(run, parsed.checks)
        warnings = self._reconcile(run, snapshot, actor, no_auto_pass)

        self._log_audit(
            "verification_run",
            run,
            by=actor,
            checks=[{"name": e.name, "status": e.status.value, "exit_code": e.exit_code} for e in events],
            overall=snapshot.overall_status.value,
            manual_pending=snapshot.manual_pending,
        )
        logger.info(
            f"Run {run.run_id}: ran {len(events)} checks, overall {snapshot.overall_status.value}"
        )

        return self._result(
            run,
            success=True,
            planned=planned,
            events=events,
            pending_checks=[c.name for c in pending_checks(snapshot, CheckKind.MANUAL)],
            snapshot=snapshot,
            next_action=NEXT_ACTIONS[snapshot.overall_status],
            warnings=warnings,
        )

    # -------------------------------------------------------------------------
    # Skip
    # -------------------------------------------------------------------------

    def skip_verification(self, run: Run, actor: str = "human") -> RecordResult:
        """Move the run to verifying/passed without checks, flagged autopass."""
        if run.state == RunState.VERIFYING_PASSED:
            return self._result(run, success=True, already_passed=True)

        error = self._advance(run, RunState.VERIFYING_PASSED, actor)
        if error is not None:
            return error

        existing = run.verification.uat.checks if run.verification.uat else []
        run.verification.uat = UatRecord(
            status="pass",
            ran_at=utc_now_iso(),
            checks=existing,
            issues_logged=sum(1 for c in existing if c.get("status") == "fail"),
            autopass=True,
        )
        self._store.save(run)

        self._log_audit("verification_skipped", run, by=actor)
        logger.warning(f"Run {run.run_id}: verification skipped by {actor}")

        return self._result(run, success=True, manual_checks_skipped=True, next_action=NEXT_ACTIONS[OverallStatus.PASS])

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _advance(self, run: Run, target: RunState, actor: str) -> Optional[RecordResult]:
        """
        Move the run to target, via verifying/testing when coming from active/*.

        Both hops are validated before either is applied. Returns an error
        result, or None on success.
        """
        if not (match_state(run.state, "active") or match_state(run.state, "verifying")):
            return self._invalid_state(run, f"move to {target.value}")

        hops = [target]
        if match_state(run.state, "active") and target != RunState.VERIFYING_TESTING:
            hops = [RunState.VERIFYING_TESTING, target]

        allowed, message, _ = self._state_machine.check_transition(run, hops[0])
        if not allowed:
            return self._error(
                run,
                "INVALID_TRANSITION",
                message,
                valid_options=[t.value for t in valid_targets(run.state)],
            )

        for hop in hops:
            result = self._state_machine.apply_transition(run, hop, actor)
            if not result.success:
                return self._error(
                    run,
                    "INVALID_TRANSITION",
                    result.error,
                    valid_options=[t.value for t in result.valid_targets],
                )
        return None

    def _reconcile(self, run: Run, snapshot: VerificationSnapshot, actor: str, no_auto_pass: bool) -> List[str]:
        """Move the run to match a resolved aggregate status. Returns warnings."""
        overall = snapshot.overall_status
        target = None
        if overall == OverallStatus.FAIL:
            target = RunState.VERIFYING_FAILED
        elif overall == OverallStatus.PASS and not no_auto_pass:
            target = RunState.VERIFYING_PASSED

        if target is None or run.state == target:
            return []

        try:
            result = self._state_machine.apply_transition(run, target, actor)
        except (RunControlError, OSError) as e:
            message = f"State transition to {target.value} failed: {e}"
        else:
            if result.success:
                return []
            message = f"State transition to {target.value} failed: {result.error}"

        logger.warning(f"Run {run.run_id}: {message} (verification event kept)")
        return [message]

    def _snapshot_with_warnings(self, run: Run) -> Tuple[VerificationSnapshot, List[str]]:
        parsed = self.load_checks(run)
        if parsed is None:
            return derive_for_run(run, ()), []
        if not parsed.success:
            message = f"Verification section unparseable, treating as no checks: {'; '.join(parsed.errors)}"
            logger.warning(f"Run {run.run_id}: {message}")
            return derive_for_run(run, ()), [message]
        return derive_for_run(run, parsed.checks), []

    def _invalid_state(self, run: Run, action: str) -> RecordResult:
        return self._error(
            run,
            "INVALID_STATE",
            f"Cannot {action} in state: {run.state.value}. Valid states: {', '.join(RECORDABLE_STATES)}",
            valid_options=list(RECORDABLE_STATES),
        )

    def _error(self, run: Run, code: str, message: str, **kwargs: Any) -> RecordResult:
        logger.info(f"Run {run.run_id}: {code} - {message}")
        return self._result(run, success=False, error=message, error_code=code, **kwargs)

    @staticmethod
    def _result(run: Run, success: bool, **kwargs: Any) -> RecordResult:
        return RecordResult(
            success=success,
            run_id=run.run_id,
            plan_ref=parse_plan_ref(run.plan_path) or run.run_id,
            state=run.state,
            **kwargs,
        )

    def _log_audit(self, event: str, run: Run, **fields: Any) -> None:
        if self._audit_log is None:
            return
        self._audit_log.log_event(event, run_id=run.run_id, **fields)
