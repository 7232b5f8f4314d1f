"""
Run State Machine

Hierarchical lifecycle states with validated transitions and an audited
escape hatch.

States:
    proposed -> approved -> ready -> active/executing -> verifying/testing
    -> verifying/passed -> complete
    (abandoned reachable from proposed, approved, ready, active/executing,
    active/paused; complete keeps a rework edge back to active/executing)

Rules:
- Every applied transition is appended to run.transitions, never rewritten
- Invalid transitions are reported with the valid targets, never coerced
- Plan states (proposed, approved, ready) enter run states only via
  active/executing
- force_transition bypasses validation but always leaves a forced
  transition record, a WARNING log line and a forced_transition audit event
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Union

from .audit_log import AuditLog
from .run_model import (
    CompletionRecord,
    ParentState,
    Run,
    RunState,
    Transition,
    parse_timestamp,
    utc_now,
    utc_now_iso,
)

logger = logging.getLogger("state_machine")

FORCED_PREFIX = "[FORCED]"
FORCED_DEFAULT_REASON = "Escape hatch used"


# -----------------------------------------------------------------------------
# Valid Transitions
# -----------------------------------------------------------------------------
VALID_TRANSITIONS: Dict[RunState, List[RunState]] = {
    RunState.PROPOSED: [RunState.APPROVED, RunState.ABANDONED],
    RunState.APPROVED: [RunState.READY, RunState.ABANDONED],
    RunState.READY: [RunState.ACTIVE_EXECUTING, RunState.ABANDONED],
    RunState.ACTIVE_EXECUTING: [
        RunState.ACTIVE_PAUSED,
        RunState.ACTIVE_CHECKPOINT,
        RunState.VERIFYING_TESTING,
        RunState.ABANDONED,
    ],
    RunState.ACTIVE_PAUSED: [RunState.ACTIVE_EXECUTING, RunState.ABANDONED],
    RunState.ACTIVE_CHECKPOINT: [RunState.ACTIVE_EXECUTING],
    RunState.VERIFYING_TESTING: [
        RunState.VERIFYING_PASSED,
        RunState.VERIFYING_FAILED,
        RunState.ACTIVE_EXECUTING,
    ],
    RunState.VERIFYING_PASSED: [RunState.COMPLETE, RunState.ACTIVE_EXECUTING],
    RunState.VERIFYING_FAILED: [RunState.VERIFYING_FIXING, RunState.ACTIVE_EXECUTING],
    RunState.VERIFYING_FIXING: [RunState.VERIFYING_RETESTING, RunState.ACTIVE_EXECUTING],
    RunState.VERIFYING_RETESTING: [
        RunState.VERIFYING_PASSED,
        RunState.VERIFYING_FAILED,
        RunState.ACTIVE_EXECUTING,
    ],
    RunState.COMPLETE: [RunState.ACTIVE_EXECUTING],
    RunState.ABANDONED: [],
}

VALID_STATE_QUERIES: Tuple[str, ...] = (
    tuple(p.value for p in ParentState)
    + ("active/*", "verifying/*")
    + tuple(s.value for s in RunState if "/" in s.value)
)


# -----------------------------------------------------------------------------
# State Predicates
# -----------------------------------------------------------------------------
def _value(state: Union[RunState, str]) -> str:
    return state.value if isinstance(state, RunState) else state


def parse_state(state: Union[RunState, str]) -> Tuple[str, Optional[str]]:
    """Split "parent/sub" into (parent, sub); sub is None for flat states."""
    parts = _value(state).split("/", 1)
    return parts[0], parts[1] if len(parts) == 2 else None


def match_state(state: Union[RunState, str], query: str) -> bool:
    """
    Test a state against a query.

    "verifying/failed" matches exactly, "verifying" and "verifying/*" match
    the parent and every substate under it.
    """
    value = _value(state)
    if query.endswith("/*"):
        parent = query[:-2]
        return value == parent or value.startswith(f"{parent}/")
    if "/" not in query:
        return value == query or value.startswith(f"{query}/")
    return value == query


def is_valid_state_query(query: str) -> bool:
    return query in VALID_STATE_QUERIES


def valid_targets(state: Union[RunState, str]) -> List[RunState]:
    """Targets reachable from state, including edges listed under its parent."""
    value = _value(state)
    targets: List[RunState] = []
    for key in (value, parse_state(value)[0]):
        for target in _transitions_for(key):
            if target not in targets:
                targets.append(target)
    return targets


def _transitions_for(key: str) -> List[RunState]:
    try:
        return VALID_TRANSITIONS.get(RunState(key), [])
    except ValueError:
        return []


def can_transition(from_state: Union[RunState, str], to_state: Union[RunState, str]) -> bool:
    """Exact edge lookup first, then the edge list of the parent state."""
    try:
        target = RunState(_value(to_state))
    except ValueError:
        return False
    if target in _transitions_for(_value(from_state)):
        return True
    parent, _ = parse_state(from_state)
    return target in _transitions_for(parent)


def resolve_target(
    from_state: Union[RunState, str],
    target: Union[RunState, str],
) -> Tuple[Optional[RunState], Optional[str]]:
    """
    Resolve a target query to a concrete state.

    A parent-only query ("verifying") resolves to the single listed edge under
    that parent. Returns (state, None) or (None, error).
    """
    value = _value(target)
    try:
        return RunState(value), None
    except ValueError:
        pass

    query = value[:-2] if value.endswith("/*") else value
    if "/" in query or query not in {p.value for p in ParentState}:
        return None, f"Unknown state '{value}'. Valid queries: {list(VALID_STATE_QUERIES)}"

    candidates = [t for t in valid_targets(from_state) if match_state(t, query)]
    if len(candidates) == 1:
        return candidates[0], None
    if not candidates:
        return None, (
            f"Cannot transition from '{_value(from_state)}' to '{value}'. "
            f"Valid: {', '.join(t.value for t in valid_targets(from_state)) or 'none'}"
        )
    return None, (
        f"Ambiguous target '{value}' from '{_value(from_state)}'. "
        f"Candidates: {', '.join(t.value for t in candidates)}"
    )


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
@dataclass
class TransitionResult:
    """Outcome of a transition attempt. On failure the run is unchanged."""
    success: bool
    run: Run
    from_state: RunState
    to_state: Optional[RunState] = None
    error: Optional[str] = None
    valid_targets: List[RunState] = field(default_factory=list)
    forced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "run_id": self.run.run_id,
            "from": self.from_state.value,
            "to": self.to_state.value if self.to_state else None,
            "error": self.error,
            "valid_targets": [t.value for t in self.valid_targets],
            "forced": self.forced,
        }


# -----------------------------------------------------------------------------
# State Machine
# -----------------------------------------------------------------------------
class StateMachine:
    """
    Validates and applies run transitions.

    Persists through the run store and mirrors each change to the audit log.
    Either collaborator may be None (pure in-memory use in tests).
    """

    def __init__(self, store=None, audit_log: Optional[AuditLog] = None):
        self._store = store
        self._audit_log = audit_log

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def check_transition(self, run: Run, target: Union[RunState, str]) -> Tuple[bool, str, Optional[RunState]]:
        """
        Check if a transition is valid without applying it.

        Returns (allowed, reason, target_state)
        """
        resolved, error = resolve_target(run.state, target)
        if resolved is None:
            return False, error, None

        if not can_transition(run.state, resolved):
            valid = valid_targets(run.state)
            return False, (
                f"Cannot transition from '{run.state.value}' to '{resolved.value}'. "
                f"Valid: {', '.join(t.value for t in valid) or 'none'}"
            ), None

        if (
            run.state in RunState.plan_states()
            and resolved not in RunState.plan_states()
            and resolved not in (RunState.ACTIVE_EXECUTING, RunState.ABANDONED)
        ):
            return False, (
                f"Cannot transition directly to '{resolved.value}' from plan state; "
                f"start with '{RunState.ACTIVE_EXECUTING.value}'"
            ), None

        return True, f"Transition allowed: {run.state.value} -> {resolved.value}", resolved

    # -------------------------------------------------------------------------
    # State Transitions
    # -------------------------------------------------------------------------

    def apply_transition(
        self,
        run: Run,
        target: Union[RunState, str],
        actor: str = "agent",
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """
        Validate and apply a transition, then persist.

        Raises whatever the store raises on save (e.g. StaleWriteError); the
        in-memory run is restored first.
        """
        return self._apply(run, target, actor, reason)

    def _apply(
        self,
        run: Run,
        target: Union[RunState, str],
        actor: str,
        reason: Optional[str],
        completion: Optional[CompletionRecord] = None,
    ) -> TransitionResult:
        old_state = run.state
        allowed, message, resolved = self.check_transition(run, target)
        if not allowed:
            logger.info(f"Run {run.run_id}: transition rejected ({message})")
            return TransitionResult(
                success=False,
                run=run,
                from_state=old_state,
                error=message,
                valid_targets=valid_targets(old_state),
            )

        transition = Transition(
            from_state=old_state,
            to_state=resolved,
            at=utc_now_iso(),
            by=actor,
            reason=reason or None,
        )
        self._commit(run, transition, completion)

        self._log_audit(
            "state_change",
            run,
            **{"from": old_state.value, "to": resolved.value, "by": actor, "reason": reason},
        )
        logger.info(f"Run {run.run_id}: {old_state.value} -> {resolved.value} (by: {actor})")

        return TransitionResult(success=True, run=run, from_state=old_state, to_state=resolved)

    def force_transition(
        self,
        run: Run,
        target: Union[RunState, str],
        actor: str = "human",
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """
        Apply a transition without validation.

        The transition is recorded with forced=True and a "[FORCED]" reason.
        Only an unknown target state is rejected.
        """
        return self._force(run, target, actor, reason)

    def _force(
        self,
        run: Run,
        target: Union[RunState, str],
        actor: str,
        reason: Optional[str],
        completion: Optional[CompletionRecord] = None,
    ) -> TransitionResult:
        old_state = run.state
        try:
            resolved = RunState(_value(target))
        except ValueError:
            resolved, error = resolve_target(old_state, target)
            if resolved is None:
                return TransitionResult(
                    success=False,
                    run=run,
                    from_state=old_state,
                    error=error,
                    valid_targets=list(RunState),
                )

        forced_reason = f"{FORCED_PREFIX} {reason or FORCED_DEFAULT_REASON}"
        transition = Transition(
            from_state=old_state,
            to_state=resolved,
            at=utc_now_iso(),
            by=actor,
            reason=forced_reason,
            forced=True,
        )
        self._commit(run, transition, completion)

        logger.warning(
            f"FORCED transition on run {run.run_id}: {old_state.value} -> {resolved.value} "
            f"(by: {actor}, validation bypassed, reason: {reason or FORCED_DEFAULT_REASON})"
        )
        self._log_audit(
            "forced_transition",
            run,
            **{
                "from": old_state.value,
                "to": resolved.value,
                "by": actor,
                "reason": forced_reason,
                "valid_edge": can_transition(old_state, resolved),
                "warning": "Escape hatch used - validation bypassed",
            },
        )

        return TransitionResult(
            success=True,
            run=run,
            from_state=old_state,
            to_state=resolved,
            forced=True,
        )

    def complete(
        self,
        run: Run,
        actor: str = "human",
        reason: Optional[str] = None,
        skip_verification: bool = False,
    ) -> TransitionResult:
        """
        Move a run to complete and attach a CompletionRecord.

        Without skip_verification the run must be in verifying/passed. With it,
        any other state is forced to complete. The record is saved together
        with the transition.
        """
        passed = run.state == RunState.VERIFYING_PASSED
        started_at = self._last_execution_start(run)

        duration = None
        if started_at is not None:
            duration = int((utc_now() - started_at).total_seconds() // 60)

        uat = run.verification.uat
        completion = CompletionRecord(
            timestamp="",
            verification_passed=passed,
            verification_skipped=not passed,
            issues_resolved=uat.issues_logged if uat and uat.issues_logged else None,
            duration_minutes=duration,
            reason=reason,
        )

        if passed or not skip_verification:
            return self._apply(run, RunState.COMPLETE, actor, reason, completion)
        return self._force(
            run, RunState.COMPLETE, actor, reason or "Completed with verification skipped", completion
        )

    # -------------------------------------------------------------------------
    # Internal Helpers
    # -------------------------------------------------------------------------

    def _commit(
        self,
        run: Run,
        transition: Transition,
        completion: Optional[CompletionRecord] = None,
    ) -> None:
        """Apply a transition in memory and persist; restore on save failure."""
        previous_state, previous_updated = run.state, run.updated
        previous_completion = run.completion
        count = len(run.transitions)
        run.transitions.append(transition)
        run.state = transition.to_state
        run.updated = transition.at
        if completion is not None:
            completion.timestamp = transition.at
            run.completion = completion

        if self._store is None:
            return
        try:
            self._store.save(run)
        except Exception:
            del run.transitions[count:]
            run.state = previous_state
            run.updated = previous_updated
            run.completion = previous_completion
            raise

    @staticmethod
    def _last_execution_start(run: Run):
        for transition in reversed(run.transitions):
            if transition.to_state == RunState.ACTIVE_EXECUTING:
                return parse_timestamp(transition.at)
        return None

    def _log_audit(self, event: str, run: Run, **fields: Any) -> None:
        if self._audit_log is None:
            return
        self._audit_log.log_event(event, run_id=run.run_id, **fields)
