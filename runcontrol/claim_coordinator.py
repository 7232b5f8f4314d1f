"""
Claim Coordinator

Advisory, single-host execution leases on runs.

- claim: exclusive lease with a wall-clock expiry (default 30 minutes)
- release: clears the lease; releasing an unclaimed run is a no-op
- gc: releases every expired lease (dry run reports only)
- conflict detection: a run's files_touched against every other run that is
  active/* or holds a live claim

Held claims and file overlaps block a claim unless forced. A forced claim
always reports the conflicts it overrode and leaves a forced_claim audit
event.

Crash recovery relies on TTL expiry plus gc. There are no fencing tokens.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, Any, List, Sequence

from .audit_log import AuditLog
from .run_model import Run, RunState, parse_timestamp, utc_now
from .run_store import RunStore
from .state_machine import StateMachine, TransitionResult, match_state

logger = logging.getLogger("claim_coordinator")

DEFAULT_CLAIM_TTL_MINUTES = 30


# -----------------------------------------------------------------------------
# Claim Predicates
# -----------------------------------------------------------------------------
def is_claim_expired(run: Run, now: Optional[datetime] = None) -> bool:
    """A missing expiry counts as expired."""
    expires = parse_timestamp(run.claim_expires)
    if expires is None:
        return True
    return expires < (now or utc_now())


def is_run_available(run: Run, now: Optional[datetime] = None) -> bool:
    """Unclaimed, or the claim has expired."""
    return not run.claimed_by or is_claim_expired(run, now)


def has_live_claim(run: Run, now: Optional[datetime] = None) -> bool:
    return bool(run.claimed_by) and not is_claim_expired(run, now)


def is_active_ish(run: Run, now: Optional[datetime] = None) -> bool:
    """active/*, or a live claim on a run that is not finished."""
    if match_state(run.state, "active"):
        return True
    return has_live_claim(run, now) and run.state not in RunState.terminal_states()


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
class ConflictKind(str, Enum):
    CLAIM_HELD = "claim_held"
    FILE_OVERLAP = "file_overlap"


@dataclass(frozen=True)
class ClaimConflict:
    """One reason a claim would be refused."""
    kind: ConflictKind
    run_id: str
    claimed_by: Optional[str] = None
    claim_expires: Optional[str] = None
    files: tuple = ()

    def describe(self) -> str:
        if self.kind == ConflictKind.CLAIM_HELD:
            return f"Run {self.run_id} already claimed by {self.claimed_by} (expires {self.claim_expires})"
        return f"File conflict with {self.run_id}: {', '.join(self.files)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "run_id": self.run_id,
            "claimed_by": self.claimed_by,
            "claim_expires": self.claim_expires,
            "files": list(self.files),
        }


@dataclass
class ClaimResult:
    """Outcome of claim/release/activate. On failure the run is unchanged."""
    success: bool
    run: Run
    error: Optional[str] = None
    conflicts: List[ClaimConflict] = field(default_factory=list)
    forced: bool = False
    renewed: bool = False
    transition: Optional[TransitionResult] = None

    @property
    def conflicting_run_ids(self) -> List[str]:
        ids = []
        for conflict in self.conflicts:
            if conflict.run_id not in ids:
                ids.append(conflict.run_id)
        return ids


@dataclass
class ExpiredClaim:
    run_id: str
    claimed_by: str
    claim_expires: Optional[str]


@dataclass
class GcReport:
    """Expired claims found by gc; released is empty on a dry run."""
    dry_run: bool
    expired: List[ExpiredClaim] = field(default_factory=list)
    released: List[str] = field(default_factory=list)


@dataclass
class ReadyRun:
    """A run an agent could pick up now, with its file conflicts."""
    run: Run
    conflicts_with: List[str] = field(default_factory=list)
    can_claim: bool = True


# -----------------------------------------------------------------------------
# Conflict Detection
# -----------------------------------------------------------------------------
def find_file_overlaps(
    run: Run,
    runs: Sequence[Run],
    now: Optional[datetime] = None,
) -> List[ClaimConflict]:
    """File overlaps between run and every other active-ish run."""
    if not run.files_touched:
        return []
    wanted = set(run.files_touched)
    conflicts = []
    for other in runs:
        if other.run_id == run.run_id or not is_active_ish(other, now):
            continue
        overlap = [f for f in other.files_touched if f in wanted]
        if overlap:
            conflicts.append(ClaimConflict(
                kind=ConflictKind.FILE_OVERLAP,
                run_id=other.run_id,
                claimed_by=other.claimed_by,
                claim_expires=other.claim_expires,
                files=tuple(sorted(set(overlap))),
            ))
    return conflicts


def detect_file_conflicts(
    run: Run,
    runs: Sequence[Run],
    now: Optional[datetime] = None,
) -> List[str]:
    """Ids of active-ish runs whose files_touched intersect run's."""
    return [c.run_id for c in find_file_overlaps(run, runs, now)]


# -----------------------------------------------------------------------------
# Claim Coordinator
# -----------------------------------------------------------------------------
class ClaimCoordinator:
    """Grants, releases and garbage-collects run claims."""

    def __init__(
        self,
        store: RunStore,
        state_machine: Optional[StateMachine] = None,
        audit_log: Optional[AuditLog] = None,
        default_ttl_minutes: int = DEFAULT_CLAIM_TTL_MINUTES,
    ):
        self._store = store
        self._state_machine = state_machine
        self._audit_log = audit_log
        self._default_ttl_minutes = default_ttl_minutes

    # -------------------------------------------------------------------------
    # Claim / Release
    # -------------------------------------------------------------------------

    def claim(
        self,
        run: Run,
        agent_id: str,
        ttl_minutes: Optional[int] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> ClaimResult:
        """
        Claim a run for agent_id.

        Re-claiming a run the agent already holds renews the lease. With
        force, conflicts are overridden and returned on the result.
        """
        if not agent_id:
            return ClaimResult(success=False, run=run, error="agent_id is required")
        ttl = ttl_minutes if ttl_minutes is not None else self._default_ttl_minutes
        if ttl <= 0:
            return ClaimResult(success=False, run=run, error=f"Claim TTL must be positive, got {ttl}")

        now = now or utc_now()
        conflicts = self.find_conflicts(run, agent_id, now)

        if conflicts and not force:
            error = "; ".join(c.describe() for c in conflicts)
            logger.info(f"Claim of run {run.run_id} by {agent_id} refused: {error}")
            return ClaimResult(success=False, run=run, error=error, conflicts=conflicts)

        renewed = run.claimed_by == agent_id and not is_claim_expired(run, now)
        previous_holder = run.claimed_by
        run.claimed_by = agent_id
        run.claimed_at = now.isoformat()
        run.claim_expires = (now + timedelta(minutes=ttl)).isoformat()
        run.updated = now.isoformat()
        self._store.save(run)

        if conflicts:
            logger.warning(
                f"FORCED claim of run {run.run_id} by {agent_id}, overriding: "
                f"{'; '.join(c.describe() for c in conflicts)}"
            )
            self._log_audit(
                "forced_claim",
                run,
                agent=agent_id,
                previous_holder=previous_holder,
                conflicts=[c.to_dict() for c in conflicts],
                warning="Claim forced - conflicts overridden",
            )
        else:
            self._log_audit("run_claimed", run, agent=agent_id, claim_expires=run.claim_expires, renewed=renewed)
        logger.info(f"Run {run.run_id} claimed by {agent_id} until {run.claim_expires}")

        return ClaimResult(success=True, run=run, conflicts=conflicts, forced=bool(conflicts), renewed=renewed)

    def release(self, run: Run, agent_id: Optional[str] = None, now: Optional[datetime] = None) -> ClaimResult:
        """
        Clear a run's claim.

        Idempotent on unclaimed runs. A live claim held by someone other than
        agent_id is not released.
        """
        if not run.claimed_by:
            return ClaimResult(success=True, run=run)

        if agent_id and agent_id != run.claimed_by and not is_claim_expired(run, now):
            return ClaimResult(
                success=False,
                run=run,
                error=f"Run {run.run_id} is claimed by {run.claimed_by}, not {agent_id}",
                conflicts=[ClaimConflict(
                    kind=ConflictKind.CLAIM_HELD,
                    run_id=run.run_id,
                    claimed_by=run.claimed_by,
                    claim_expires=run.claim_expires,
                )],
            )

        holder = run.claimed_by
        run.claimed_by = None
        run.claimed_at = None
        run.claim_expires = None
        run.touch()
        self._store.save(run)

        self._log_audit("run_released", run, agent=holder)
        logger.info(f"Run {run.run_id} released (was {holder})")
        return ClaimResult(success=True, run=run)

    def find_conflicts(self, run: Run, agent_id: str, now: Optional[datetime] = None) -> List[ClaimConflict]:
        """Everything that would block agent_id from claiming run."""
        now = now or utc_now()
        conflicts = []
        if has_live_claim(run, now) and run.claimed_by != agent_id:
            conflicts.append(ClaimConflict(
                kind=ConflictKind.CLAIM_HELD,
                run_id=run.run_id,
                claimed_by=run.claimed_by,
                claim_expires=run.claim_expires,
            ))
        conflicts.extend(find_file_overlaps(run, self._store.list_runs(), now))
        return conflicts

    # -------------------------------------------------------------------------
    # Activation
    # -------------------------------------------------------------------------

    def activate(
        self,
        run: Run,
        agent_id: str,
        ttl_minutes: Optional[int] = None,
        force: bool = False,
        actor: str = "agent",
    ) -> ClaimResult:
        """
        Claim a run and move it to active/executing.

        The transition is validated before claiming, so a refused start leaves
        the run untouched.
        """
        if self._state_machine is None:
            raise RuntimeError("ClaimCoordinator.activate requires a state machine")

        if run.state != RunState.ACTIVE_EXECUTING:
            allowed, message, _ = self._state_machine.check_transition(run, RunState.ACTIVE_EXECUTING)
            if not allowed:
                return ClaimResult(success=False, run=run, error=message)

        result = self.claim(run, agent_id, ttl_minutes=ttl_minutes, force=force)
        if not result.success or run.state == RunState.ACTIVE_EXECUTING:
            return result

        result.transition = self._state_machine.apply_transition(
            run, RunState.ACTIVE_EXECUTING, actor, reason=f"started by {agent_id}"
        )
        if not result.transition.success:
            result.success = False
            result.error = result.transition.error
        return result

    # -------------------------------------------------------------------------
    # Queries and GC
    # -------------------------------------------------------------------------

    def ready_runs(self, now: Optional[datetime] = None) -> List[ReadyRun]:
        """
        Runs an agent could pick up: ready or active/*, available, with every
        known dependency complete. Sorted by priority (0 first).
        """
        now = now or utc_now()
        runs = self._store.list_runs()
        by_id = {r.run_id: r for r in runs}

        ready = []
        for run in runs:
            if not (run.state == RunState.READY or match_state(run.state, "active")):
                continue
            if not is_run_available(run, now):
                continue
            blockers = [
                dep for dep in run.depends_on
                if dep in by_id and by_id[dep].state != RunState.COMPLETE
            ]
            if blockers:
                continue
            ready.append(ReadyRun(run=run, conflicts_with=detect_file_conflicts(run, runs, now)))

        return sorted(ready, key=lambda r: r.run.priority)

    def gc(self, dry_run: bool = False, now: Optional[datetime] = None) -> GcReport:
        """Release every expired claim."""
        now = now or utc_now()
        report = GcReport(dry_run=dry_run)

        for run in self._store.list_runs():
            if not run.claimed_by or not is_claim_expired(run, now):
                continue
            report.expired.append(ExpiredClaim(
                run_id=run.run_id,
                claimed_by=run.claimed_by,
                claim_expires=run.claim_expires,
            ))
            if not dry_run:
                self.release(run, now=now)
                report.released.append(run.run_id)

        if report.expired:
            logger.info(
                f"Claim GC{' (dry run)' if dry_run else ''}: "
                f"{len(report.expired)} expired, {len(report.released)} released"
            )
        return report

    def _log_audit(self, event: str, run: Run, **fields: Any) -> None:
        if self._audit_log is None:
            return
        self._audit_log.log_event(event, run_id=run.run_id, **fields)
