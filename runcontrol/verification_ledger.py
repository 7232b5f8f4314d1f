"""
Verification Ledger

Append-only verification events per run and the pure fold that derives
current check status from them.

Derivation:
    for each check defined in the current plan:
        latest check_executed / manual_recorded event with that name wins
        no event -> pending
    manual_pending = any manual check still pending

Checks removed from the plan vanish from the snapshot (their events stay
for forensics); checks re-added later pick their history back up.
"""

from typing import Iterable, List, Optional, Sequence

from .run_model import Run, utc_now_iso
from .verification_model import (
    CheckExecutedEvent,
    CheckKind,
    CheckStatus,
    DerivedCheck,
    ManualRecordedEvent,
    OverallStatus,
    VerificationCheckDef,
    VerificationEvent,
    VerificationEventType,
    VerificationSnapshot,
)


def append_event(run: Run, event: VerificationEvent) -> None:
    """Append an event to the run's ledger. Persisting is the caller's job."""
    run.verification.events.append(event)
    run.updated = utc_now_iso()


def _derive_check(check_def: VerificationCheckDef, events: Sequence[VerificationEvent]) -> DerivedCheck:
    latest = latest_result_event(events, check_def.name)
    kind = CheckKind.MANUAL if check_def.manual else CheckKind.CMD
    if latest is None:
        return DerivedCheck(
            name=check_def.name,
            kind=kind,
            status=CheckStatus.PENDING,
            timeout=check_def.timeout,
        )

    if latest.type == VerificationEventType.CHECK_EXECUTED:
        return DerivedCheck(
            name=check_def.name,
            kind=kind,
            status=latest.status,
            exit_code=latest.exit_code,
            output_tail=latest.output_tail,
            timeout=check_def.timeout,
            updated_at=latest.at,
            by=latest.by,
        )

    return DerivedCheck(
        name=check_def.name,
        kind=kind,
        status=latest.status,
        timeout=check_def.timeout,
        updated_at=latest.at,
        by=latest.by,
        reason=latest.reason,
    )


def derive_snapshot(
    events: Iterable[VerificationEvent],
    check_defs: Sequence[VerificationCheckDef],
) -> VerificationSnapshot:
    """Fold events against the current check definitions."""
    events = tuple(events)
    checks = tuple(_derive_check(d, events) for d in check_defs)
    manual_pending = any(
        c.kind == CheckKind.MANUAL and c.status == CheckStatus.PENDING for c in checks
    )
    return VerificationSnapshot(events=events, checks=checks, manual_pending=manual_pending)


def derive_for_run(run: Run, check_defs: Sequence[VerificationCheckDef]) -> VerificationSnapshot:
    return derive_snapshot(run.verification.events, check_defs)


def overall_status(snapshot: VerificationSnapshot) -> OverallStatus:
    """fail if any check failed or errored, pass if all passed (or none exist), else pending."""
    return snapshot.overall_status


def pending_checks(snapshot: VerificationSnapshot, kind: Optional[CheckKind] = None) -> List[DerivedCheck]:
    return [
        c for c in snapshot.checks
        if c.status == CheckStatus.PENDING and (kind is None or c.kind == kind)
    ]


def latest_result_event(
    events: Iterable[VerificationEvent],
    name: str,
) -> Optional[VerificationEvent]:
    """Latest check_executed or manual_recorded event for a check name."""
    latest = None
    for event in events:
        if isinstance(event, (CheckExecutedEvent, ManualRecordedEvent)) and event.name == name:
            latest = event
    return latest
