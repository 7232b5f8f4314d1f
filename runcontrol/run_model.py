"""
Run Data Models

A run is one tracked attempt to execute a plan's work. It is immutable
history (transitions, verification events) plus one mutable current-state
pointer and an optional claim.

States are two-level: a parent state, and for `active` and `verifying` a
required substate, written as "parent/substate".
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Set

from .verification_model import VerificationEvent, event_from_dict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are treated as UTC."""
    if not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class RunControlError(Exception):
    """Base error with structured details."""
    def __init__(self, code: str, message: str, details: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# -----------------------------------------------------------------------------
# States
# -----------------------------------------------------------------------------
class ParentState(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    READY = "ready"
    ACTIVE = "active"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ABANDONED = "abandoned"


class RunState(str, Enum):
    """
    Every state a run can be in.

    Plan states (proposed, approved, ready) describe work not yet started.
    Run states (active/*, verifying/*, complete, abandoned) describe work
    in flight or finished.
    """
    PROPOSED = "proposed"
    APPROVED = "approved"
    READY = "ready"
    ACTIVE_EXECUTING = "active/executing"
    ACTIVE_PAUSED = "active/paused"
    ACTIVE_CHECKPOINT = "active/checkpoint"
    VERIFYING_TESTING = "verifying/testing"
    VERIFYING_PASSED = "verifying/passed"
    VERIFYING_FAILED = "verifying/failed"
    VERIFYING_FIXING = "verifying/fixing"
    VERIFYING_RETESTING = "verifying/retesting"
    COMPLETE = "complete"
    ABANDONED = "abandoned"

    @property
    def parent(self) -> ParentState:
        return ParentState(self.value.split("/", 1)[0])

    @property
    def substate(self) -> Optional[str]:
        parts = self.value.split("/", 1)
        return parts[1] if len(parts) == 2 else None

    @classmethod
    def plan_states(cls) -> Set["RunState"]:
        return {cls.PROPOSED, cls.APPROVED, cls.READY}

    @classmethod
    def terminal_states(cls) -> Set["RunState"]:
        # complete keeps a rework edge back to active/executing
        return {cls.COMPLETE, cls.ABANDONED}


# Flat states written before substates existed
LEGACY_STATE_MIGRATIONS: Dict[str, RunState] = {
    "active": RunState.ACTIVE_EXECUTING,
    "paused": RunState.ACTIVE_PAUSED,
    "checkpoint": RunState.ACTIVE_CHECKPOINT,
    "verifying": RunState.VERIFYING_TESTING,
}


def normalize_state(value: str) -> RunState:
    """Convert a stored state string to a RunState, migrating legacy values."""
    if value in LEGACY_STATE_MIGRATIONS:
        return LEGACY_STATE_MIGRATIONS[value]
    return RunState(value)


# -----------------------------------------------------------------------------
# Data Classes
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Transition:
    """Immutable record of one state change. forced marks a bypassed validation."""
    from_state: RunState
    to_state: RunState
    at: str
    by: str
    reason: Optional[str] = None
    forced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "from": self.from_state.value,
            "to": self.to_state.value,
            "at": self.at,
            "by": self.by,
        }
        if self.reason:
            result["reason"] = self.reason
        if self.forced:
            result["forced"] = True
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transition":
        return cls(
            from_state=normalize_state(data["from"]),
            to_state=normalize_state(data["to"]),
            at=data["at"],
            by=data.get("by", "human"),
            reason=data.get("reason"),
            forced=data.get("forced", False),
        )


@dataclass
class UatRecord:
    """
    Single-shot human acceptance result.

    checks holds one entry per logged issue (UAT-001, UAT-002, ...).
    autopass is set when the run was passed with manual checks skipped.
    """
    status: str = "pending"
    ran_at: Optional[str] = None
    checks: List[Dict[str, Any]] = field(default_factory=list)
    issues_logged: int = 0
    autopass: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "status": self.status,
            "ran_at": self.ran_at,
            "checks": list(self.checks),
            "issues_logged": self.issues_logged,
        }
        if self.autopass:
            result["autopass"] = True
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UatRecord":
        return cls(
            status=data.get("status", "pending"),
            ran_at=data.get("ran_at"),
            checks=list(data.get("checks", [])),
            issues_logged=data.get("issues_logged", 0),
            autopass=data.get("autopass", False),
        )


@dataclass
class RunVerification:
    """Verification container: the event ledger plus the legacy UAT record."""
    events: List[VerificationEvent] = field(default_factory=list)
    uat: Optional[UatRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"events": [e.to_dict() for e in self.events]}
        if self.uat is not None:
            result["uat"] = self.uat.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunVerification":
        return cls(
            events=[event_from_dict(e) for e in data.get("events", [])],
            uat=UatRecord.from_dict(data["uat"]) if data.get("uat") else None,
        )


@dataclass
class CompletionRecord:
    """Set when a run reaches complete."""
    timestamp: str
    verification_passed: bool
    verification_skipped: bool
    issues_resolved: Optional[int] = None
    duration_minutes: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        verification: Dict[str, Any] = {
            "passed": self.verification_passed,
            "skipped": self.verification_skipped,
        }
        if self.issues_resolved is not None:
            verification["issues_resolved"] = self.issues_resolved
        result: Dict[str, Any] = {"timestamp": self.timestamp, "verification": verification}
        if self.duration_minutes is not None:
            result["duration_minutes"] = self.duration_minutes
        if self.reason:
            result["reason"] = self.reason
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompletionRecord":
        verification = data.get("verification", {})
        return cls(
            timestamp=data["timestamp"],
            verification_passed=verification.get("passed", False),
            verification_skipped=verification.get("skipped", False),
            issues_resolved=verification.get("issues_resolved"),
            duration_minutes=data.get("duration_minutes"),
            reason=data.get("reason"),
        )


@dataclass
class Run:
    """
    One tracked run.

    Invariants:
    - state is always a RunState member
    - transitions are only ever appended
    - claimed_by is None iff claim_expires is None

    version and read_at are never persisted; version is the mtime token
    of the file the run was loaded from.
    """
    run_id: str
    plan_path: str
    intent: str = ""
    initiative: Optional[str] = None
    state: RunState = RunState.PROPOSED
    created: str = field(default_factory=utc_now_iso)
    updated: str = field(default_factory=utc_now_iso)
    transitions: List[Transition] = field(default_factory=list)
    verification: RunVerification = field(default_factory=RunVerification)
    claimed_by: Optional[str] = None
    claimed_at: Optional[str] = None
    claim_expires: Optional[str] = None
    files_touched: List[str] = field(default_factory=list)
    priority: int = 99
    depends_on: List[str] = field(default_factory=list)
    completion: Optional[CompletionRecord] = None
    version: Optional[str] = field(default=None, compare=False)
    read_at: Optional[str] = field(default=None, compare=False)

    @property
    def is_claimed(self) -> bool:
        return self.claimed_by is not None

    def touch(self) -> None:
        self.updated = utc_now_iso()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "initiative": self.initiative,
            "intent": self.intent,
            "state": self.state.value,
            "plan_path": self.plan_path,
            "created": self.created,
            "updated": self.updated,
            "transitions": [t.to_dict() for t in self.transitions],
            "verification": self.verification.to_dict(),
            "claimed_by": self.claimed_by,
            "claimed_at": self.claimed_at,
            "claim_expires": self.claim_expires,
            "files_touched": list(self.files_touched),
            "priority": self.priority,
            "depends_on": list(self.depends_on),
            "completion": self.completion.to_dict() if self.completion else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Run":
        """Deserialize, filling defaults and migrating legacy states."""
        run_id = data.get("run_id") or data.get("id")
        if not run_id:
            raise ValueError("Run record has no 'run_id'")
        created = data.get("created") or utc_now_iso()
        return cls(
            run_id=run_id,
            plan_path=data.get("plan_path", ""),
            intent=data.get("intent", ""),
            initiative=data.get("initiative"),
            state=normalize_state(data.get("state", RunState.PROPOSED.value)),
            created=created,
            updated=data.get("updated") or created,
            transitions=[Transition.from_dict(t) for t in data.get("transitions", [])],
            verification=RunVerification.from_dict(data.get("verification") or {}),
            claimed_by=data.get("claimed_by"),
            claimed_at=data.get("claimed_at"),
            claim_expires=data.get("claim_expires"),
            files_touched=list(data.get("files_touched", [])),
            priority=data.get("priority", 99),
            depends_on=list(data.get("depends_on", [])),
            completion=CompletionRecord.from_dict(data["completion"]) if data.get("completion") else None,
        )
