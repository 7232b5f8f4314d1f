"""
Verification Data Models

Frozen dataclasses and enums for event-sourced run verification.

- Check definitions come from a plan's <verification> block
- Events are the append-only source of truth for a run's verification
- Derived checks and snapshots are never stored; they are recomputed
  from events plus the current check definitions

This module defines data only. It does not execute, persist or derive.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Union


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class CheckKind(str, Enum):
    """How a check is resolved."""
    CMD = "cmd"
    MANUAL = "manual"


class CheckStatus(str, Enum):
    """
    Status of a single derived check.

    ERROR is distinct from FAIL: the check never produced a verdict
    (timeout or launch failure).
    """
    PENDING = "pending"
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"

    @classmethod
    def resolved_states(cls) -> set:
        return {cls.PASS, cls.FAIL, cls.ERROR}


class VerificationEventType(str, Enum):
    """Event type tags stored in the ledger."""
    RUN_STARTED = "run_started"
    CHECK_EXECUTED = "check_executed"
    MANUAL_RECORDED = "manual_recorded"


class VerificationFormat(str, Enum):
    """Dialect of a <verification> block."""
    STRUCTURED = "structured"  # YAML list of {name, cmd|manual, timeout}
    CHECKLIST = "checklist"    # - [ ] `cmd` text / - [ ] manual text
    FREEFORM = "freeform"      # bullets, all manual
    EMPTY = "empty"            # no block at all


class OverallStatus(str, Enum):
    """Aggregate verification status across all checks."""
    PASS = "pass"
    FAIL = "fail"
    PENDING = "pending"


# -----------------------------------------------------------------------------
# Check Definitions (Frozen - Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class VerificationCheckDef:
    """
    A named check parsed from a plan.

    Either automatable (cmd set) or manual (manual=True), never both.
    timeout is in seconds; None means the executor default.
    """
    name: str
    cmd: Optional[str] = None
    manual: bool = False
    timeout: Optional[float] = None
    description: Optional[str] = None

    @property
    def kind(self) -> CheckKind:
        return CheckKind.MANUAL if self.manual else CheckKind.CMD

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"name": self.name}
        if self.cmd is not None:
            result["cmd"] = self.cmd
        if self.manual:
            result["manual"] = True
        if self.timeout is not None:
            result["timeout"] = self.timeout
        if self.description is not None:
            result["description"] = self.description
        return result


# -----------------------------------------------------------------------------
# Ledger Events (Frozen - Append-Only)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class RunStartedEvent:
    """An automated run began; checks_planned lists cmd checks in plan order."""
    at: str
    by: str
    checks_planned: Tuple[str, ...] = ()
    type: VerificationEventType = field(default=VerificationEventType.RUN_STARTED, init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "at": self.at,
            "by": self.by,
            "checks_planned": list(self.checks_planned),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunStartedEvent":
        return cls(
            at=data["at"],
            by=data.get("by", "agent"),
            checks_planned=tuple(data.get("checks_planned", [])),
        )


@dataclass(frozen=True)
class CheckExecutedEvent:
    """A cmd check was executed by the agent."""
    name: str
    status: CheckStatus  # PASS, FAIL or ERROR
    exit_code: Optional[int]
    output_tail: str
    at: str
    by: str = "agent"
    type: VerificationEventType = field(default=VerificationEventType.CHECK_EXECUTED, init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "output_tail": self.output_tail,
            "at": self.at,
            "by": self.by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckExecutedEvent":
        return cls(
            name=data["name"],
            status=CheckStatus(data["status"]),
            exit_code=data.get("exit_code"),
            output_tail=data.get("output_tail", ""),
            at=data["at"],
            by=data.get("by", "agent"),
        )


@dataclass(frozen=True)
class ManualRecordedEvent:
    """A human or agent recorded a verdict for a manual check."""
    name: str
    status: CheckStatus  # PASS or FAIL
    at: str
    by: str
    reason: Optional[str] = None
    type: VerificationEventType = field(default=VerificationEventType.MANUAL_RECORDED, init=False)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "type": self.type.value,
            "name": self.name,
            "status": self.status.value,
            "at": self.at,
            "by": self.by,
        }
        if self.reason is not None:
            result["reason"] = self.reason
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManualRecordedEvent":
        return cls(
            name=data["name"],
            status=CheckStatus(data["status"]),
            at=data["at"],
            by=data.get("by", "human"),
            reason=data.get("reason"),
        )


VerificationEvent = Union[RunStartedEvent, CheckExecutedEvent, ManualRecordedEvent]

EVENT_TYPES = {
    VerificationEventType.RUN_STARTED: RunStartedEvent,
    VerificationEventType.CHECK_EXECUTED: CheckExecutedEvent,
    VerificationEventType.MANUAL_RECORDED: ManualRecordedEvent,
}


def event_from_dict(data: Dict[str, Any]) -> VerificationEvent:
    """Deserialize a ledger event by its type tag."""
    try:
        event_type = VerificationEventType(data.get("type"))
    except ValueError:
        raise ValueError(f"Unknown verification event type: {data.get('type')!r}")
    return EVENT_TYPES[event_type].from_dict(data)


# -----------------------------------------------------------------------------
# Derived Views (Never Stored)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class DerivedCheck:
    """Current status of one named check, folded from ledger events."""
    name: str
    kind: CheckKind
    status: CheckStatus
    exit_code: Optional[int] = None
    output_tail: Optional[str] = None
    timeout: Optional[float] = None
    updated_at: Optional[str] = None
    by: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "status": self.status.value,
        }
        for key in ("exit_code", "output_tail", "timeout", "updated_at", "by", "reason"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result


@dataclass(frozen=True)
class VerificationSnapshot:
    """Events plus the checks derived from them."""
    events: Tuple[VerificationEvent, ...]
    checks: Tuple[DerivedCheck, ...]
    manual_pending: bool

    @property
    def overall_status(self) -> OverallStatus:
        statuses = [c.status for c in self.checks]
        if not statuses:
            return OverallStatus.PASS
        if any(s in (CheckStatus.FAIL, CheckStatus.ERROR) for s in statuses):
            return OverallStatus.FAIL
        if all(s == CheckStatus.PASS for s in statuses):
            return OverallStatus.PASS
        return OverallStatus.PENDING

    def get_check(self, name: str) -> Optional[DerivedCheck]:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": [e.to_dict() for e in self.events],
            "checks": [c.to_dict() for c in self.checks],
            "manual_pending": self.manual_pending,
            "overall_status": self.overall_status.value,
        }


@dataclass(frozen=True)
class ParseResult:
    """
    Outcome of parsing a <verification> block.

    On failure checks is always empty; errors lists every problem found.
    """
    success: bool
    format: VerificationFormat
    checks: Tuple[VerificationCheckDef, ...] = ()
    errors: Tuple[str, ...] = ()

    @property
    def check_names(self) -> List[str]:
        return [c.name for c in self.checks]
