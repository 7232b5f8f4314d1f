"""
Audit Log

Append-only JSONL trail of lifecycle events for forensics.

Every successful state transition, forced override, claim change and
recorded verification event is mirrored here. The log is a side channel:
write failures are logged and swallowed, never raised into the lifecycle
operation that produced the event.

CONSTRAINTS:
- APPEND-ONLY: Entries are never modified or deleted
- FSYNC: Every append is fsync'd
- READ-ONLY QUERIES: Reading never modifies the file
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any, List

logger = logging.getLogger("audit_log")


class AuditLog:
    """
    Append-only event log backed by a single JSONL file.

    Each entry carries a `ts` timestamp, an `event` name, an optional
    `run_id`, and any extra fields supplied by the caller.
    """

    def __init__(self, events_file: Path):
        """
        Initialize the log.

        Args:
            events_file: Path to the JSONL file (created on first write)
        """
        self._events_file = Path(events_file)

    @property
    def path(self) -> Path:
        return self._events_file

    # -------------------------------------------------------------------------
    # Write Operations (Append-Only)
    # -------------------------------------------------------------------------

    def log_event(self, event: str, run_id: Optional[str] = None, **fields: Any) -> Optional[Dict[str, Any]]:
        """
        Append one event.

        Returns the written entry, or None if the write failed.
        """
        entry: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": event,
        }
        if run_id is not None:
            entry["run_id"] = run_id
        entry.update(fields)

        try:
            self._events_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._events_file, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.warning(f"Failed to write audit log entry '{event}': {e}")
            return None

        return entry

    # -------------------------------------------------------------------------
    # Read Operations (Read-Only)
    # -------------------------------------------------------------------------

    def read_events(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Read logged events in append order.

        Args:
            limit: Return only the most recent N events

        Returns:
            List of event dicts; malformed lines are skipped
        """
        if not self._events_file.exists():
            return []

        events = []
        with open(self._events_file, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    # Skip malformed lines
                    continue

        if limit is not None:
            return events[-limit:] if limit > 0 else []
        return events

    def events_for_run(self, run_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Read events for a single run, oldest first."""
        events = [e for e in self.read_events() if e.get("run_id") == run_id]
        if limit is not None:
            return events[-limit:] if limit > 0 else []
        return events
