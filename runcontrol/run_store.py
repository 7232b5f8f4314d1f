"""
Run Store

Durable per-run records with optimistic mtime versioning.

Layout: one JSON file per run, <runs_dir>/<run_id>.json, written atomically
(temp file + replace).

Versioning:
- A run loaded from disk carries version = the file's nanosecond mtime
- save() refuses to overwrite a file whose mtime moved since the load
  (StaleWriteError); load_versioned() detects a write racing the read
  (StaleReadError)
- The token is only as fine as the filesystem's mtime granularity: two
  writes inside one granule are indistinguishable
"""

import json
import logging
import os
import random
import re
import string
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from .audit_log import AuditLog
from .run_model import Run, RunControlError, RunState, parse_timestamp, utc_now_iso
from .state_machine import is_valid_state_query, match_state, VALID_STATE_QUERIES

logger = logging.getLogger("run_store")

RUN_ID_PREFIX = "run-"
RUN_ID_ALPHABET = string.ascii_lowercase + string.digits
JSONL_FORMAT_VERSION = "1.0"

PLAN_REF_PATTERN = re.compile(r"^([\d.]+(?:-[\d.]+)?)(?:-[A-Z]+)?-PLAN(?:\.skip)?\.md$", re.IGNORECASE)
DECIMAL_REF_PATTERNS = [
    re.compile(r"^(\d{1,2})\.(\d{1,2})-(\d{1,3})$"),
    re.compile(r"^(\d{1,2})\.(\d{1,2})\.-(\d{1,3})$"),
    re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{1,3})$"),
    re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{1,3})$"),
]
INTEGER_REF_PATTERN = re.compile(r"^(\d{1,2})-(\d{1,3})$")


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------
class RunNotFoundError(RunControlError):
    def __init__(self, run_id: str):
        super().__init__(
            code="RUN_NOT_FOUND",
            message=f"Run '{run_id}' not found",
            details={"run_id": run_id},
        )


class StaleReadError(RunControlError):
    def __init__(self, run_id: str, expected: str, actual: str):
        super().__init__(
            code="STALE_READ",
            message=(
                f"Run '{run_id}' changed during read: expected version {expected}, got {actual}. "
                f"mtime granularity is filesystem-dependent."
            ),
            details={"run_id": run_id, "expected_version": expected, "actual_version": actual},
        )


class StaleWriteError(RunControlError):
    def __init__(self, run_id: str, expected: str, actual: str):
        super().__init__(
            code="STALE_WRITE",
            message=(
                f"Run '{run_id}' was modified since it was read: expected version {expected}, "
                f"found {actual}. Reload and retry."
            ),
            details={"run_id": run_id, "expected_version": expected, "actual_version": actual},
        )


@dataclass
class SyncStats:
    """Counts from a JSONL import."""
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


# -----------------------------------------------------------------------------
# Reference Helpers
# -----------------------------------------------------------------------------
def generate_run_id() -> str:
    return RUN_ID_PREFIX + "".join(random.choice(RUN_ID_ALPHABET) for _ in range(6))


def parse_plan_ref(plan_path: str) -> Optional[str]:
    """
    Extract the plan reference from a plan file name.

    "plans/x/02-01-PLAN.md" -> "02-01", "03.1-03-FIX-PLAN.md" -> "03.1-03",
    "01-01-PLAN.skip.md" -> "01-01".
    """
    if not plan_path:
        return None
    match = PLAN_REF_PATTERN.match(plan_path.replace("\\", "/").rsplit("/", 1)[-1])
    return match.group(1) if match else None


def normalize_plan_ref(ref: str) -> Optional[str]:
    """Zero-pad a loosely typed plan reference ("6.6-25" -> "06.6-25", "8-3" -> "08-03")."""
    cleaned = ref.strip()
    for pattern in DECIMAL_REF_PATTERNS:
        match = pattern.match(cleaned)
        if match:
            major, minor, plan = match.groups()
            return f"{major.zfill(2)}.{minor}-{plan.zfill(2)}"
    match = INTEGER_REF_PATTERN.match(cleaned)
    if match:
        phase, plan = match.groups()
        return f"{phase.zfill(2)}-{plan.zfill(2)}"
    return None


def parse_initiative_ref(ref: str) -> Tuple[Optional[str], str]:
    """Split "initiative:02-01" into ("initiative", "02-01")."""
    index = ref.find(":")
    if index > 0 and ref[index + 1:index + 2].isdigit():
        return ref[:index], ref[index + 1:]
    return None, ref


# -----------------------------------------------------------------------------
# Run Store
# -----------------------------------------------------------------------------
class RunStore:
    """
    File-backed run persistence.

    Lookups are consistent within one operation; there is no cache.
    """

    def __init__(
        self,
        runs_dir: Path,
        audit_log: Optional[AuditLog] = None,
        project_root: Optional[Path] = None,
    ):
        """
        Initialize store.

        Args:
            runs_dir: Directory holding <run_id>.json files
            audit_log: Audit sink for create/delete events (optional)
            project_root: Base for normalizing absolute plan paths (optional)
        """
        self._runs_dir = Path(runs_dir)
        self._audit_log = audit_log
        self._project_root = Path(project_root).resolve() if project_root else None

    @property
    def runs_dir(self) -> Path:
        return self._runs_dir

    def _run_path(self, run_id: str) -> Path:
        return self._runs_dir / f"{run_id}.json"

    @staticmethod
    def _file_version(path: Path) -> Optional[str]:
        try:
            return str(path.stat().st_mtime_ns)
        except FileNotFoundError:
            return None

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def load(self, run_id: str) -> Optional[Run]:
        """Load a run, or None if missing or unreadable."""
        try:
            return self.load_versioned(run_id)
        except StaleReadError as e:
            logger.debug(f"Retrying read of run {run_id}: {e.message}")
            return self.load_versioned(run_id)

    def load_versioned(self, run_id: str) -> Optional[Run]:
        """
        Load a run and stamp it with its version token.

        Raises:
            StaleReadError: if the file's mtime changed during the read
        """
        path = self._run_path(run_id)
        before = self._file_version(path)
        if before is None:
            return None

        try:
            with open(path, "r") as f:
                data = json.load(f)
            run = Run.from_dict(data)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, ValueError, KeyError) as e:
            logger.warning(f"Failed to load run {run_id}: {e}")
            return None

        after = self._file_version(path)
        if after != before:
            raise StaleReadError(run_id, before, after or "file deleted")

        run.version = before
        run.read_at = utc_now_iso()
        return run

    def require(self, run_id: str) -> Run:
        run = self.load(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list_runs(
        self,
        state_query: Optional[str] = None,
        initiative: Optional[str] = None,
    ) -> List[Run]:
        """
        List runs, newest update first.

        Args:
            state_query: Exact state, parent ("active") or wildcard ("active/*")
            initiative: Only runs in this initiative

        Raises:
            ValueError: if state_query is not a recognized query
        """
        if state_query is not None and not is_valid_state_query(state_query):
            raise ValueError(
                f"Invalid state query '{state_query}'. Valid: {', '.join(VALID_STATE_QUERIES)}"
            )
        if not self._runs_dir.exists():
            return []

        runs = []
        for path in sorted(self._runs_dir.glob("*.json")):
            run = self._load_path(path)
            if run is None:
                continue
            if state_query is not None and not match_state(run.state, state_query):
                continue
            if initiative is not None and run.initiative != initiative:
                continue
            runs.append(run)

        return sorted(runs, key=lambda r: r.updated, reverse=True)

    def _load_path(self, path: Path) -> Optional[Run]:
        version = self._file_version(path)
        try:
            with open(path, "r") as f:
                run = Run.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, ValueError, KeyError) as e:
            logger.debug(f"Skipping invalid run file {path.name}: {e}")
            return None
        run.version = version
        run.read_at = utc_now_iso()
        return run

    def get_run_by_plan_path(self, plan_path: str) -> Optional[Run]:
        normalized = self.normalize_plan_path(plan_path)
        for run in self.list_runs():
            if self.normalize_plan_path(run.plan_path) == normalized:
                return run
        return None

    def normalize_plan_path(self, plan_path: str) -> str:
        """Make absolute plan paths inside the project root relative to it."""
        if not plan_path:
            return plan_path
        path = Path(plan_path)
        if not path.is_absolute() or self._project_root is None:
            return Path(os.path.normpath(plan_path)).as_posix()
        try:
            return path.resolve().relative_to(self._project_root).as_posix()
        except ValueError:
            return path.as_posix()

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def save(self, run: Run) -> str:
        """
        Persist a run atomically.

        If the run carries a version, the file on disk must still have it.

        Returns:
            The new version token (also set on run.version)

        Raises:
            StaleWriteError: if the file changed since the run was read
        """
        path = self._run_path(run.run_id)
        if run.version is not None:
            current = self._file_version(path)
            if current != run.version:
                raise StaleWriteError(run.run_id, run.version, current or "file deleted")

        self._runs_dir.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(".json.tmp")
        with open(temp_file, "w") as f:
            json.dump(run.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        temp_file.replace(path)

        run.version = self._file_version(path)
        logger.debug(f"Saved run {run.run_id} (version {run.version})")
        return run.version

    def save_if_fresh(self, run: Run) -> str:
        """
        Save only if the run was loaded with a version and it is still current.

        Raises:
            ValueError: if the run has no version
            StaleWriteError: on version mismatch
        """
        if not run.version:
            raise ValueError("save_if_fresh requires a run loaded from the store (no version)")
        return self.save(run)

    def create_run(
        self,
        plan_path: str,
        intent: str = "",
        initial_state: RunState = RunState.PROPOSED,
        initiative: Optional[str] = None,
        files_touched: Optional[List[str]] = None,
        priority: int = 99,
        depends_on: Optional[List[str]] = None,
    ) -> Run:
        """
        Create a run for a plan.

        IDEMPOTENT: returns the existing run if one already tracks plan_path.
        """
        existing = self.get_run_by_plan_path(plan_path)
        if existing is not None:
            return existing

        run_id = generate_run_id()
        while self._run_path(run_id).exists():
            run_id = generate_run_id()

        now = utc_now_iso()
        run = Run(
            run_id=run_id,
            plan_path=self.normalize_plan_path(plan_path),
            intent=intent,
            initiative=initiative,
            state=initial_state,
            created=now,
            updated=now,
            files_touched=list(files_touched or []),
            priority=priority,
            depends_on=list(depends_on or []),
        )
        self.save(run)

        if self._audit_log is not None:
            self._audit_log.log_event("run_created", run_id=run.run_id, plan=run.plan_path)
        logger.info(f"Created run {run.run_id} for {run.plan_path} ({initial_state.value})")
        return run

    def delete_run(self, run_id: str, reason: str = "repair_orphan") -> bool:
        """Delete a run record. Returns False if it did not exist."""
        path = self._run_path(run_id)
        if not path.exists():
            return False
        path.unlink()
        if self._audit_log is not None:
            self._audit_log.log_event("run_deleted", run_id=run_id, reason=reason)
        logger.info(f"Deleted run {run_id} ({reason})")
        return True

    # -------------------------------------------------------------------------
    # Reference Resolution
    # -------------------------------------------------------------------------

    def resolve_run_ref(self, ref: str, initiative: Optional[str] = None) -> Optional[Run]:
        """
        Resolve a run id or plan reference to a run.

        Accepts "run-abc123", "02-01", loose forms like "2-1", and
        "initiative:02-01". An explicit prefix restricts the search to that
        initiative. Otherwise the initiative argument is searched first, then
        every initiative.
        """
        explicit, plan_ref = parse_initiative_ref(ref)
        if explicit is None:
            by_id = self.load(ref)
            if by_id is not None:
                return by_id

        candidates = {plan_ref, normalize_plan_ref(plan_ref) or plan_ref}
        runs = self.list_runs()

        def matches(run: Run) -> bool:
            return parse_plan_ref(run.plan_path) in candidates

        if explicit is not None:
            return next((r for r in runs if r.initiative == explicit and matches(r)), None)

        if initiative is not None:
            scoped = next((r for r in runs if r.initiative == initiative and matches(r)), None)
            if scoped is not None:
                return scoped

        return next((r for r in runs if matches(r)), None)

    def resolve_run_refs(
        self,
        refs: List[str],
        initiative: Optional[str] = None,
    ) -> Tuple[List[Run], List[str]]:
        """Resolve several references. Returns (found, not_found)."""
        found, not_found = [], []
        for ref in refs:
            run = self.resolve_run_ref(ref, initiative=initiative)
            if run is None:
                not_found.append(ref)
            else:
                found.append(run)
        return found, not_found

    def find_orphaned_runs(self, plan_reader) -> List[Run]:
        """Runs whose plan file no longer exists."""
        return [r for r in self.list_runs() if not plan_reader.exists(r.plan_path)]

    # -------------------------------------------------------------------------
    # JSONL Sync
    # -------------------------------------------------------------------------

    def export_jsonl(self, output_path: Path) -> int:
        """
        Export all runs: a metadata line, then one run per line sorted by id.

        Returns the number of runs written.
        """
        runs = sorted(self.list_runs(), key=lambda r: r.run_id)
        metadata = {
            "version": JSONL_FORMAT_VERSION,
            "exported_at": utc_now_iso(),
            "run_count": len(runs),
        }
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            f.write(json.dumps(metadata) + "\n")
            for run in runs:
                f.write(json.dumps(run.to_dict()) + "\n")

        logger.info(f"Exported {len(runs)} runs to {output_path}")
        return len(runs)

    def import_jsonl(self, input_path: Path) -> SyncStats:
        """
        Reconcile local runs with an export.

        Missing runs are created; a run is replaced only when the imported
        copy has a strictly newer `updated` timestamp.
        """
        stats = SyncStats()
        input_path = Path(input_path)
        if not input_path.exists():
            return stats

        with open(input_path, "r") as f:
            lines = [line.strip() for line in f if line.strip()]

        # First line is export metadata
        for line in lines[1:]:
            try:
                incoming = Run.from_dict(json.loads(line))
            except (json.JSONDecodeError, ValueError, KeyError) as e:
                logger.debug(f"Skipping invalid JSONL run: {e}")
                stats.skipped += 1
                continue

            local = self.load(incoming.run_id)
            if local is None:
                self.save(incoming)
                stats.created += 1
            elif parse_timestamp(incoming.updated) > parse_timestamp(local.updated):
                self.save(incoming)
                stats.updated += 1
            else:
                stats.unchanged += 1

        logger.info(
            f"Imported runs from {input_path}: {stats.created} created, {stats.updated} updated, "
            f"{stats.unchanged} unchanged, {stats.skipped} skipped"
        )
        return stats
