"""
Claim Coordinator Tests

Test Categories:
1. Claim Predicate Tests
2. Claim Tests (mutual exclusion, renewal, expiry)
3. Forced Claim Tests
4. Release Tests
5. File Conflict Tests
6. Activation Tests
7. Ready Run Tests
8. Garbage Collection Tests
"""

from datetime import timedelta

from runcontrol.claim_coordinator import (
    ConflictKind,
    detect_file_conflicts,
    has_live_claim,
    is_active_ish,
    is_claim_expired,
    is_run_available,
)
from runcontrol.run_model import Run, RunState, parse_timestamp, utc_now


def create_test_run(state=RunState.READY, **fields) -> Run:
    return Run(run_id=fields.pop("run_id", "run-claim1"), plan_path="p.md", state=state, **fields)


# -----------------------------------------------------------------------------
# Test 1: Claim Predicates
# -----------------------------------------------------------------------------
class TestClaimPredicates:
    def test_missing_expiry_counts_as_expired(self):
        assert is_claim_expired(create_test_run(claimed_by="agent-1")) is True

    def test_future_expiry_is_live(self):
        now = utc_now()
        run = create_test_run(claimed_by="agent-1", claim_expires=(now + timedelta(minutes=5)).isoformat())

        assert is_claim_expired(run, now) is False
        assert has_live_claim(run, now) is True
        assert is_run_available(run, now) is False

    def test_past_expiry_is_available(self):
        now = utc_now()
        run = create_test_run(claimed_by="agent-1", claim_expires=(now - timedelta(seconds=1)).isoformat())

        assert is_run_available(run, now) is True
        assert has_live_claim(run, now) is False

    def test_unclaimed_is_available(self):
        assert is_run_available(create_test_run()) is True

    def test_active_ish(self):
        now = utc_now()
        live = (now + timedelta(minutes=5)).isoformat()

        assert is_active_ish(create_test_run(RunState.ACTIVE_PAUSED), now)
        assert is_active_ish(create_test_run(RunState.READY, claimed_by="a", claim_expires=live), now)
        assert not is_active_ish(create_test_run(RunState.READY), now)
        assert not is_active_ish(create_test_run(RunState.COMPLETE, claimed_by="a", claim_expires=live), now)


# -----------------------------------------------------------------------------
# Test 2: Claims
# -----------------------------------------------------------------------------
class TestClaim:
    """At most one live claim per run."""

    def test_claim_sets_lease(self, store, coordinator, audit_log):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        now = utc_now()

        result = coordinator.claim(run, "agent-1", now=now)

        assert result.success is True
        assert result.forced is False
        assert run.claimed_by == "agent-1"
        assert parse_timestamp(run.claim_expires) == now + timedelta(minutes=30)
        assert store.load(run.run_id).claimed_by == "agent-1"
        assert audit_log.events_for_run(run.run_id)[-1]["event"] == "run_claimed"

    def test_second_agent_blocked(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        coordinator.claim(run, "agent-1")

        result = coordinator.claim(run, "agent-2")

        assert result.success is False
        assert "already claimed by agent-1" in result.error
        assert result.conflicts[0].kind == ConflictKind.CLAIM_HELD
        assert run.claimed_by == "agent-1"
        assert store.load(run.run_id).claimed_by == "agent-1"

    def test_same_agent_renews(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        now = utc_now()
        coordinator.claim(run, "agent-1", now=now)

        result = coordinator.claim(run, "agent-1", ttl_minutes=60, now=now + timedelta(minutes=10))

        assert result.success is True
        assert result.renewed is True
        assert parse_timestamp(run.claim_expires) == now + timedelta(minutes=70)

    def test_expired_claim_can_be_taken(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        now = utc_now()
        coordinator.claim(run, "agent-1", ttl_minutes=5, now=now)

        result = coordinator.claim(run, "agent-2", now=now + timedelta(minutes=6))

        assert result.success is True
        assert result.forced is False
        assert run.claimed_by == "agent-2"

    def test_invalid_arguments(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)

        assert coordinator.claim(run, "").success is False
        assert "TTL must be positive" in coordinator.claim(run, "agent-1", ttl_minutes=0).error
        assert run.claimed_by is None


# -----------------------------------------------------------------------------
# Test 3: Forced Claims
# -----------------------------------------------------------------------------
class TestForcedClaim:
    def test_force_overrides_and_reports(self, store, coordinator, audit_log, caplog):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        coordinator.claim(run, "agent-1")

        with caplog.at_level("WARNING", logger="claim_coordinator"):
            result = coordinator.claim(run, "agent-2", force=True)

        assert result.success is True
        assert result.forced is True
        assert result.conflicting_run_ids == [run.run_id]
        assert run.claimed_by == "agent-2"
        assert any("FORCED claim" in r.message for r in caplog.records)

        forced = [e for e in audit_log.events_for_run(run.run_id) if e["event"] == "forced_claim"]
        assert len(forced) == 1
        assert forced[0]["previous_holder"] == "agent-1"
        assert forced[0]["conflicts"][0]["kind"] == "claim_held"

    def test_force_without_conflict_is_plain_claim(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)

        result = coordinator.claim(run, "agent-1", force=True)

        assert result.success is True
        assert result.forced is False


# -----------------------------------------------------------------------------
# Test 4: Release
# -----------------------------------------------------------------------------
class TestRelease:
    def test_release_by_holder(self, store, coordinator, audit_log):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        coordinator.claim(run, "agent-1")

        result = coordinator.release(run, "agent-1")

        assert result.success is True
        assert run.claimed_by is None
        assert run.claim_expires is None
        assert store.load(run.run_id).claimed_by is None
        assert audit_log.events_for_run(run.run_id)[-1]["event"] == "run_released"

    def test_release_unclaimed_is_noop(self, store, coordinator, audit_log):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        events_before = len(audit_log.read_events())

        assert coordinator.release(run).success is True
        assert len(audit_log.read_events()) == events_before

    def test_release_by_other_agent_refused(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        coordinator.claim(run, "agent-1")

        result = coordinator.release(run, "agent-2")

        assert result.success is False
        assert run.claimed_by == "agent-1"

    def test_release_expired_by_other_agent(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        now = utc_now()
        coordinator.claim(run, "agent-1", ttl_minutes=1, now=now - timedelta(minutes=5))

        assert coordinator.release(run, "agent-2").success is True
        assert run.claimed_by is None


# -----------------------------------------------------------------------------
# Test 5: File Conflicts
# -----------------------------------------------------------------------------
class TestFileConflicts:
    """Overlapping files_touched with active-ish runs block a claim."""

    def test_overlap_with_active_run(self, store, coordinator):
        active = store.create_run(
            "plans/01-01-PLAN.md",
            initial_state=RunState.ACTIVE_EXECUTING,
            files_touched=["src/api.py", "src/db.py"],
        )
        candidate = store.create_run(
            "plans/01-02-PLAN.md",
            initial_state=RunState.READY,
            files_touched=["src/db.py", "README.md"],
        )

        result = coordinator.claim(candidate, "agent-2")

        assert result.success is False
        assert result.conflicts[0].kind == ConflictKind.FILE_OVERLAP
        assert result.conflicts[0].run_id == active.run_id
        assert result.conflicts[0].files == ("src/db.py",)
        assert "src/db.py" in result.error

        forced = coordinator.claim(candidate, "agent-2", force=True)
        assert forced.success is True
        assert forced.conflicting_run_ids == [active.run_id]

    def test_finished_runs_do_not_conflict(self, store, coordinator):
        store.create_run("plans/01-01-PLAN.md", initial_state=RunState.COMPLETE, files_touched=["src/db.py"])
        store.create_run("plans/01-02-PLAN.md", initial_state=RunState.ABANDONED, files_touched=["src/db.py"])
        candidate = store.create_run("plans/01-03-PLAN.md", initial_state=RunState.READY, files_touched=["src/db.py"])

        assert coordinator.claim(candidate, "agent-1").success is True

    def test_conflict_clears_when_holder_completes(self, store, coordinator, state_machine):
        holder = store.create_run("plans/02-01-PLAN.md", initial_state=RunState.READY, files_touched=["src/db.py"])
        candidate = store.create_run("plans/02-02-PLAN.md", initial_state=RunState.READY, files_touched=["src/db.py"])
        assert coordinator.activate(holder, "agent-1").success is True

        blocked = coordinator.claim(candidate, "agent-2")
        assert blocked.success is False
        assert blocked.conflicting_run_ids == [holder.run_id]

        state_machine.apply_transition(holder, RunState.VERIFYING_TESTING)
        state_machine.apply_transition(holder, RunState.VERIFYING_PASSED)
        assert state_machine.complete(holder).success is True

        result = coordinator.claim(candidate, "agent-2")
        assert result.success is True
        assert result.conflicts == []

    def test_claimed_ready_run_conflicts(self, store, coordinator):
        holder = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY, files_touched=["a.py"])
        coordinator.claim(holder, "agent-1")
        candidate = store.create_run("plans/01-02-PLAN.md", initial_state=RunState.READY, files_touched=["a.py"])

        assert coordinator.claim(candidate, "agent-2").conflicting_run_ids == [holder.run_id]

    def test_detect_file_conflicts(self):
        run = create_test_run(run_id="run-a", files_touched=["x.py"])
        others = [
            create_test_run(RunState.ACTIVE_EXECUTING, run_id="run-b", files_touched=["x.py"]),
            create_test_run(RunState.ACTIVE_EXECUTING, run_id="run-c", files_touched=["y.py"]),
            create_test_run(RunState.READY, run_id="run-d", files_touched=["x.py"]),
        ]

        assert detect_file_conflicts(run, others) == ["run-b"]
        assert detect_file_conflicts(create_test_run(run_id="run-e"), others) == []


# -----------------------------------------------------------------------------
# Test 6: Activation
# -----------------------------------------------------------------------------
class TestActivate:
    def test_activate_ready_run(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)

        result = coordinator.activate(run, "agent-1")

        assert result.success is True
        assert result.transition.to_state == RunState.ACTIVE_EXECUTING
        reloaded = store.load(run.run_id)
        assert reloaded.state == RunState.ACTIVE_EXECUTING
        assert reloaded.claimed_by == "agent-1"

    def test_activate_invalid_state_leaves_run_unclaimed(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.PROPOSED)

        result = coordinator.activate(run, "agent-1")

        assert result.success is False
        assert run.claimed_by is None
        assert store.load(run.run_id).state == RunState.PROPOSED

    def test_activate_blocked_by_claim(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        coordinator.claim(run, "agent-1")

        result = coordinator.activate(run, "agent-2")

        assert result.success is False
        assert run.state == RunState.READY


# -----------------------------------------------------------------------------
# Test 7: Ready Runs
# -----------------------------------------------------------------------------
class TestReadyRuns:
    def test_ready_runs(self, store, coordinator):
        low = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY, priority=5, files_touched=["x.py"])
        blocker = store.create_run("plans/01-02-PLAN.md", initial_state=RunState.ACTIVE_EXECUTING, files_touched=["x.py"])
        store.create_run(
            "plans/01-03-PLAN.md", initial_state=RunState.READY, priority=1, depends_on=[blocker.run_id]
        )
        unknown_dep = store.create_run(
            "plans/01-04-PLAN.md", initial_state=RunState.READY, priority=2, depends_on=["run-gone00"]
        )
        claimed = store.create_run("plans/01-05-PLAN.md", initial_state=RunState.READY, priority=0)
        coordinator.claim(claimed, "agent-9")
        store.create_run("plans/01-06-PLAN.md", initial_state=RunState.PROPOSED, priority=0)

        ready = coordinator.ready_runs()

        assert [r.run.run_id for r in ready] == [unknown_dep.run_id, low.run_id, blocker.run_id]
        by_id = {r.run.run_id: r for r in ready}
        assert by_id[low.run_id].conflicts_with == [blocker.run_id]
        assert by_id[blocker.run_id].conflicts_with == []

    def test_complete_dependency_unblocks(self, store, coordinator):
        dep = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.COMPLETE)
        run = store.create_run("plans/01-02-PLAN.md", initial_state=RunState.READY, depends_on=[dep.run_id])

        assert [r.run.run_id for r in coordinator.ready_runs()] == [run.run_id]


# -----------------------------------------------------------------------------
# Test 8: Garbage Collection
# -----------------------------------------------------------------------------
class TestGc:
    def test_dry_run_reports_only(self, store, coordinator):
        run = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        coordinator.claim(run, "agent-1", ttl_minutes=30, now=utc_now() - timedelta(hours=2))

        report = coordinator.gc(dry_run=True)

        assert [e.run_id for e in report.expired] == [run.run_id]
        assert report.expired[0].claimed_by == "agent-1"
        assert report.released == []
        assert store.load(run.run_id).claimed_by == "agent-1"

    def test_gc_releases_expired_only(self, store, coordinator):
        stale = store.create_run("plans/01-01-PLAN.md", initial_state=RunState.READY)
        live = store.create_run("plans/01-02-PLAN.md", initial_state=RunState.READY)
        coordinator.claim(stale, "agent-1", now=utc_now() - timedelta(hours=2))
        coordinator.claim(live, "agent-2")

        report = coordinator.gc()

        assert report.released == [stale.run_id]
        assert store.load(stale.run_id).claimed_by is None
        assert store.load(live.run_id).claimed_by == "agent-2"
