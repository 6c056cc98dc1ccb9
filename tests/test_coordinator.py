import json
import threading

import pytest
from sqlalchemy.exc import OperationalError

from subject_allotment import coordinator as coordinator_module
from subject_allotment.coordinator import RunCoordinator
from subject_allotment.errors import (
    CommitFailureError,
    PoolInactiveError,
    PoolNotFoundError,
    RunCancelledError,
    RunInProgressError,
)
from subject_allotment.models import AcademicRecord, Registration, Subject, SubjectPool
from subject_allotment.storage import AllotmentStore


def _stored(store, pool_id=1):
    return {row["regno"]: row["subject_code"] for row in store.allotments_for_pool(pool_id)}


def test_example_run_commits_expected_allotments(seeded_store):
    result = RunCoordinator(seeded_store).run_allocation(1)

    assert result.merit_order == ["S3", "S1", "S2"]
    assert _stored(seeded_store) == {"S3": "B", "S1": "A", "S2": None}
    assert result.summary.total_considered == 3
    assert result.summary.total_allotted == 2
    assert result.summary.total_unallotted == 1
    assert result.utilization.loc["A", "status"] == "FULL"
    assert result.allotment_records() == [
        {"regno": "S3", "pool_id": 1, "subject_code": "B"},
        {"regno": "S1", "pool_id": 1, "subject_code": "A"},
        {"regno": "S2", "pool_id": 1, "subject_code": None},
    ]


def test_student_query(seeded_store):
    RunCoordinator(seeded_store).run_allocation(1)

    rows = seeded_store.allotment_for_student("S1")
    assert [(r["pool_id"], r["subject_code"], r["choice_rank"]) for r in rows] == [(1, "A", 1)]
    assert seeded_store.allotment_for_student("S2", pool_id=1)[0]["subject_code"] is None


def test_rerun_is_idempotent(seeded_store):
    coordinator = RunCoordinator(seeded_store)
    coordinator.run_allocation(1)
    first = seeded_store.allotments_for_pool(1)
    coordinator.run_allocation(1)

    assert seeded_store.allotments_for_pool(1) == first
    assert len(seeded_store.runs_for_pool(1)) == 2


def test_rerun_replaces_previous_set(seeded_store):
    coordinator = RunCoordinator(seeded_store)
    coordinator.run_allocation(1)

    # S2's grades improve past everyone else
    seeded_store.save_academic_record(AcademicRecord("S2", 9.9, 0))
    coordinator.run_allocation(1)

    assert _stored(seeded_store) == {"S2": "A", "S3": "B", "S1": None}


def test_missing_pool(store):
    with pytest.raises(PoolNotFoundError):
        RunCoordinator(store).run_allocation(42)


def test_inactive_pool(store):
    store.save_pool(SubjectPool(2, "Closed", (Subject("A", "A", 1),), is_active=False))
    with pytest.raises(PoolInactiveError):
        RunCoordinator(store).run_allocation(2)
    assert store.allotments_for_pool(2) == []


def test_draft_registrations_are_ignored(seeded_store):
    seeded_store.save_registration(Registration("S9", 1, ("A",), status="draft"))
    seeded_store.save_academic_record(AcademicRecord("S9", 10.0, 0))

    result = RunCoordinator(seeded_store).run_allocation(1)

    assert "S9" not in result.outcomes
    assert "S9" not in _stored(seeded_store)


def test_ineligible_registration_is_skipped_not_fatal(store):
    store.save_pool(SubjectPool(3, "CSE only", (Subject("A", "A", 2),), allowed_programmes=("CSE",)))
    store.save_registration(Registration("R1", 3, ("A",), status="frozen"))
    store.save_registration(Registration("R2", 3, ("A",), status="frozen"))
    store.save_academic_record(AcademicRecord("R1", 8.0, 0, programme="CSE"))
    store.save_academic_record(AcademicRecord("R2", 9.0, 0, programme="MECH"))

    result = RunCoordinator(store).run_allocation(3)

    assert list(result.skipped) == ["R2"]
    assert result.summary.total_skipped == 1
    assert _stored(store, 3) == {"R1": "A"}
    # the skip survives the run
    assert store.skips_for_pool(3) == result.skipped
    details = json.loads(store.activity_log(action="allocation_run")[0]["details"])
    assert details["skipped"] == result.skipped


def test_skips_are_replaced_on_rerun(store):
    store.save_pool(SubjectPool(3, "CSE only", (Subject("A", "A", 2),), allowed_programmes=("CSE",)))
    store.save_registration(Registration("R2", 3, ("A",), status="frozen"))
    store.save_academic_record(AcademicRecord("R2", 9.0, 0, programme="MECH"))
    RunCoordinator(store).run_allocation(3)

    store.save_academic_record(AcademicRecord("R2", 9.0, 0, programme="CSE"))
    RunCoordinator(store).run_allocation(3)

    assert store.skips_for_pool(3) == {}
    assert _stored(store, 3) == {"R2": "A"}


def test_every_frozen_registration_has_an_outcome(store):
    store.save_pool(SubjectPool(4, "P", (Subject("A", "A", 1), Subject("B", "B", 0))))
    store.save_registration(Registration("R1", 4, ("A",), status="frozen"))
    store.save_registration(Registration("R2", 4, ("A", "B"), status="frozen"))
    store.save_registration(Registration("R3", 4, ("ZZ",), status="frozen"))

    result = RunCoordinator(store).run_allocation(4)

    assert _stored(store, 4) == {"R1": "A", "R2": None, "R3": None}
    assert result.outcomes["R3"].reason == "no_preferences"
    assert result.diagnostics == [{"regno": "R3", "pool_id": 4, "dropped": ["ZZ"], "repeated": []}]


def test_structured_preferences_are_read(store, example_pool):
    store.save_pool(example_pool)
    with store.engine.begin() as conn:
        conn.exec_driver_sql(
            "INSERT INTO student_registrations (regno, pool_id, priority_order, status) VALUES (?, ?, ?, ?)",
            ("R1", 1, json.dumps([{"subject_code": "B"}, {"subject_code": "A"}]), "frozen"),
        )
    assert store.load_frozen_registrations(1)[0].priority_order == ("B", "A")


def test_run_summary_is_logged(seeded_store):
    result = RunCoordinator(seeded_store).run_allocation(1)

    entries = seeded_store.activity_log(action="allocation_run")
    assert len(entries) == 1
    details = json.loads(entries[0]["details"])
    assert details["poolId"] == 1
    assert details["totalConsidered"] == 3
    assert details["totalAllotted"] == 2
    assert details["totalUnallotted"] == 1
    assert details["timestamp"] == result.summary.timestamp
    assert entries[0]["record_id"] == result.run_id


def test_live_lock_rejects_run(seeded_store):
    seeded_store.acquire_pool_lock(1, "someone-else", ttl_seconds=600)

    with pytest.raises(RunInProgressError):
        RunCoordinator(seeded_store).run_allocation(1)
    assert seeded_store.allotments_for_pool(1) == []


def test_stale_lock_is_taken_over(seeded_store):
    seeded_store.acquire_pool_lock(1, "crashed-worker", ttl_seconds=-1)

    RunCoordinator(seeded_store).run_allocation(1)

    assert _stored(seeded_store)["S1"] == "A"


def test_lock_is_released_after_run(seeded_store):
    RunCoordinator(seeded_store).run_allocation(1)
    token = seeded_store.acquire_pool_lock(1, "next", ttl_seconds=60)
    assert seeded_store.release_pool_lock(1, token)


def test_concurrent_run_in_same_process_is_rejected(seeded_store):
    lock = coordinator_module._pool_thread_lock(1)
    lock.acquire()
    try:
        with pytest.raises(RunInProgressError):
            RunCoordinator(seeded_store).run_allocation(1)
    finally:
        lock.release()


def test_other_pools_are_not_blocked(seeded_store):
    seeded_store.save_pool(SubjectPool(5, "Other", (Subject("A", "A", 1),)))
    seeded_store.acquire_pool_lock(1, "someone-else", ttl_seconds=600)

    RunCoordinator(seeded_store).run_allocation(5)


class FailingStore(AllotmentStore):
    def _insert_run_record(self, conn, result, started_at):
        raise OperationalError("INSERT INTO allotment_runs", {}, Exception("disk I/O error"))


def test_commit_failure_keeps_prior_allotments(seeded_store):
    RunCoordinator(seeded_store).run_allocation(1)
    before = seeded_store.allotments_for_pool(1)

    seeded_store.save_academic_record(AcademicRecord("S2", 9.9, 0))
    with pytest.raises(CommitFailureError):
        RunCoordinator(FailingStore(seeded_store.engine)).run_allocation(1)

    assert seeded_store.allotments_for_pool(1) == before
    assert len(seeded_store.runs_for_pool(1)) == 1
    # the failed run released its lock
    RunCoordinator(seeded_store).run_allocation(1)


def test_cancelled_run_writes_nothing(seeded_store):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(RunCancelledError):
        RunCoordinator(seeded_store).run_allocation(1, cancel_event=cancel)

    assert seeded_store.allotments_for_pool(1) == []
    assert seeded_store.runs_for_pool(1) == []
    RunCoordinator(seeded_store).run_allocation(1)


def test_concurrent_pools_in_threads(store):
    for pool_id in (10, 11, 12):
        store.save_pool(SubjectPool(pool_id, f"P{pool_id}", (Subject("A", "A", 1), Subject("B", "B", 1))))
        for n in range(3):
            store.save_registration(Registration(f"R{n}", pool_id, ("A", "B"), status="frozen"))
    for n in range(3):
        store.save_academic_record(AcademicRecord(f"R{n}", 9.0 - n, 0))

    errors = []

    def worker(pool_id):
        try:
            RunCoordinator(store).run_allocation(pool_id)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(pool_id,)) for pool_id in (10, 11, 12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    for pool_id in (10, 11, 12):
        assert _stored(store, pool_id) == {"R0": "A", "R1": "B", "R2": None}


class RacingStore(AllotmentStore):
    """Holds every reader of the lock row until both contenders have read it."""

    def __init__(self, engine, barrier):
        super().__init__(engine)
        self.barrier = barrier

    def _read_lock_row(self, conn, pool_id):
        row = super()._read_lock_row(conn, pool_id)
        self.barrier.wait()
        return row


def test_simultaneous_stale_takeover_has_one_winner(seeded_store):
    seeded_store.acquire_pool_lock(1, "crashed-worker", ttl_seconds=-1)
    racing = RacingStore(seeded_store.engine, threading.Barrier(2, timeout=5))
    tokens = []
    errors = []

    def worker(owner):
        try:
            tokens.append(racing.acquire_pool_lock(1, owner, ttl_seconds=600))
        except RunInProgressError as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(owner,)) for owner in ("proc-A", "proc-B")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(tokens) == 1
    assert len(errors) == 1
    assert seeded_store.release_pool_lock(1, tokens[0])


class LockStealingStore(AllotmentStore):
    """Another worker takes over the run's (already expired) lock while it is solving."""

    def load_academic_records(self, regnos):
        records = super().load_academic_records(regnos)
        self.acquire_pool_lock(1, "other-worker", ttl_seconds=600)
        return records


def test_commit_is_abandoned_when_lock_was_lost(seeded_store):
    RunCoordinator(seeded_store).run_allocation(1)
    before = seeded_store.allotments_for_pool(1)
    seeded_store.save_academic_record(AcademicRecord("S2", 9.9, 0))

    with pytest.raises(CommitFailureError):
        RunCoordinator(LockStealingStore(seeded_store.engine), lock_ttl_seconds=-1).run_allocation(1)

    assert seeded_store.allotments_for_pool(1) == before
    assert len(seeded_store.runs_for_pool(1)) == 1
    # the new holder keeps its lock
    with pytest.raises(RunInProgressError):
        RunCoordinator(seeded_store).run_allocation(1)


class StuckLockStore(AllotmentStore):
    def release_pool_lock(self, pool_id, token):
        raise OperationalError("DELETE FROM allotment_run_locks", {}, Exception("database is locked"))


def test_release_failure_keeps_the_run_error(seeded_store):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(RunCancelledError):
        RunCoordinator(StuckLockStore(seeded_store.engine)).run_allocation(1, cancel_event=cancel)


def test_idle_pool_locks_are_dropped(seeded_store):
    RunCoordinator(seeded_store).run_allocation(1)

    assert 1 not in coordinator_module._pool_locks
