"""Orchestration of one complete allocation run for a pool."""

import logging
import os
import socket
import threading
import uuid
import weakref
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from .analysis import average_satisfaction, choice_distribution, subject_utilization
from .capacity import CapacityTracker
from .errors import (
    InvalidInputError,
    PoolInactiveError,
    PoolNotFoundError,
    RunCancelledError,
    RunInProgressError,
)
from .models import AllocationResult, RunSummary
from .preferences import check_eligibility, normalize
from .ranking import rank
from .solver import allocate

logger = logging.getLogger(__name__)

# In-process guard, one lock per pool; the store lock covers other processes.
# Entries drop out once no run holds a reference to the pool's lock.
_registry_lock = threading.Lock()
_pool_locks = weakref.WeakValueDictionary()


def _pool_thread_lock(pool_id):
    with _registry_lock:
        return _pool_locks.setdefault(pool_id, threading.Lock())


def _default_owner():
    return f"{socket.gethostname()}:{os.getpid()}:{threading.get_ident()}"


class RunCoordinator:
    """
    Runs the allocation pipeline for a pool and commits the result.

    Approach:
        a) load the pool and check it is active
        b) take the pool's run lock, load frozen registrations and academic records
        c) normalize preferences; bad registrations are skipped, not fatal
        d) rank students by merit
        e) serially allot seats from a run-scoped capacity tracker
        f) replace the pool's allotments in one transaction

    Nothing is written before step (f); a cancelled or failed run leaves the
    previous allotment set in place.
    """

    def __init__(self, store, lock_ttl_seconds=900, owner_id=None):
        self.store = store
        self.lock_ttl_seconds = lock_ttl_seconds
        self.owner_id = owner_id or _default_owner()

    def run_allocation(self, pool_id, cancel_event=None):
        started_at = datetime.now(tz=timezone.utc).isoformat()
        run_id = uuid.uuid4().hex
        logger.info("Pool %s: starting allocation run %s", pool_id, run_id)

        pool = self.store.load_pool(pool_id)
        if pool is None:
            raise PoolNotFoundError(f"Pool {pool_id} does not exist")
        if not pool.is_active:
            raise PoolInactiveError(f"Pool {pool_id} is not active")

        thread_lock = _pool_thread_lock(pool_id)
        if not thread_lock.acquire(blocking=False):
            logger.warning("Pool %s: run requested while another run is in progress", pool_id)
            raise RunInProgressError(f"Pool {pool_id}: allocation run already in progress")
        try:
            token = self.store.acquire_pool_lock(pool_id, self.owner_id, self.lock_ttl_seconds)
            try:
                result = self._execute(pool, run_id, cancel_event)
                self.store.replace_allotments(result, started_at, lock_token=token)
            finally:
                self._release(pool_id, token)
        finally:
            thread_lock.release()

        summary = result.summary
        logger.info(
            "Pool %s: run %s committed (considered=%d, allotted=%d, unallotted=%d, skipped=%d)",
            pool_id, run_id, summary.total_considered, summary.total_allotted,
            summary.total_unallotted, summary.total_skipped,
        )
        return result

    def _execute(self, pool, run_id, cancel_event):
        registrations = self.store.load_frozen_registrations(pool.pool_id)
        records = self.store.load_academic_records(r.regno for r in registrations)
        self._checkpoint(pool.pool_id, cancel_event)

        # --- Normalize preferences ---
        preferences = {}
        skipped = {}
        diagnostics = []
        for registration in registrations:
            try:
                check_eligibility(registration, pool, records.get(registration.regno))
                preferences[registration.regno] = normalize(registration, pool, diagnostics)
            except InvalidInputError as e:
                logger.warning("Pool %s: skipping registration %s: %s", pool.pool_id, registration.regno, e)
                skipped[registration.regno] = str(e)

        # --- Rank & allocate ---
        merit_order = rank(list(preferences), records)
        self._checkpoint(pool.pool_id, cancel_event)

        tracker = CapacityTracker.from_pool(pool)
        outcomes = allocate(merit_order, preferences, tracker)
        self._checkpoint(pool.pool_id, cancel_event)

        allotted = sum(1 for o in outcomes.values() if o.is_allotted)
        summary = RunSummary(
            pool_id=pool.pool_id,
            timestamp=datetime.now(tz=timezone.utc).isoformat(),
            total_considered=len(outcomes),
            total_allotted=allotted,
            total_unallotted=len(outcomes) - allotted,
            total_skipped=len(skipped),
            choice_distribution=choice_distribution(outcomes, preferences),
            average_satisfaction=average_satisfaction(outcomes, preferences),
        )
        return AllocationResult(
            pool_id=pool.pool_id,
            run_id=run_id,
            merit_order=merit_order,
            outcomes=outcomes,
            skipped=skipped,
            summary=summary,
            diagnostics=diagnostics,
            utilization=subject_utilization(pool, outcomes, preferences),
        )

    def _checkpoint(self, pool_id, cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            logger.warning("Pool %s: allocation run cancelled before commit", pool_id)
            raise RunCancelledError(f"Pool {pool_id}: allocation run cancelled")

    def _release(self, pool_id, token):
        # An expired lock is taken over by the next run, so a failed release only logs
        try:
            self.store.release_pool_lock(pool_id, token)
        except SQLAlchemyError:
            logger.exception("Pool %s: could not release run lock", pool_id)
