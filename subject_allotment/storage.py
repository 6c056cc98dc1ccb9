"""SQLAlchemy-backed store for pools, registrations, academic data and allotments."""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import bindparam, create_engine
from sqlalchemy import text as sa_text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .errors import CommitFailureError, RunInProgressError
from .models import AcademicRecord, Registration, Subject, SubjectPool

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(tz=timezone.utc)


def _exec(conn, sql, params=None):
    """Execute SQL with parameters."""
    return conn.execute(sa_text(sql), params or {})


def build_engine(database_url):
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url)


# ═══════════════════════════════════════════════════════
# SECTION: Schema
# ═══════════════════════════════════════════════════════

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS subject_pools (
        id INTEGER PRIMARY KEY,
        pool_name TEXT NOT NULL,
        semester TEXT,
        batch TEXT,
        allowed_programmes TEXT,  -- JSON array
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pool_subjects (
        pool_id INTEGER NOT NULL,
        subject_code TEXT NOT NULL,
        subject_name TEXT,
        intake INTEGER NOT NULL,
        PRIMARY KEY (pool_id, subject_code),
        CHECK (intake >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS student_registrations (
        regno TEXT NOT NULL,
        pool_id INTEGER NOT NULL,
        email TEXT,
        mobile TEXT,
        priority_order TEXT,  -- JSON array of subject codes
        status TEXT NOT NULL DEFAULT 'draft',
        registered_at TEXT,
        PRIMARY KEY (regno, pool_id),
        CHECK (status IN ('draft', 'frozen'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS student_academic_data (
        regno TEXT PRIMARY KEY,
        cgpa REAL,
        backlogs INTEGER,
        programme TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subject_allotments (
        pool_id INTEGER NOT NULL,
        regno TEXT NOT NULL,
        subject_code TEXT,  -- NULL = unallotted
        choice_rank INTEGER,
        merit_rank INTEGER NOT NULL,
        PRIMARY KEY (pool_id, regno)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS allotment_skips (
        pool_id INTEGER NOT NULL,
        regno TEXT NOT NULL,
        reason TEXT NOT NULL,
        PRIMARY KEY (pool_id, regno)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS allotment_runs (
        run_id TEXT PRIMARY KEY,
        pool_id INTEGER NOT NULL,
        started_at TEXT NOT NULL,
        committed_at TEXT NOT NULL,
        total_considered INTEGER NOT NULL,
        total_allotted INTEGER NOT NULL,
        total_unallotted INTEGER NOT NULL,
        total_skipped INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS allotment_run_locks (
        pool_id INTEGER PRIMARY KEY,
        owner_id TEXT NOT NULL,
        lock_token TEXT NOT NULL,
        acquired_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_type TEXT NOT NULL,
        user_identifier TEXT,
        action TEXT NOT NULL,
        table_name TEXT,
        record_id TEXT,
        details TEXT,  -- JSON
        timestamp TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_registrations_pool ON student_registrations(pool_id, status)",
    "CREATE INDEX IF NOT EXISTS ix_allotments_regno ON subject_allotments(regno)",
    "CREATE INDEX IF NOT EXISTS ix_runs_pool ON allotment_runs(pool_id)",
]


def install_schema(engine):
    with engine.begin() as conn:
        for statement in SCHEMA:
            _exec(conn, statement)
    logger.info("Allotment schema installed")


def _parse_priority_order(raw):
    # Stored either as ["CS101", ...] or as [{"subject_code": "CS101"}, ...]
    if not raw:
        return ()
    items = json.loads(raw)
    codes = []
    for item in items:
        if isinstance(item, dict):
            codes.append(item.get("subject_code"))
        else:
            codes.append(item)
    return tuple(codes)


# ═══════════════════════════════════════════════════════
# SECTION: Store
# ═══════════════════════════════════════════════════════

class AllotmentStore:
    def __init__(self, engine):
        self.engine = engine

    @classmethod
    def from_url(cls, database_url, install=True):
        store = cls(build_engine(database_url))
        if install:
            install_schema(store.engine)
        return store

    # --- Snapshot reads ---
    def load_pool(self, pool_id):
        with self.engine.connect() as conn:
            row = _exec(conn, "SELECT * FROM subject_pools WHERE id = :id", {"id": pool_id}).mappings().fetchone()
            if row is None:
                return None
            subjects = _exec(conn, """
                SELECT subject_code, subject_name, intake FROM pool_subjects
                WHERE pool_id = :id ORDER BY subject_code
            """, {"id": pool_id}).mappings().fetchall()
        return SubjectPool(
            pool_id=row["id"],
            pool_name=row["pool_name"],
            subjects=tuple(Subject(s["subject_code"], s["subject_name"] or "", s["intake"]) for s in subjects),
            semester=row["semester"] or "",
            batch=row["batch"] or "",
            allowed_programmes=tuple(json.loads(row["allowed_programmes"] or "[]")),
            is_active=bool(row["is_active"]),
        )

    def load_frozen_registrations(self, pool_id):
        with self.engine.connect() as conn:
            rows = _exec(conn, """
                SELECT * FROM student_registrations
                WHERE pool_id = :id AND status = 'frozen'
                ORDER BY regno
            """, {"id": pool_id}).mappings().fetchall()
        return [
            Registration(
                regno=r["regno"],
                pool_id=r["pool_id"],
                priority_order=_parse_priority_order(r["priority_order"]),
                status=r["status"],
                email=r["email"] or "",
                mobile=r["mobile"] or "",
            )
            for r in rows
        ]

    def load_academic_records(self, regnos):
        regnos = list(regnos)
        if not regnos:
            return {}
        query = sa_text(
            "SELECT * FROM student_academic_data WHERE regno IN :regnos"
        ).bindparams(bindparam("regnos", expanding=True))
        with self.engine.connect() as conn:
            rows = conn.execute(query, {"regnos": regnos}).mappings().fetchall()
        return {
            r["regno"]: AcademicRecord(
                regno=r["regno"], cgpa=r["cgpa"], backlogs=r["backlogs"], programme=r["programme"],
            )
            for r in rows
        }

    # --- Administrative writes ---
    def transaction(self):
        return self.engine.begin()

    def save_pool(self, pool):
        with self.transaction() as conn:
            self.write_pool(conn, pool)

    def save_registration(self, registration):
        with self.transaction() as conn:
            self.write_registration(conn, registration)

    def save_academic_record(self, record):
        with self.transaction() as conn:
            self.write_academic_record(conn, record)

    def write_pool(self, conn, pool):
        _exec(conn, "DELETE FROM pool_subjects WHERE pool_id = :id", {"id": pool.pool_id})
        _exec(conn, "DELETE FROM subject_pools WHERE id = :id", {"id": pool.pool_id})
        _exec(conn, """
            INSERT INTO subject_pools (id, pool_name, semester, batch, allowed_programmes, is_active)
            VALUES (:id, :name, :semester, :batch, :programmes, :active)
        """, {
            "id": pool.pool_id,
            "name": pool.pool_name,
            "semester": pool.semester,
            "batch": pool.batch,
            "programmes": json.dumps(list(pool.allowed_programmes)),
            "active": int(pool.is_active),
        })
        for subject in pool.subjects:
            _exec(conn, """
                INSERT INTO pool_subjects (pool_id, subject_code, subject_name, intake)
                VALUES (:pool_id, :code, :name, :intake)
            """, {"pool_id": pool.pool_id, "code": subject.code, "name": subject.name, "intake": subject.intake})

    def write_registration(self, conn, registration):
        _exec(conn, "DELETE FROM student_registrations WHERE regno = :regno AND pool_id = :pool_id",
              {"regno": registration.regno, "pool_id": registration.pool_id})
        _exec(conn, """
            INSERT INTO student_registrations
            (regno, pool_id, email, mobile, priority_order, status, registered_at)
            VALUES (:regno, :pool_id, :email, :mobile, :prefs, :status, :now)
        """, {
            "regno": registration.regno,
            "pool_id": registration.pool_id,
            "email": registration.email,
            "mobile": registration.mobile,
            "prefs": json.dumps(list(registration.priority_order)),
            "status": registration.status,
            "now": _utcnow().isoformat(),
        })

    def write_academic_record(self, conn, record):
        _exec(conn, "DELETE FROM student_academic_data WHERE regno = :regno", {"regno": record.regno})
        _exec(conn, """
            INSERT INTO student_academic_data (regno, cgpa, backlogs, programme)
            VALUES (:regno, :cgpa, :backlogs, :programme)
        """, {"regno": record.regno, "cgpa": record.cgpa, "backlogs": record.backlogs, "programme": record.programme})

    # --- Atomic replace ---
    def replace_allotments(self, result, started_at, lock_token=None):
        """
        Swap the pool's allotment set for ``result`` in a single transaction.

        The prior rows are deleted and the new ones inserted together with the
        skipped registrations, the run record and its activity-log entry; on
        any database error nothing is kept and CommitFailureError is raised.

        With ``lock_token`` the commit only goes ahead while the pool's run
        lock still carries that token.
        """
        merit_rank = {regno: n for n, regno in enumerate(result.merit_order, start=1)}
        try:
            with self.engine.begin() as conn:
                _exec(conn, "DELETE FROM subject_allotments WHERE pool_id = :pool_id", {"pool_id": result.pool_id})
                if lock_token is not None:
                    self._check_lock_held(conn, result.pool_id, lock_token)
                self._insert_allotments(conn, result, merit_rank)
                self._insert_skips(conn, result)
                self._insert_run_record(conn, result, started_at)
        except SQLAlchemyError as e:
            logger.error("Pool %s: commit of run %s failed, rolled back", result.pool_id, result.run_id, exc_info=True)
            raise CommitFailureError(f"Pool {result.pool_id}: allotment commit failed: {e}") from e

    def _check_lock_held(self, conn, pool_id, lock_token):
        row = _exec(conn, """
            SELECT owner_id FROM allotment_run_locks WHERE pool_id = :pool_id AND lock_token = :token
        """, {"pool_id": pool_id, "token": lock_token}).fetchall()
        if not row:
            logger.error("Pool %s: run lock lost before commit, keeping prior allotments", pool_id)
            raise CommitFailureError(f"Pool {pool_id}: run lock no longer held, commit abandoned")

    def _insert_skips(self, conn, result):
        _exec(conn, "DELETE FROM allotment_skips WHERE pool_id = :pool_id", {"pool_id": result.pool_id})
        rows = [
            {"pool_id": result.pool_id, "regno": regno, "reason": reason}
            for regno, reason in sorted(result.skipped.items())
        ]
        if rows:
            conn.execute(sa_text("""
                INSERT INTO allotment_skips (pool_id, regno, reason) VALUES (:pool_id, :regno, :reason)
            """), rows)

    def _insert_allotments(self, conn, result, merit_rank):
        rows = [
            {
                "pool_id": result.pool_id,
                "regno": regno,
                "code": outcome.subject_code if outcome.is_allotted else None,
                "choice": outcome.choice_rank if outcome.is_allotted else None,
                "merit": merit_rank[regno],
            }
            for regno, outcome in result.outcomes.items()
        ]
        if rows:
            conn.execute(sa_text("""
                INSERT INTO subject_allotments (pool_id, regno, subject_code, choice_rank, merit_rank)
                VALUES (:pool_id, :regno, :code, :choice, :merit)
            """), rows)

    def _insert_run_record(self, conn, result, started_at):
        summary = result.summary
        _exec(conn, """
            INSERT INTO allotment_runs
            (run_id, pool_id, started_at, committed_at, total_considered,
             total_allotted, total_unallotted, total_skipped)
            VALUES (:run_id, :pool_id, :started, :committed, :considered, :allotted, :unallotted, :skipped)
        """, {
            "run_id": result.run_id,
            "pool_id": result.pool_id,
            "started": started_at,
            "committed": summary.timestamp,
            "considered": summary.total_considered,
            "allotted": summary.total_allotted,
            "unallotted": summary.total_unallotted,
            "skipped": summary.total_skipped,
        })
        self.log_activity(
            conn, "system", "allocation_engine", "allocation_run",
            table_name="subject_allotments", record_id=result.run_id,
            details=dict(summary.to_dict(), skipped=dict(result.skipped)),
        )

    def log_activity(self, conn, user_type, user_identifier, action, table_name=None, record_id=None, details=None):
        _exec(conn, """
            INSERT INTO activity_logs
            (user_type, user_identifier, action, table_name, record_id, details, timestamp)
            VALUES (:user_type, :who, :action, :table_name, :record_id, :details, :now)
        """, {
            "user_type": user_type,
            "who": user_identifier,
            "action": action,
            "table_name": table_name,
            "record_id": record_id,
            "details": json.dumps(details, sort_keys=True) if details is not None else None,
            "now": _utcnow().isoformat(),
        })

    # --- Queries ---
    def allotments_for_pool(self, pool_id):
        with self.engine.connect() as conn:
            rows = _exec(conn, """
                SELECT regno, pool_id, subject_code, choice_rank, merit_rank FROM subject_allotments
                WHERE pool_id = :pool_id ORDER BY merit_rank
            """, {"pool_id": pool_id}).mappings().fetchall()
        return [dict(r) for r in rows]

    def allotment_for_student(self, regno, pool_id=None):
        sql = """
            SELECT regno, pool_id, subject_code, choice_rank, merit_rank FROM subject_allotments
            WHERE regno = :regno
        """
        params = {"regno": regno}
        if pool_id is not None:
            sql += " AND pool_id = :pool_id"
            params["pool_id"] = pool_id
        sql += " ORDER BY pool_id"
        with self.engine.connect() as conn:
            rows = _exec(conn, sql, params).mappings().fetchall()
        return [dict(r) for r in rows]

    def skips_for_pool(self, pool_id):
        with self.engine.connect() as conn:
            rows = _exec(conn, """
                SELECT regno, reason FROM allotment_skips WHERE pool_id = :pool_id ORDER BY regno
            """, {"pool_id": pool_id}).fetchall()
        return {regno: reason for regno, reason in rows}

    def runs_for_pool(self, pool_id):
        with self.engine.connect() as conn:
            rows = _exec(conn, """
                SELECT * FROM allotment_runs WHERE pool_id = :pool_id ORDER BY committed_at
            """, {"pool_id": pool_id}).mappings().fetchall()
        return [dict(r) for r in rows]

    def activity_log(self, action=None):
        sql = "SELECT * FROM activity_logs"
        params = {}
        if action is not None:
            sql += " WHERE action = :action"
            params["action"] = action
        sql += " ORDER BY id"
        with self.engine.connect() as conn:
            rows = _exec(conn, sql, params).mappings().fetchall()
        return [dict(r) for r in rows]

    # ═══════════════════════════════════════════════════════
    # SECTION: Pool run locks
    # ═══════════════════════════════════════════════════════

    def _read_lock_row(self, conn, pool_id):
        rows = _exec(conn, """
            SELECT owner_id, lock_token, expires_at FROM allotment_run_locks WHERE pool_id = :pool_id
        """, {"pool_id": pool_id}).fetchall()
        return rows[0] if rows else None

    def acquire_pool_lock(self, pool_id, owner_id, ttl_seconds):
        """
        Take the pool's run lock and return its token.

        A lock past its expiry is taken over, but only if the row still holds
        the token and expiry that were read; a worker that loses that race
        gets RunInProgressError like any other contender.
        """
        now = _utcnow()
        expires_at = (now + timedelta(seconds=ttl_seconds)).isoformat()
        token = uuid.uuid4().hex
        try:
            with self.engine.begin() as conn:
                row = self._read_lock_row(conn, pool_id)
                if row:
                    current_owner, current_token, current_expires = row
                    if datetime.fromisoformat(current_expires) > now:
                        raise RunInProgressError(
                            f"Pool {pool_id}: allocation run already in progress (owner {current_owner})"
                        )
                    logger.warning("Pool %s: taking over stale run lock held by %s", pool_id, current_owner)
                    cur = _exec(conn, """
                        UPDATE allotment_run_locks
                        SET owner_id = :owner, lock_token = :token, acquired_at = :now, expires_at = :expires
                        WHERE pool_id = :pool_id AND lock_token = :old_token AND expires_at = :old_expires
                    """, {"owner": owner_id, "token": token, "now": now.isoformat(), "expires": expires_at,
                          "pool_id": pool_id, "old_token": current_token, "old_expires": current_expires})
                    if cur.rowcount == 0:
                        raise RunInProgressError(
                            f"Pool {pool_id}: stale run lock was taken over by another worker"
                        )
                else:
                    _exec(conn, """
                        INSERT INTO allotment_run_locks (pool_id, owner_id, lock_token, acquired_at, expires_at)
                        VALUES (:pool_id, :owner, :token, :now, :expires)
                    """, {"pool_id": pool_id, "owner": owner_id, "token": token,
                          "now": now.isoformat(), "expires": expires_at})
        except IntegrityError as e:
            # Another process inserted the lock row between our read and write
            raise RunInProgressError(f"Pool {pool_id}: allocation run already in progress") from e
        return token

    def release_pool_lock(self, pool_id, token):
        with self.engine.begin() as conn:
            cur = _exec(conn, """
                DELETE FROM allotment_run_locks WHERE pool_id = :pool_id AND lock_token = :token
            """, {"pool_id": pool_id, "token": token})
            return cur.rowcount > 0
