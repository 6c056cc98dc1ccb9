"""Snapshot import: pools, subjects, registrations and academic records from Excel or CSV."""

import logging
import re
from pathlib import Path

import pandas as pd
from openpyxl import Workbook

from .errors import InvalidInputError
from .models import REGISTRATION_STATUSES, AcademicRecord, Registration, Subject, SubjectPool

logger = logging.getLogger(__name__)

SHEET_COLUMNS = {
    "pools": ["pool_id", "pool_name", "semester", "batch", "allowed_programmes", "is_active"],
    "subjects": ["pool_id", "subject_code", "subject_name", "intake"],
    "registrations": ["regno", "pool_id", "email", "mobile", "preferences", "status"],
    "academic_records": ["regno", "cgpa", "backlogs", "programme"],
}

_LIST_SPLIT = re.compile(r"[;,]")


# ═══════════════════════════════════════════════════════
# SECTION: Template Generation
# ═══════════════════════════════════════════════════════

def generate_template(path):
    wb = Workbook()

    # --- Pools Sheet ---
    ws_pools = wb.active
    ws_pools.title = "pools"
    ws_pools.append(SHEET_COLUMNS["pools"])

    # --- Subjects, Registrations & Academic Records Sheets ---
    for sheet in ("subjects", "registrations", "academic_records"):
        ws = wb.create_sheet(sheet)
        ws.append(SHEET_COLUMNS[sheet])

    wb.save(path)
    logger.info("Input template written to %s", path)
    return path


# ═══════════════════════════════════════════════════════
# SECTION: Data Loading
# ═══════════════════════════════════════════════════════

def read_snapshot(path):
    """
    Load the four input sheets as DataFrames of strings.

    ``path`` is either a workbook holding all sheets or a directory with one
    ``<sheet>.csv`` per sheet. Missing sheets are left out so validation can
    report them.
    """
    path = Path(path)
    frames = {}
    if path.is_dir():
        for sheet in SHEET_COLUMNS:
            csv_path = path / f"{sheet}.csv"
            if csv_path.exists():
                frames[sheet] = pd.read_csv(csv_path, dtype=str)
    else:
        xl = pd.ExcelFile(path, engine="openpyxl")
        for sheet in SHEET_COLUMNS:
            if sheet in xl.sheet_names:
                frames[sheet] = xl.parse(sheet_name=sheet, dtype=str)

    for sheet, df in frames.items():
        df.columns = [str(c).strip() for c in df.columns]
        for col in df.columns:
            df[col] = df[col].map(lambda v: v.strip() if isinstance(v, str) else v)
    logger.info("Read snapshot from %s (sheets: %s)", path, sorted(frames))
    return frames


def _split_list(raw):
    if raw is None or pd.isna(raw):
        return []
    return [item.strip() for item in _LIST_SPLIT.split(str(raw)) if item.strip()]


def _parse_flag(raw):
    if raw is None or pd.isna(raw) or str(raw).strip() == "":
        return True
    return str(raw).strip().lower() in ("1", "true", "yes", "y", "active")


def _optional_str(raw):
    if raw is None or pd.isna(raw) or str(raw).strip() == "":
        return None
    return str(raw).strip()


def _optional_number(raw):
    if raw is None or pd.isna(raw):
        return None
    return raw


# ═══════════════════════════════════════════════════════
# SECTION: Data Validation
# ═══════════════════════════════════════════════════════

def validate_snapshot(frames):
    """Return a list of error strings; an empty list means the snapshot can be imported."""
    errors = []
    for sheet, required in SHEET_COLUMNS.items():
        if sheet not in frames:
            errors.append(f"Missing required sheet: {sheet}")
            continue
        missing = [c for c in required if c not in frames[sheet].columns]
        # Optional columns may be absent; identifiers and numbers may not
        missing = [c for c in missing if c not in ("semester", "batch", "allowed_programmes", "is_active",
                                                   "subject_name", "email", "mobile", "programme")]
        if missing:
            errors.append(f"Missing required columns in {sheet} sheet: {missing}")
    if errors:
        return errors

    pools_df = frames["pools"]
    subjects_df = frames["subjects"]
    registrations_df = frames["registrations"]
    records_df = frames["academic_records"]

    # --- Pools ---
    pool_ids = pd.to_numeric(pools_df["pool_id"], errors="coerce")
    if pool_ids.isnull().any():
        errors.append(f"Non-numeric pool_id values: {pools_df.loc[pool_ids.isnull(), 'pool_id'].tolist()}")
    if pools_df["pool_id"].duplicated().any():
        dup_ids = pools_df[pools_df["pool_id"].duplicated()]["pool_id"].tolist()
        errors.append(f"Duplicate pool IDs found: {dup_ids}")
    known_pools = set(pools_df["pool_id"].dropna())

    # --- Subjects ---
    unknown = subjects_df[~subjects_df["pool_id"].isin(known_pools)]
    if not unknown.empty:
        errors.append(f"Subjects reference unknown pools: {sorted(set(unknown['pool_id'].dropna()))}")
    if subjects_df["subject_code"].isnull().any():
        errors.append("Missing subject_code in subjects sheet")
    dup = subjects_df.duplicated(subset=["pool_id", "subject_code"])
    if dup.any():
        pairs = subjects_df[dup][["pool_id", "subject_code"]].values.tolist()
        errors.append(f"Duplicate subject codes within a pool: {pairs}")

    # Allow blanks but no negative values
    intake = pd.to_numeric(subjects_df["intake"], errors="coerce")
    invalid = subjects_df[subjects_df["intake"].notnull() & (intake.isnull() | (intake < 0))]
    if not invalid.empty:
        errors.append(f"Invalid intake values for subject codes: {invalid['subject_code'].tolist()}")

    # --- Registrations ---
    if registrations_df["regno"].isnull().any():
        errors.append("Missing regno in registrations sheet")
    unknown = registrations_df[~registrations_df["pool_id"].isin(known_pools)]
    if not unknown.empty:
        errors.append(f"Registrations reference unknown pools: {unknown['regno'].tolist()}")
    dup = registrations_df.duplicated(subset=["regno", "pool_id"])
    if dup.any():
        errors.append(f"Duplicate registrations within a pool: {registrations_df[dup]['regno'].tolist()}")
    status = registrations_df["status"].fillna("draft").map(lambda v: str(v).lower())
    bad_status = registrations_df[~status.isin(REGISTRATION_STATUSES)]
    if not bad_status.empty:
        errors.append(f"Invalid registration status for: {bad_status['regno'].tolist()}")

    # --- Academic records ---
    if records_df["regno"].duplicated().any():
        dup_ids = records_df[records_df["regno"].duplicated()]["regno"].tolist()
        errors.append(f"Duplicate academic records: {dup_ids}")
    cgpa = pd.to_numeric(records_df["cgpa"], errors="coerce")
    bad_cgpa = records_df[records_df["cgpa"].notnull() & (cgpa.isnull() | (cgpa < 0) | (cgpa > 10))]
    if not bad_cgpa.empty:
        errors.append(f"CGPA outside 0-10 for: {bad_cgpa['regno'].tolist()}")
    backlogs = pd.to_numeric(records_df["backlogs"], errors="coerce")
    bad_backlogs = records_df[
        records_df["backlogs"].notnull() & (backlogs.isnull() | (backlogs < 0) | (backlogs % 1 != 0))
    ]
    if not bad_backlogs.empty:
        errors.append(f"Invalid backlog counts for: {bad_backlogs['regno'].tolist()}")

    return errors


# ═══════════════════════════════════════════════════════
# SECTION: Import
# ═══════════════════════════════════════════════════════

def import_snapshot(store, frames, default_intake=1):
    errors = validate_snapshot(frames)
    if errors:
        for err in errors:
            logger.error("Snapshot validation: %s", err)
        raise InvalidInputError("Snapshot validation failed: " + "; ".join(errors))

    subjects_df = frames["subjects"].copy()
    # Blank intake falls back to the configured default
    subjects_df["intake"] = pd.to_numeric(subjects_df["intake"], errors="coerce").fillna(default_intake).astype(int)

    pools = []
    for _, row in frames["pools"].iterrows():
        pool_rows = subjects_df[subjects_df["pool_id"] == row["pool_id"]]
        pool = SubjectPool(
            pool_id=int(float(row["pool_id"])),
            pool_name=_optional_str(row.get("pool_name")) or f"Pool {row['pool_id']}",
            subjects=tuple(
                Subject(s["subject_code"], _optional_str(s.get("subject_name")) or "", int(s["intake"]))
                for _, s in pool_rows.iterrows()
            ),
            semester=_optional_str(row.get("semester")) or "",
            batch=_optional_str(row.get("batch")) or "",
            allowed_programmes=tuple(_split_list(row.get("allowed_programmes"))),
            is_active=_parse_flag(row.get("is_active")),
        )
        pools.append(pool)

    registrations = []
    for _, row in frames["registrations"].iterrows():
        registrations.append(Registration(
            regno=row["regno"],
            pool_id=int(float(row["pool_id"])),
            priority_order=tuple(_split_list(row.get("preferences"))),
            status=(_optional_str(row.get("status")) or "draft").lower(),
            email=_optional_str(row.get("email")) or "",
            mobile=_optional_str(row.get("mobile")) or "",
        ))

    records_df = frames["academic_records"].copy()
    records_df["cgpa"] = pd.to_numeric(records_df["cgpa"], errors="coerce")
    records_df["backlogs"] = pd.to_numeric(records_df["backlogs"], errors="coerce")
    records = []
    for _, row in records_df.iterrows():
        cgpa = _optional_number(row["cgpa"])
        backlogs = _optional_number(row["backlogs"])
        records.append(AcademicRecord(
            regno=row["regno"],
            cgpa=float(cgpa) if cgpa is not None else None,
            backlogs=int(backlogs) if backlogs is not None else None,
            programme=_optional_str(row.get("programme")),
        ))

    # --- Write everything or nothing ---
    with store.transaction() as conn:
        for pool in pools:
            store.write_pool(conn, pool)
        for registration in registrations:
            store.write_registration(conn, registration)
        for record in records:
            store.write_academic_record(conn, record)

    counts = {"pools": len(pools), "registrations": len(registrations), "academic_records": len(records)}
    logger.info("Imported snapshot: %s", counts)
    return counts
