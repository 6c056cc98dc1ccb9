"""Merit ordering of students within a pool."""

import logging
import math

import pandas as pd

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

MERIT_COLUMNS = ["regno", "cgpa", "backlogs", "has_record"]


def _clean_cgpa(record):
    if record is None or record.cgpa is None:
        return None
    try:
        cgpa = float(record.cgpa)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric CGPA %r for %s", record.cgpa, record.regno)
        return None
    if math.isnan(cgpa):
        return None
    if not 0.0 <= cgpa <= 10.0:
        logger.warning("Ignoring out-of-range CGPA %s for %s", cgpa, record.regno)
        return None
    return cgpa


def _clean_backlogs(record):
    if record is None or record.backlogs is None:
        return None
    try:
        backlogs = float(record.backlogs)
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric backlog count %r for %s", record.backlogs, record.regno)
        return None
    if math.isnan(backlogs):
        return None
    if backlogs < 0 or not backlogs.is_integer():
        logger.warning("Ignoring invalid backlog count %s for %s", backlogs, record.regno)
        return None
    return int(backlogs)


# --- Merit frame ---
def merit_frame(students, academic_records):
    """
    Build the merit table for ``students`` sorted best-first.

    Sort keys, in priority order:
        1) CGPA descending, missing CGPA after every numeric value
        2) backlog count ascending, missing count after every numeric value
        3) students with an academic record before students without one
        4) registration number ascending

    Registration numbers are unique, so the order is strict and total.
    """
    regnos = [str(s) for s in students]
    duplicated = pd.Series(regnos, dtype=object).duplicated()
    if duplicated.any():
        dup_ids = sorted(set(pd.Series(regnos, dtype=object)[duplicated]))
        raise InvalidInputError(f"Duplicate registration numbers in merit input: {dup_ids}")

    if isinstance(academic_records, dict):
        records = academic_records
    else:
        records = {r.regno: r for r in academic_records}

    rows = []
    for regno in regnos:
        record = records.get(regno)
        rows.append({
            "regno": regno,
            "cgpa": _clean_cgpa(record),
            "backlogs": _clean_backlogs(record),
            "has_record": record is not None,
        })

    merit_df = pd.DataFrame(rows, columns=MERIT_COLUMNS)
    merit_df["cgpa"] = pd.to_numeric(merit_df["cgpa"], errors="coerce")
    merit_df["backlogs"] = pd.to_numeric(merit_df["backlogs"], errors="coerce")
    merit_df["has_record"] = merit_df["has_record"].astype(bool)

    merit_df = merit_df.sort_values(
        by=["cgpa", "backlogs", "has_record", "regno"],
        ascending=[False, True, False, True],
        na_position="last",
    ).reset_index(drop=True)
    merit_df["merit_rank"] = merit_df.index + 1
    return merit_df


def rank(students, academic_records):
    """Return registration numbers in merit order, best first."""
    return merit_frame(students, academic_records)["regno"].tolist()
