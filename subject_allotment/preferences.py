"""Validation and canonicalization of ranked subject preferences."""

import logging

from .errors import InvalidInputError, PoolInactiveError

logger = logging.getLogger(__name__)


# --- Preference normalization ---
def normalize(registration, pool, diagnostics=None):
    """
    Return the registration's preference list reduced to codes the pool offers.

    Approach:
        - Codes are stripped of surrounding whitespace; blanks are ignored.
        - Codes not offered by the pool are dropped.
        - Repeated codes keep their first (highest-ranked) position.
        - An empty result is valid: the student is ranked but cannot be allotted.

    Dropped or repeated codes are reported through ``diagnostics`` (a list that
    receives one dict per affected registration) and a warning log line.
    """
    if registration.pool_id != pool.pool_id:
        raise InvalidInputError(
            f"Registration {registration.regno} belongs to pool {registration.pool_id}, "
            f"not pool {pool.pool_id}"
        )
    if not registration.is_frozen:
        raise InvalidInputError(
            f"Registration {registration.regno} is '{registration.status}', not frozen"
        )
    if not pool.is_active:
        raise PoolInactiveError(f"Pool {pool.pool_id} is not active")

    offered = set(pool.subject_codes)
    codes = []
    dropped = []
    repeated = []
    for raw in registration.priority_order:
        if raw is None:
            continue
        code = str(raw).strip()
        if not code:
            continue
        if code not in offered:
            dropped.append(code)
        elif code in codes:
            repeated.append(code)
        else:
            codes.append(code)

    if dropped or repeated:
        logger.warning(
            "Pool %s: registration %s preferences normalized (dropped=%s, repeated=%s)",
            pool.pool_id, registration.regno, dropped, repeated,
        )
        if diagnostics is not None:
            diagnostics.append({
                "regno": registration.regno,
                "pool_id": pool.pool_id,
                "dropped": dropped,
                "repeated": repeated,
            })
    return codes


# --- Programme eligibility ---
def check_eligibility(registration, pool, record):
    """Reject students whose recorded programme the pool does not admit."""
    if not pool.allowed_programmes or record is None or not record.programme:
        return
    if record.programme not in pool.allowed_programmes:
        raise InvalidInputError(
            f"Registration {registration.regno}: programme {record.programme} "
            f"is not eligible for pool {pool.pool_id}"
        )
