"""Run statistics: choice distribution, satisfaction and subject utilization."""

import numpy as np
import pandas as pd


# --- Choice distribution ---
def choice_distribution(outcomes, preferences):
    """Count students allotted their 1st, 2nd, ... choice, and those left unallotted."""
    longest = max((len(p) for p in preferences.values()), default=0)
    distribution = {f"choice_{n}": 0 for n in range(1, longest + 1)}
    distribution["unallotted"] = 0
    for outcome in outcomes.values():
        if outcome.is_allotted:
            distribution[f"choice_{outcome.choice_rank}"] += 1
        else:
            distribution["unallotted"] += 1
    return distribution


# --- Satisfaction ---
def average_satisfaction(outcomes, preferences):
    """
    Mean satisfaction over all students considered.

    A student allotted choice r out of P listed preferences scores (P - r + 1) / P,
    so a first choice is worth 1.0 and an unallotted student 0.0.
    """
    scores = []
    for regno, outcome in outcomes.items():
        listed = len(preferences.get(regno, ()))
        if outcome.is_allotted and listed:
            scores.append((listed - outcome.choice_rank + 1) / listed)
        else:
            scores.append(0.0)
    if not scores:
        return 0.0
    return round(float(np.mean(scores)), 4)


# --- Subject popularity & utilization ---
def subject_utilization(pool, outcomes, preferences):
    """One row per subject: intake, how many students listed it, how many got it."""
    requested = {code: 0 for code in pool.subject_codes}
    for codes in preferences.values():
        for code in codes:
            if code in requested:
                requested[code] += 1

    allotted = {code: 0 for code in pool.subject_codes}
    for outcome in outcomes.values():
        if outcome.is_allotted and outcome.subject_code in allotted:
            allotted[outcome.subject_code] += 1

    data = []
    for subject in pool.subjects:
        wanted = requested[subject.code]
        taken = allotted[subject.code]

        if wanted == 0:
            status = "NEVER PICKED"
        elif taken == 0:
            status = "NEVER ASSIGNED"
        elif taken >= subject.intake:
            status = "FULL"
        else:
            status = "UNDERFILLED"

        data.append({
            "subject_code": subject.code,
            "subject_name": subject.name,
            "intake": subject.intake,
            "requested": wanted,
            "allotted": taken,
            "utilization": round(taken / subject.intake * 100, 1) if subject.intake else 0.0,
            "status": status,
        })

    df = pd.DataFrame(
        data,
        columns=["subject_code", "subject_name", "intake", "requested", "allotted", "utilization", "status"],
    )
    return df.set_index("subject_code")
