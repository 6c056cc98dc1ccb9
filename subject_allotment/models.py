"""Data model shared by the allotment engine and its store."""

from dataclasses import dataclass, field

from .errors import InvalidInputError

DRAFT = "draft"
FROZEN = "frozen"
REGISTRATION_STATUSES = (DRAFT, FROZEN)


# ═══════════════════════════════════════════════════════
# SECTION: Pools & Subjects
# ═══════════════════════════════════════════════════════

@dataclass(frozen=True)
class Subject:
    code: str
    name: str
    intake: int


@dataclass(frozen=True)
class SubjectPool:
    pool_id: int
    pool_name: str
    subjects: tuple
    semester: str = ""
    batch: str = ""
    allowed_programmes: tuple = ()
    is_active: bool = True

    def __post_init__(self):
        seen = set()
        for subject in self.subjects:
            if subject.intake < 0:
                raise InvalidInputError(
                    f"Pool {self.pool_id}: negative intake for subject {subject.code}"
                )
            if subject.code in seen:
                raise InvalidInputError(
                    f"Pool {self.pool_id}: duplicate subject code {subject.code}"
                )
            seen.add(subject.code)

    @property
    def subject_codes(self):
        return [s.code for s in self.subjects]

    def intake_by_code(self):
        return {s.code: s.intake for s in self.subjects}


# ═══════════════════════════════════════════════════════
# SECTION: Students
# ═══════════════════════════════════════════════════════

@dataclass(frozen=True)
class Registration:
    regno: str
    pool_id: int
    priority_order: tuple = ()
    status: str = DRAFT
    email: str = ""
    mobile: str = ""

    @property
    def is_frozen(self):
        return self.status == FROZEN


@dataclass(frozen=True)
class AcademicRecord:
    regno: str
    cgpa: float = None
    backlogs: int = None
    programme: str = None


# ═══════════════════════════════════════════════════════
# SECTION: Outcomes
# ═══════════════════════════════════════════════════════

@dataclass(frozen=True)
class Allotted:
    subject_code: str
    choice_rank: int  # 1-based position in the student's normalized preferences

    @property
    def is_allotted(self):
        return True


@dataclass(frozen=True)
class Unallotted:
    reason: str = "capacity_exhausted"  # or "no_preferences"

    @property
    def is_allotted(self):
        return False


@dataclass
class RunSummary:
    pool_id: int
    timestamp: str
    total_considered: int
    total_allotted: int
    total_unallotted: int
    total_skipped: int = 0
    choice_distribution: dict = field(default_factory=dict)
    average_satisfaction: float = 0.0

    def to_dict(self):
        # Shape consumed by the activity log and reporting collaborators
        return {
            "poolId": self.pool_id,
            "timestamp": self.timestamp,
            "totalConsidered": self.total_considered,
            "totalAllotted": self.total_allotted,
            "totalUnallotted": self.total_unallotted,
            "totalSkipped": self.total_skipped,
            "choiceDistribution": dict(self.choice_distribution),
            "averageSatisfaction": self.average_satisfaction,
        }


@dataclass
class AllocationResult:
    pool_id: int
    run_id: str
    merit_order: list
    outcomes: dict  # regno -> Allotted | Unallotted, in merit order
    skipped: dict  # regno -> reason
    summary: RunSummary
    diagnostics: list = field(default_factory=list)
    utilization: object = None  # DataFrame indexed by subject code

    def allotment_records(self):
        """Rows in the external allotment shape: subject_code is None when unallotted."""
        return [
            {
                "regno": regno,
                "pool_id": self.pool_id,
                "subject_code": outcome.subject_code if outcome.is_allotted else None,
            }
            for regno, outcome in self.outcomes.items()
        ]
