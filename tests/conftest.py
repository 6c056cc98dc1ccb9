import pytest

from subject_allotment.models import AcademicRecord, Registration, Subject, SubjectPool
from subject_allotment.storage import AllotmentStore


@pytest.fixture
def store(tmp_path):
    return AllotmentStore.from_url(f"sqlite:///{tmp_path / 'allotment.db'}")


@pytest.fixture
def example_pool():
    # Pool P: A and B, one seat each
    return SubjectPool(
        pool_id=1,
        pool_name="Open Electives",
        subjects=(Subject("A", "Subject A", 1), Subject("B", "Subject B", 1)),
        semester="5",
        batch="2023",
    )


@pytest.fixture
def seeded_store(store, example_pool):
    """Store holding the three-student example: expected S3->B, S1->A, S2 unallotted."""
    store.save_pool(example_pool)
    students = [
        ("S1", 9.0, 0, ("A", "B")),
        ("S2", 8.5, 0, ("A", "B")),
        ("S3", 9.5, 1, ("B",)),
    ]
    for regno, cgpa, backlogs, prefs in students:
        store.save_registration(Registration(regno, 1, prefs, status="frozen"))
        store.save_academic_record(AcademicRecord(regno, cgpa, backlogs))
    return store
