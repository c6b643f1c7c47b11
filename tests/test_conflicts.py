from datetime import date, datetime, time

import pytest

from careschedule.domain.scheduling.conflicts import (
    PATIENT_CONFLICT,
    STAFF_CONFLICT,
    ConflictDetector,
    intervals_overlap,
)
from careschedule.domain.scheduling.schemas import ScheduleEventCreate
from careschedule.models import ScheduleEvent, ScheduleEventStatus

DAY = date(2025, 3, 3)


def candidate(start, end, patient_id="P2", staff_id="S1", event_date=DAY):
    return ScheduleEventCreate(
        patientId=patient_id,
        eventDate=event_date,
        startTime=start,
        endTime=end,
        authorizationId="A2",
        staffId=staff_id,
        plannedUnits=4,
    )


def at(hour, minute=0, day=DAY):
    return datetime.combine(day, time(hour, minute))


def test_staff_overlap_is_reported_once(db, directory, add_event):
    existing = add_event(patient_id="P1", staff_id="S1", start=time(9, 30), end=time(10, 30))

    conflicts = ConflictDetector(db, directory).detect([candidate(time(9, 0), time(10, 0))])

    assert len(conflicts) == 1
    assert conflicts[0].conflictType == STAFF_CONFLICT
    assert conflicts[0].conflictingEventId == existing.id
    assert conflicts[0].conflictingWithName == "Sam Aide"
    assert conflicts[0].startTime == time(9, 30)
    assert conflicts[0].resolved is False


def test_touching_boundary_is_not_a_conflict(db, directory, add_event):
    add_event(patient_id="P1", staff_id="S1", start=time(9, 30), end=time(10, 30))
    assert ConflictDetector(db, directory).detect([candidate(time(10, 30), time(11, 30))]) == []

    add_event(patient_id="P1", staff_id="S2", start=time(13, 0), end=time(14, 0))
    assert ConflictDetector(db, directory).detect([candidate(time(12, 0), time(13, 0), staff_id="S2")]) == []


def test_patient_and_staff_conflicts_from_different_events(db, directory, add_event):
    add_event(patient_id="P2", staff_id="S2", start=time(9, 0), end=time(10, 0))
    add_event(patient_id="P1", staff_id="S1", start=time(9, 15), end=time(9, 45))

    conflicts = ConflictDetector(db, directory).detect([candidate(time(9, 0), time(10, 0))])

    assert sorted(c.conflictType for c in conflicts) == [PATIENT_CONFLICT, STAFF_CONFLICT]
    patient_conflict = next(c for c in conflicts if c.conflictType == PATIENT_CONFLICT)
    assert patient_conflict.message == "Patient already has an event scheduled during this time"
    assert patient_conflict.conflictingWithName == "Ben Patient"


def test_cancelled_events_do_not_conflict(db, directory, add_event):
    add_event(
        patient_id="P2", staff_id="S1", start=time(9, 0), end=time(10, 0), status=ScheduleEventStatus.CANCELLED
    )
    assert ConflictDetector(db, directory).detect([candidate(time(9, 0), time(10, 0))]) == []


def test_unassigned_candidate_only_checks_patient(db, directory, add_event):
    add_event(patient_id="P1", staff_id="S1", start=time(9, 0), end=time(10, 0))
    assert ConflictDetector(db, directory).detect([candidate(time(9, 0), time(10, 0), staff_id=None)]) == []


def test_candidate_index_tags_each_conflict(db, directory, add_event):
    add_event(patient_id="P2", start=time(9, 0), end=time(10, 0), event_date=date(2025, 3, 5))

    conflicts = ConflictDetector(db).detect(
        [
            candidate(time(9, 0), time(10, 0), staff_id=None, event_date=date(2025, 3, 3)),
            candidate(time(9, 0), time(10, 0), staff_id=None, event_date=date(2025, 3, 5)),
        ]
    )

    assert [c.candidateIndex for c in conflicts] == [1]
    # No directory, no display names
    assert conflicts[0].conflictingWithName is None


def test_overnight_visit_conflicts_with_next_morning(db, directory):
    overnight = ScheduleEvent(
        patient_id="P1",
        staff_id="S1",
        event_date=DAY,
        start_at=at(22),
        end_at=at(6, day=date(2025, 3, 4)),
        status=ScheduleEventStatus.PLANNED.value,
        planned_units=32,
    )
    db.add(overnight)
    db.commit()

    conflicts = ConflictDetector(db, directory).detect(
        [candidate(time(5, 0), time(7, 0), event_date=date(2025, 3, 4))]
    )
    assert [c.conflictType for c in conflicts] == [STAFF_CONFLICT]


def test_detection_does_not_write(db, directory, add_event):
    add_event(patient_id="P2", staff_id="S1")
    ConflictDetector(db, directory).detect([candidate(time(9, 0), time(10, 0))])
    assert db.query(ScheduleEvent).count() == 1
    assert not db.new and not db.dirty


@pytest.mark.parametrize(
    "a,b",
    [
        ((at(9), at(10)), (at(9, 30), at(10, 30))),
        ((at(9), at(10)), (at(10), at(11))),
        ((at(9), at(12)), (at(10), at(11))),
        ((at(9), at(10)), (at(11), at(12))),
    ],
)
def test_overlap_is_symmetric(a, b):
    assert intervals_overlap(*a, *b) == intervals_overlap(*b, *a)
