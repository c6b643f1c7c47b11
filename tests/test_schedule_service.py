from datetime import date, datetime, time

import pytest
from sqlalchemy.orm import sessionmaker

from careschedule.database import Base, build_engine
from careschedule.domain.scheduling.schemas import (
    RepeatConfig,
    ScheduleEventCreate,
    ScheduleEventFilter,
    ScheduleEventUpdate,
    SchedulePreviewRequest,
)
from careschedule.domain.scheduling.service import ScheduleService
from careschedule.exceptions import ConcurrencyError, ConflictError, NotFoundError, ValidationError
from careschedule.models import ScheduleEvent, ScheduleEventStatus

MONDAY = date(2025, 3, 3)
MON, WED = 1, 3


@pytest.fixture
def service(db, directory):
    return ScheduleService(db, directory)


def definition(event_date=MONDAY, start=time(9, 0), end=time(10, 0), **fields):
    values = dict(
        patientId="P1",
        eventDate=event_date,
        startTime=start,
        endTime=end,
        authorizationId="A1",
        staffId="S1",
        plannedUnits=4,
    )
    values.update(fields)
    return ScheduleEventCreate(**values)


def weekly(occurrences=4, days=(MON, WED)):
    return RepeatConfig(interval=1, frequency="WEEK", daysOfWeek=list(days), occurrences=occurrences)


# ----------------------------------------------------------------------------
# Preview
# ----------------------------------------------------------------------------


def test_preview_expands_and_reports_conflicts(service, db, add_event):
    busy = add_event(patient_id="P2", staff_id="S1", event_date=date(2025, 3, 5), start=time(9, 30), end=time(10, 30))

    preview = service.create_schedule_preview(
        SchedulePreviewRequest(scheduleEvent=definition(), repeatConfig=weekly())
    )

    assert [e.eventDate for e in preview.scheduleEvents] == [
        date(2025, 3, 3),
        date(2025, 3, 5),
        date(2025, 3, 10),
        date(2025, 3, 12),
    ]
    assert [e.hasConflict for e in preview.scheduleEvents] == [False, True, False, False]
    assert preview.scheduleEvents[1].conflictMessages == [
        "Employee already has an event scheduled during this time"
    ]
    assert len(preview.conflicts) == 1
    assert preview.conflicts[0].conflictingEventId == busy.id
    assert preview.conflicts[0].candidateIndex == 1
    assert preview.canSave is False
    assert preview.message == "4 events will be created (1 conflict(s) found)"
    assert preview.scheduleEvents[0].patientName == "Ada Patient"
    assert preview.scheduleEvents[0].employeeName == "Sam Aide"
    # Preview never writes
    assert db.query(ScheduleEvent).count() == 1


def test_preview_marks_overridden_conflicts_resolved(service, add_event):
    busy = add_event(patient_id="P2", staff_id="S1", start=time(9, 30), end=time(10, 30))

    preview = service.create_schedule_preview(
        SchedulePreviewRequest(scheduleEvent=definition(overriddenConflictIds=[busy.id]))
    )

    assert preview.conflicts[0].resolved is True
    assert preview.scheduleEvents[0].hasConflict is False
    assert preview.canSave is True
    assert preview.message == "1 event will be created (1 conflict(s) found)"


def test_single_occurrence_preview(service):
    preview = service.create_schedule_preview(SchedulePreviewRequest(scheduleEvent=definition()))
    assert preview.canSave is True
    assert preview.message == "1 event will be created"
    assert preview.scheduleEvents[0].id is None


def test_preview_rejects_unknown_patient_and_bad_repeat(service):
    with pytest.raises(NotFoundError):
        service.create_schedule_preview(
            SchedulePreviewRequest(scheduleEvent=definition(patientId="nobody"))
        )
    with pytest.raises(ValidationError):
        service.create_schedule_preview(
            SchedulePreviewRequest(
                scheduleEvent=definition(),
                repeatConfig=RepeatConfig(interval=1, frequency="WEEK", daysOfWeek=[MON]),
            )
        )


# ----------------------------------------------------------------------------
# Commit
# ----------------------------------------------------------------------------


def test_commit_creates_batch(service, db):
    candidates = service.expand_definition(definition(), weekly(occurrences=3))

    created = service.create_schedule_events(candidates)

    assert [e.event_date for e in created] == [date(2025, 3, 3), date(2025, 3, 5), date(2025, 3, 10)]
    assert all(e.id is not None for e in created)
    assert {e.event_code for e in created} == {"T1019"}
    assert {e.office_id for e in created} == {"OFF1"}
    assert {e.status for e in created} == {ScheduleEventStatus.PLANNED.value}
    assert db.query(ScheduleEvent).count() == 3


def test_commit_is_all_or_nothing(service, db, add_event):
    busy = add_event(patient_id="P2", staff_id="S1", event_date=date(2025, 3, 5))

    with pytest.raises(ConflictError) as excinfo:
        service.create_schedule_events(service.expand_definition(definition(), weekly(occurrences=3)))

    assert [c.conflictingEventId for c in excinfo.value.conflicts] == [busy.id]
    assert excinfo.value.to_dict()["conflicts"][0]["conflictType"] == "STAFF_CONFLICT"
    assert db.query(ScheduleEvent).count() == 1


def test_commit_accepts_overridden_conflicts(service, db, add_event):
    busy = add_event(patient_id="P2", staff_id="S1")

    created = service.create_schedule_events([definition(overriddenConflictIds=[busy.id])])

    assert len(created) == 1
    assert db.query(ScheduleEvent).count() == 2


def test_commit_rechecks_against_latest_state(service, db, add_event):
    preview = service.create_schedule_preview(SchedulePreviewRequest(scheduleEvent=definition()))
    assert preview.canSave is True

    # Someone else books the employee between preview and commit
    add_event(patient_id="P2", staff_id="S1", start=time(9, 45), end=time(10, 15))

    with pytest.raises(ConflictError):
        service.create_schedule_events([definition()])
    assert db.query(ScheduleEvent).count() == 1


def test_commit_catches_overlaps_inside_the_batch(service, db):
    with pytest.raises(ConflictError):
        service.create_schedule_events([definition(), definition(start=time(9, 30), end=time(10, 30))])
    assert db.query(ScheduleEvent).count() == 0


def test_commit_rejects_empty_batch(service):
    with pytest.raises(ValidationError):
        service.create_schedule_events([])


@pytest.fixture
def file_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'schedule.db'}", busy_timeout=0.1)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


def test_concurrent_commits_cannot_both_book_the_employee(file_engine, directory):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    first_db, second_db, check_db = Session(), Session(), Session()
    first = ScheduleService(first_db, directory)
    second = ScheduleService(second_db, directory)
    other_batch = [definition(patientId="P2", authorizationId="A2", start=time(9, 30), end=time(10, 30))]
    outcome = {}
    add_event = first.repo.add_event

    def add_after_other_batch(db, event):
        # The other batch runs after this one's conflict check and before its insert
        if "error" not in outcome:
            try:
                second.create_schedule_events(other_batch)
                outcome["error"] = None
            except ConcurrencyError as e:
                outcome["error"] = e
        return add_event(db, event)

    first.repo.add_event = add_after_other_batch
    try:
        created = first.create_schedule_events([definition()])

        assert len(created) == 1
        assert isinstance(outcome["error"], ConcurrencyError)
        rows = check_db.query(ScheduleEvent).all()
        assert [(e.patient_id, e.staff_id, e.start_at) for e in rows] == [
            ("P1", "S1", datetime(2025, 3, 3, 9, 0))
        ]

        # Retrying once the first batch is in surfaces the double-booking
        with pytest.raises(ConflictError):
            second.create_schedule_events(other_batch)
    finally:
        for session in (first_db, second_db, check_db):
            session.close()


def test_commit_validates_status_and_authorization(service, directory, db):
    directory.add_authorization("A3", "P1", end_date=date(2025, 3, 4))
    directory.add_authorization("A4", "P1", remaining_units=6)

    cases = [
        [definition(status=ScheduleEventStatus.COMPLETED)],
        [definition(authorizationId="A2")],
        [definition(authorizationId="A3", eventDate=date(2025, 3, 5))],
        [definition(authorizationId="A4"), definition(authorizationId="A4", eventDate=date(2025, 3, 4))],
        [definition(start=time(9, 0), end=time(9, 0))],
    ]
    for batch in cases:
        with pytest.raises(ValidationError):
            service.create_schedule_events(batch)

    with pytest.raises(NotFoundError):
        service.create_schedule_events([definition(authorizationId="nope")])
    with pytest.raises(NotFoundError):
        service.create_schedule_events([definition(staffId="ghost")])
    assert db.query(ScheduleEvent).count() == 0


def test_commit_overnight_visit(service):
    event = service.create_schedule_events([definition(start=time(22, 0), end=time(6, 0), plannedUnits=32)])[0]
    assert event.start_at == datetime(2025, 3, 3, 22, 0)
    assert event.end_at == datetime(2025, 3, 4, 6, 0)


# ----------------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------------


def test_listing_filters_and_pages(service, add_event):
    add_event(patient_id="P1", event_date=date(2025, 3, 3), event_code="T1019")
    add_event(patient_id="P1", event_date=date(2025, 3, 4), comment="Needs lift")
    add_event(patient_id="P1", event_date=date(2025, 3, 5), status=ScheduleEventStatus.CANCELLED)
    add_event(patient_id="P2", event_date=date(2025, 3, 3), staff_id="S2")

    items, total = service.get_schedule_events(ScheduleEventFilter(patientId="P1"))
    assert total == 3
    assert [e.event_date for e in items] == [date(2025, 3, 3), date(2025, 3, 4), date(2025, 3, 5)]

    items, total = service.get_schedule_events(
        ScheduleEventFilter(patientId="P1", sortBy="eventDate", sortDir="desc", size=2, page=0)
    )
    assert total == 3
    assert [e.event_date for e in items] == [date(2025, 3, 5), date(2025, 3, 4)]

    items, _ = service.get_schedule_events(ScheduleEventFilter(search="LIFT"))
    assert [e.comment for e in items] == ["Needs lift"]

    items, _ = service.get_schedule_events(ScheduleEventFilter(status=ScheduleEventStatus.CANCELLED))
    assert [e.event_date for e in items] == [date(2025, 3, 5)]

    items, _ = service.get_schedule_events(
        ScheduleEventFilter(staffId="S2", dateFrom=date(2025, 3, 3), dateTo=date(2025, 3, 3))
    )
    assert [e.patient_id for e in items] == ["P2"]

    with pytest.raises(ValidationError):
        service.get_schedule_events(ScheduleEventFilter(dateFrom=date(2025, 3, 5), dateTo=date(2025, 3, 1)))


def test_unknown_event_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.get_schedule_event(999)


# ----------------------------------------------------------------------------
# Updates and check-in/check-out
# ----------------------------------------------------------------------------


def test_update_reschedules_and_reassigns(service, add_event):
    event = add_event(patient_id="P1", staff_id="S1")

    updated = service.update_schedule_event(
        event.id,
        ScheduleEventUpdate(
            eventDate=date(2025, 3, 6),
            startTime=time(13, 0),
            endTime=time(14, 0),
            staffId="S2",
            comments="Moved",
        ),
    )

    assert updated.event_date == date(2025, 3, 6)
    assert updated.start_at == datetime(2025, 3, 6, 13, 0)
    assert updated.end_at == datetime(2025, 3, 6, 14, 0)
    assert updated.staff_id == "S2"
    assert updated.comment == "Moved"

    cleared = service.update_schedule_event(event.id, ScheduleEventUpdate(clearStaff=True))
    assert cleared.staff_id is None


def test_update_into_conflict_is_rejected(service, add_event):
    add_event(patient_id="P2", staff_id="S2", start=time(11, 0), end=time(12, 0))
    event = add_event(patient_id="P1", staff_id="S1")

    with pytest.raises(ConflictError):
        service.update_schedule_event(
            event.id, ScheduleEventUpdate(startTime=time(11, 30), endTime=time(12, 30), staffId="S2")
        )

    unchanged = service.get_schedule_event(event.id)
    assert unchanged.staff_id == "S1"
    assert unchanged.start_at == datetime(2025, 3, 3, 9, 0)


def test_rejected_update_leaves_event_untouched(service, db, add_event):
    event = add_event(patient_id="P1", staff_id="S1")

    with pytest.raises(NotFoundError):
        service.update_schedule_event(
            event.id, ScheduleEventUpdate(status=ScheduleEventStatus.CONFIRMED, staffId="ghost")
        )
    with pytest.raises(ValidationError):
        service.update_schedule_event(
            event.id,
            ScheduleEventUpdate(status=ScheduleEventStatus.CONFIRMED, authorizationId="A2"),
        )

    assert not db.dirty
    current = service.get_schedule_event(event.id)
    assert current.status == ScheduleEventStatus.PLANNED.value
    assert current.staff_id == "S1"
    assert current.authorization_id is None


def test_manual_status_changes_follow_lifecycle(service, add_event):
    event = add_event()

    confirmed = service.update_schedule_event(event.id, ScheduleEventUpdate(status=ScheduleEventStatus.CONFIRMED))
    assert confirmed.status == ScheduleEventStatus.CONFIRMED.value

    with pytest.raises(ValidationError):
        service.update_schedule_event(event.id, ScheduleEventUpdate(status=ScheduleEventStatus.IN_PROGRESS))

    service.update_schedule_event(event.id, ScheduleEventUpdate(status=ScheduleEventStatus.CANCELLED))
    with pytest.raises(ValidationError):
        service.update_schedule_event(event.id, ScheduleEventUpdate(status=ScheduleEventStatus.CONFIRMED))


def test_check_in_and_out_compute_actual_units(service, add_event):
    event = add_event()

    checked_in = service.record_check_in(event.id, datetime(2025, 3, 3, 9, 2))
    assert checked_in.status == ScheduleEventStatus.IN_PROGRESS.value

    checked_out = service.record_check_out(event.id, datetime(2025, 3, 3, 10, 5))
    assert checked_out.status == ScheduleEventStatus.COMPLETED.value
    assert checked_out.actual_units == 5
    assert checked_out.check_out_at == datetime(2025, 3, 3, 10, 5)


def test_check_out_rules(service, add_event):
    planned = add_event()
    with pytest.raises(ValidationError):
        service.record_check_out(planned.id, datetime(2025, 3, 3, 10, 0))

    service.record_check_in(planned.id, datetime(2025, 3, 3, 9, 0))
    with pytest.raises(ValidationError):
        service.record_check_out(planned.id, datetime(2025, 3, 3, 8, 0))

    cancelled = add_event(event_date=date(2025, 3, 4), status=ScheduleEventStatus.CANCELLED)
    with pytest.raises(ValidationError):
        service.record_check_in(cancelled.id)
