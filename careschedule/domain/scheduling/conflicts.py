"""
Double-booking detection.

Compares candidate visits against committed, non-cancelled schedule events of
the same patient and of the same employee. Intervals are half-open, so a
visit ending at 10:00 does not collide with one starting at 10:00. Nothing
here writes to the database.
"""

import logging
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...models import ScheduleEvent
from ...services.directory_service import DirectoryService
from ...shared.validators import visit_bounds
from .repository import ScheduleEventRepository
from .schemas import ScheduleConflict, ScheduleEventCreate

logger = logging.getLogger(__name__)

PATIENT_CONFLICT = "PATIENT_CONFLICT"
STAFF_CONFLICT = "STAFF_CONFLICT"

PATIENT_CONFLICT_MESSAGE = "Patient already has an event scheduled during this time"
STAFF_CONFLICT_MESSAGE = "Employee already has an event scheduled during this time"


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open overlap test; symmetric in its two intervals"""
    return start_a < end_b and end_a > start_b


class ConflictDetector:
    """Finds patient and staff double-bookings for candidate visits"""

    def __init__(self, db: Session, directory: Optional[DirectoryService] = None):
        self.db = db
        self.directory = directory
        self.repo = ScheduleEventRepository()
        self._names: dict[tuple[str, str], Optional[str]] = {}

    def detect(self, candidates: list[ScheduleEventCreate]) -> list[ScheduleConflict]:
        """Conflicts for every candidate, tagged with the candidate's position"""
        conflicts: list[ScheduleConflict] = []
        for index, candidate in enumerate(candidates):
            start_at, end_at = visit_bounds(candidate.eventDate, candidate.startTime, candidate.endTime)
            conflicts.extend(
                self.detect_interval(
                    patient_id=candidate.patientId,
                    staff_id=candidate.staffId,
                    event_date=candidate.eventDate,
                    start_at=start_at,
                    end_at=end_at,
                    candidate_index=index,
                )
            )
        return conflicts

    def detect_interval(
        self,
        patient_id: str,
        staff_id: Optional[str],
        event_date: date,
        start_at: datetime,
        end_at: datetime,
        candidate_index: int = 0,
        exclude_event_ids: Iterable[int] = (),
    ) -> list[ScheduleConflict]:
        """
        Conflicts for one visit interval.

        Events from the day before to the day after are loaded so visits that
        run past midnight are compared by their absolute timestamps.
        """
        excluded = set(exclude_event_ids)
        window_from = event_date - timedelta(days=1)
        window_to = event_date + timedelta(days=1)
        conflicts: list[ScheduleConflict] = []

        for existing in self.repo.find_patient_events_between(self.db, patient_id, window_from, window_to):
            if existing.id in excluded:
                continue
            if intervals_overlap(start_at, end_at, existing.start_at, existing.end_at):
                conflicts.append(
                    self._conflict(
                        PATIENT_CONFLICT,
                        existing,
                        event_date,
                        candidate_index,
                        PATIENT_CONFLICT_MESSAGE,
                        self.display_name("patient", existing.patient_id),
                    )
                )

        if staff_id:
            for existing in self.repo.find_staff_events_between(self.db, staff_id, window_from, window_to):
                if existing.id in excluded:
                    continue
                if intervals_overlap(start_at, end_at, existing.start_at, existing.end_at):
                    conflicts.append(
                        self._conflict(
                            STAFF_CONFLICT,
                            existing,
                            event_date,
                            candidate_index,
                            STAFF_CONFLICT_MESSAGE,
                            self.display_name("staff", existing.staff_id),
                        )
                    )

        if conflicts:
            logger.debug(
                f"{len(conflicts)} conflict(s) for patient {patient_id} on {event_date} "
                f"{start_at.time()}-{end_at.time()}"
            )
        return conflicts

    @staticmethod
    def _conflict(
        conflict_type: str,
        existing: ScheduleEvent,
        event_date: date,
        candidate_index: int,
        message: str,
        name: Optional[str],
    ) -> ScheduleConflict:
        return ScheduleConflict(
            conflictType=conflict_type,
            conflictingEventId=existing.id,
            candidateIndex=candidate_index,
            eventDate=event_date,
            startTime=existing.start_at.time(),
            endTime=existing.end_at.time(),
            message=message,
            conflictingWithName=name,
            resolved=False,
        )

    def display_name(self, kind: str, identifier: Optional[str]) -> Optional[str]:
        """Patient or staff display name from the directory, cached per detector"""
        if not identifier or self.directory is None:
            return None
        key = (kind, identifier)
        if key not in self._names:
            ref = (
                self.directory.get_patient(identifier)
                if kind == "patient"
                else self.directory.get_staff(identifier)
            )
            self._names[key] = ref.display_name if ref else None
        return self._names[key]
