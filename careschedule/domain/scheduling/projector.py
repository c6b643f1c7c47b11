"""
Template projection: turn a patient's recurring template into dated visits.

Calendar weeks start on Sunday. The template week used for a date is picked
round-robin: the number of calendar weeks between the template's anchor week
and the date's week, modulo the number of template weeks, selects a week in
ascending week_index order.
"""

import logging
import math
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...config import UNIT_MINUTES
from ...database import begin_serializable, is_serialization_failure
from ...exceptions import ConcurrencyError, NotFoundError
from ...models import ScheduleEvent, ScheduleEventStatus, ScheduleTemplateEvent, ScheduleTemplateWeek
from ...services.directory_service import DirectoryService
from ...shared.validators import sunday_weekday, week_start
from .conflicts import ConflictDetector
from .repository import ScheduleEventRepository, TemplateRepository
from .schemas import ScheduleConflict

logger = logging.getLogger(__name__)


def elapsed_weeks(anchor_date: date, day: date) -> int:
    """Calendar weeks between the anchor's week and day's week"""
    return (week_start(day) - week_start(anchor_date)).days // 7


def cycle_position(anchor_date: date, day: date, week_count: int) -> int:
    return elapsed_weeks(anchor_date, day) % week_count


def units_for(start_time: time, end_time: time) -> int:
    """Billing units covering a same-day time slot, rounded up"""
    minutes = (datetime.combine(date.min, end_time) - datetime.combine(date.min, start_time)).seconds // 60
    return math.ceil(minutes / UNIT_MINUTES)


class TemplateProjector:
    """Generates schedule events from a patient's active template"""

    def __init__(self, db: Session, directory: Optional[DirectoryService] = None):
        self.db = db
        self.templates = TemplateRepository()
        self.events = ScheduleEventRepository()
        self.detector = ConflictDetector(db, directory)
        # Occurrences the last run left out because they would double-book
        self.conflicts: list[ScheduleConflict] = []

    @staticmethod
    def _index_weeks(weeks: list[ScheduleTemplateWeek]) -> list[dict[int, list[ScheduleTemplateEvent]]]:
        """Per cycle position, the template events grouped by weekday"""
        indexed = []
        for week in weeks:
            by_day: dict[int, list[ScheduleTemplateEvent]] = {}
            for event in sorted(week.events, key=lambda e: (e.day_of_week, e.start_time)):
                by_day.setdefault(event.day_of_week, []).append(event)
            indexed.append(by_day)
        return indexed

    def _lock_template(self, patient_id: str):
        try:
            begin_serializable(self.db)
            return self.templates.get_active_template_for_update(self.db, patient_id)
        except OperationalError as e:
            self.db.rollback()
            if is_serialization_failure(e):
                logger.warning(f"Template for patient {patient_id} is locked by another writer")
                raise ConcurrencyError(
                    "Schedule generation for this template is already in progress; please retry"
                )
            raise

    def generate_from_template(self, patient_id: str, end_date: date, now: Optional[datetime] = None) -> int:
        """
        Create schedule events from the watermark (exclusive) through end_date
        (inclusive) and advance the watermark. Returns the number created.

        Calling again with the same or an earlier end date creates nothing.
        Occurrences that would overlap a committed visit of the same patient
        or employee are not created; they are collected in self.conflicts.
        """
        self.conflicts = []
        template = self._lock_template(patient_id)
        if not template:
            raise NotFoundError("Active schedule template for patient", patient_id)

        if template.generated_through is not None:
            start_date = max(template.generated_through + timedelta(days=1), template.anchor_date)
        else:
            start_date = template.anchor_date

        if start_date > end_date:
            # Release the row lock
            self.db.rollback()
            logger.info(
                f"Template {template.id} already generated through {template.generated_through}; "
                f"nothing to do for {end_date}"
            )
            return 0

        weeks = self.templates.list_weeks(self.db, template.id)
        if not weeks:
            self.db.rollback()
            logger.info(f"Template {template.id} has no weeks; nothing generated")
            return 0

        cycle = self._index_weeks(weeks)
        generated_at = now or datetime.now()
        created = 0
        skipped = 0

        try:
            current = start_date
            while current <= end_date:
                position = cycle_position(template.anchor_date, current, len(cycle))
                for template_event in cycle[position].get(sunday_weekday(current), []):
                    start_at = datetime.combine(current, template_event.start_time)
                    end_at = datetime.combine(current, template_event.end_time)

                    if self.events.exists_for_patient_start(self.db, patient_id, start_at):
                        skipped += 1
                        continue

                    conflicts = self.detector.detect_interval(
                        patient_id=patient_id,
                        staff_id=template_event.staff_id,
                        event_date=current,
                        start_at=start_at,
                        end_at=end_at,
                    )
                    if conflicts:
                        self.conflicts.extend(conflicts)
                        continue

                    planned_units = template_event.planned_units
                    if planned_units is None:
                        planned_units = units_for(template_event.start_time, template_event.end_time)

                    self.events.add_event(
                        self.db,
                        ScheduleEvent(
                            office_id=template.office_id,
                            patient_id=patient_id,
                            staff_id=template_event.staff_id,
                            authorization_id=template_event.authorization_id,
                            event_date=current,
                            start_at=start_at,
                            end_at=end_at,
                            status=ScheduleEventStatus.PLANNED.value,
                            event_code=template_event.event_code,
                            planned_units=planned_units,
                            comment=template_event.comment,
                            source_template_id=template.id,
                            generated_at=generated_at,
                        ),
                    )
                    created += 1
                current += timedelta(days=1)

            template.generated_through = end_date
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            logger.warning(f"Lost watermark race on template {template.id} for patient {patient_id}")
            raise ConcurrencyError(
                "Schedule generation for this template is already in progress; please retry"
            )
        except Exception:
            self.db.rollback()
            raise

        if self.conflicts:
            logger.warning(
                f"Left out {len(self.conflicts)} occurrence(s) of template {template.id} that would "
                f"double-book patient {patient_id} or its staff"
            )
        logger.info(
            f"Generated {created} schedule events for patient {patient_id} from template "
            f"{template.id} ({start_date} to {end_date}, {skipped} already present, "
            f"{len(self.conflicts)} conflicting)"
        )
        return created
