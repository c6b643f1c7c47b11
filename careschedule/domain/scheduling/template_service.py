"""Template service - Business logic for recurring schedule templates"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import DEFAULT_TEMPLATE_NAME
from ...exceptions import ConflictError, NotFoundError, ValidationError
from ...models import ScheduleTemplate, ScheduleTemplateEvent, ScheduleTemplateWeek, TemplateStatus
from ...services.directory_service import DirectoryService
from ...shared.validators import validate_time_range, validate_weekdays, week_start, weekday_name
from .repository import TemplateRepository
from .schemas import (
    TemplateCreate,
    TemplateEventInsert,
    TemplateEventResponse,
    TemplateEventUpdate,
    TemplateResponse,
    TemplateWithWeeksResponse,
    WeekResponse,
)

logger = logging.getLogger(__name__)


def to_template_event_response(event: ScheduleTemplateEvent) -> TemplateEventResponse:
    return TemplateEventResponse(
        id=event.id,
        weekId=event.week_id,
        weekIndex=event.week.week_index,
        dayOfWeek=event.day_of_week,
        startTime=event.start_time,
        endTime=event.end_time,
        authorizationId=event.authorization_id,
        staffId=event.staff_id,
        eventCode=event.event_code,
        plannedUnits=event.planned_units,
        comment=event.comment,
    )


def to_template_response(template: ScheduleTemplate) -> TemplateResponse:
    return TemplateResponse(
        id=template.id,
        patientId=template.patient_id,
        officeId=template.office_id,
        name=template.name,
        description=template.description,
        status=template.status,
        anchorDate=template.anchor_date,
        generatedThrough=template.generated_through,
        weekIndexes=[w.week_index for w in template.weeks],
        createdAt=template.created_at,
    )


def to_template_with_weeks_response(template: ScheduleTemplate) -> TemplateWithWeeksResponse:
    return TemplateWithWeeksResponse(
        template=to_template_response(template),
        weeks=[
            WeekResponse(
                weekIndex=week.week_index,
                name=week.name,
                events=[to_template_event_response(e) for e in week.events],
            )
            for week in template.weeks
        ],
    )


class TemplateService:
    """Service layer for template, week and template event operations"""

    def __init__(self, db: Session, directory: DirectoryService):
        self.db = db
        self.directory = directory
        self.repo = TemplateRepository()

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def get_template(self, template_id: int) -> ScheduleTemplate:
        template = self.repo.get_template(self.db, template_id)
        if not template:
            raise NotFoundError("Schedule template", template_id)
        return template

    def get_template_with_weeks(self, patient_id: str) -> Optional[ScheduleTemplate]:
        """The patient's ACTIVE template with weeks and events, or None"""
        return self.repo.get_active_template(self.db, patient_id)

    def create_template(self, patient_id: str, data: Optional[TemplateCreate] = None) -> ScheduleTemplate:
        """Create the patient's ACTIVE template together with week 0"""
        data = data or TemplateCreate()
        logger.info(f"Creating schedule template for patient {patient_id}")

        patient = self.directory.get_patient(patient_id)
        if not patient:
            raise NotFoundError("Patient", patient_id)

        if self.repo.get_active_template(self.db, patient_id):
            logger.warning(f"Patient {patient_id} already has an active schedule template")
            raise ConflictError("Patient already has an active schedule template")

        anchor = week_start(data.anchorDate or date.today())
        try:
            template = self.repo.create_template(
                self.db,
                patient_id=patient_id,
                office_id=data.officeId or patient.office_id,
                name=(data.name or "").strip() or DEFAULT_TEMPLATE_NAME,
                description=data.description,
                status=TemplateStatus.ACTIVE.value,
                anchor_date=anchor,
            )
            self.repo.create_week(self.db, template.id, 0)
            self.db.commit()
        except IntegrityError:
            # Another request created the active template first
            self.db.rollback()
            logger.warning(f"Concurrent active template creation for patient {patient_id}")
            raise ConflictError("Patient already has an active schedule template")

        self.db.refresh(template)
        logger.info(f"Created schedule template {template.id} for patient {patient_id} (anchor {anchor})")
        return template

    def archive_template(self, template_id: int) -> ScheduleTemplate:
        template = self.get_template(template_id)
        if template.status == TemplateStatus.ARCHIVED.value:
            return template
        template.status = TemplateStatus.ARCHIVED.value
        self.db.commit()
        self.db.refresh(template)
        logger.info(f"Archived schedule template {template_id} for patient {template.patient_id}")
        return template

    def delete_template(self, template_id: int) -> None:
        """Delete a template with all its weeks and template events"""
        template = self.get_template(template_id)
        patient_id = template.patient_id
        self.repo.delete_template_tree(self.db, template)
        self.db.commit()
        logger.info(f"Deleted schedule template {template_id} for patient {patient_id}")

    # ------------------------------------------------------------------
    # Weeks
    # ------------------------------------------------------------------

    def add_week(self, template_id: int, week_index: int, name: Optional[str] = None) -> ScheduleTemplate:
        template = self.get_template(template_id)

        if week_index < 0:
            raise ValidationError("Week index must be 0 or greater", field="weekIndex")
        if self.repo.get_week(self.db, template.id, week_index):
            raise ValidationError(
                f"Week {week_index} already exists for this template", field="weekIndex"
            )

        self.repo.create_week(self.db, template.id, week_index, name)
        self.db.commit()
        self.db.refresh(template)
        logger.info(f"Added week {week_index} to template {template.id}")
        return template

    def delete_week(self, template_id: int, week_index: int) -> None:
        template = self.get_template(template_id)
        week = self.repo.get_week(self.db, template.id, week_index)
        if not week:
            raise NotFoundError(f"Week {week_index} of template", template.id)

        deleted_events = self.repo.delete_week(self.db, week)
        self.db.commit()
        self.db.expire(template, ["weeks"])
        logger.info(
            f"Deleted week {week_index} ({deleted_events} events) from template {template.id}"
        )

    def _require_week(self, template: ScheduleTemplate, week_index: int) -> ScheduleTemplateWeek:
        week = self.repo.get_week(self.db, template.id, week_index)
        if not week:
            raise ValidationError(
                f"Week {week_index} does not exist for this template", field="weekIndex"
            )
        return week

    # ------------------------------------------------------------------
    # Template events
    # ------------------------------------------------------------------

    def _resolve_authorization(self, template: ScheduleTemplate, authorization_id: str):
        auth = self.directory.get_authorization(authorization_id)
        if not auth:
            raise NotFoundError("Authorization", authorization_id)
        if auth.patient_id and auth.patient_id != template.patient_id:
            raise ConflictError("Authorization does not belong to this patient")
        return auth

    def _require_staff(self, staff_id: str) -> None:
        if not self.directory.get_staff(staff_id):
            raise NotFoundError("Staff", staff_id)

    def _check_overlap(
        self,
        week: ScheduleTemplateWeek,
        day_of_week: int,
        start_time,
        end_time,
        exclude_event_id: Optional[int] = None,
    ) -> None:
        overlapping = self.repo.find_overlapping_template_events(
            self.db, week.id, day_of_week, start_time, end_time, exclude_event_id
        )
        if overlapping:
            raise ConflictError(
                f"Event overlaps with existing event(s) on {weekday_name(day_of_week)} "
                f"at {start_time.strftime('%H:%M')}-{end_time.strftime('%H:%M')}"
            )

    def insert_template_event(
        self, template_id: int, data: TemplateEventInsert
    ) -> list[ScheduleTemplateEvent]:
        """
        Create one template event per requested weekday, all sharing the same
        time slot and metadata. Returns every event of the target week.
        """
        template = self.get_template(template_id)

        try:
            weekdays = validate_weekdays(data.weekdays)
        except ValueError as e:
            raise ValidationError(str(e), field="weekdays")
        try:
            validate_time_range(data.startTime, data.endTime)
        except ValueError as e:
            raise ValidationError(str(e), field="endTime")

        week = self._require_week(template, data.weekIndex)

        event_code = data.eventCode
        if data.authorizationId:
            auth = self._resolve_authorization(template, data.authorizationId)
            if not event_code:
                event_code = auth.event_code
        if data.staffId:
            self._require_staff(data.staffId)

        try:
            for dow in weekdays:
                self._check_overlap(week, dow, data.startTime, data.endTime)
                self.repo.add_template_event(
                    self.db,
                    week_id=week.id,
                    day_of_week=dow,
                    start_time=data.startTime,
                    end_time=data.endTime,
                    authorization_id=data.authorizationId,
                    staff_id=data.staffId,
                    event_code=event_code,
                    planned_units=data.plannedUnits,
                    comment=data.comment,
                )
        except ConflictError:
            self.db.rollback()
            raise

        self.db.commit()
        logger.info(
            f"Added {len(weekdays)} template event(s) to week {week.week_index} of template {template.id}"
        )
        return self.repo.list_week_events(self.db, week.id)

    def _get_owned_event(self, template: ScheduleTemplate, event_id: int) -> ScheduleTemplateEvent:
        event = self.repo.get_template_event(self.db, event_id)
        if not event or event.week.template_id != template.id:
            raise NotFoundError("Template event", event_id)
        return event

    def update_template_event(
        self, template_id: int, event_id: int, data: TemplateEventUpdate
    ) -> ScheduleTemplateEvent:
        """Partial update; the slot may not overlap another event on the same weekday"""
        template = self.get_template(template_id)
        event = self._get_owned_event(template, event_id)

        # Every check runs before the event is touched
        auth = None
        if data.authorizationId is not None:
            auth = self._resolve_authorization(template, data.authorizationId)
        if data.staffId is not None:
            self._require_staff(data.staffId)

        day_of_week = data.dayOfWeek if data.dayOfWeek is not None else event.day_of_week
        start_time = data.startTime or event.start_time
        end_time = data.endTime or event.end_time
        try:
            validate_time_range(start_time, end_time)
        except ValueError as e:
            raise ValidationError(str(e), field="endTime")
        self._check_overlap(event.week, day_of_week, start_time, end_time, exclude_event_id=event.id)

        if auth is not None:
            event.authorization_id = data.authorizationId
            if not data.eventCode and auth.event_code:
                event.event_code = auth.event_code
        if data.staffId is not None:
            event.staff_id = data.staffId
        event.day_of_week = day_of_week
        event.start_time = start_time
        event.end_time = end_time
        if data.eventCode is not None:
            event.event_code = data.eventCode
        if data.plannedUnits is not None:
            event.planned_units = data.plannedUnits
        if data.comment is not None:
            event.comment = data.comment

        self.db.commit()
        self.db.refresh(event)
        logger.info(f"Updated template event {event_id} of template {template.id}")
        return event

    def delete_template_event(self, template_id: int, event_id: int) -> list[ScheduleTemplateEvent]:
        """Delete a template event and return what is left in its week"""
        template = self.get_template(template_id)
        event = self._get_owned_event(template, event_id)
        week_id = event.week_id

        self.db.delete(event)
        self.db.commit()
        logger.info(f"Deleted template event {event_id} from template {template.id}")
        return self.repo.list_week_events(self.db, week_id)
