"""Schedule service - Preview/commit workflow, queries and updates for schedule events"""

import logging
import math
from collections import defaultdict
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ...config import UNIT_MINUTES
from ...database import begin_serializable, is_serialization_failure
from ...exceptions import ConcurrencyError, ConflictError, NotFoundError, ValidationError
from ...models import ScheduleEvent, ScheduleEventStatus
from ...services.directory_service import DirectoryService
from ...shared.validators import visit_bounds
from . import lifecycle
from .conflicts import ConflictDetector
from .recurrence import build_repeat_rule, expand_dates
from .repository import ScheduleEventRepository
from .schemas import (
    SORTABLE_FIELDS,
    RepeatConfig,
    ScheduleConflict,
    ScheduleEventCreate,
    ScheduleEventFilter,
    ScheduleEventResponse,
    ScheduleEventUpdate,
    SchedulePreviewRequest,
    SchedulePreviewResponse,
)

logger = logging.getLogger(__name__)


class ScheduleService:
    """Service layer for ad-hoc schedule events"""

    def __init__(self, db: Session, directory: DirectoryService):
        self.db = db
        self.directory = directory
        self.repo = ScheduleEventRepository()
        self.detector = ConflictDetector(db, directory)

    # ------------------------------------------------------------------
    # Presentation helpers
    # ------------------------------------------------------------------

    def _display_name(self, kind: str, identifier: Optional[str]) -> Optional[str]:
        return self.detector.display_name(kind, identifier)

    def to_response(self, event: ScheduleEvent) -> ScheduleEventResponse:
        return ScheduleEventResponse(
            id=event.id,
            patientId=event.patient_id,
            patientName=self._display_name("patient", event.patient_id),
            officeId=event.office_id,
            eventDate=event.event_date,
            startAt=event.start_at,
            endAt=event.end_at,
            status=event.status,
            plannedUnits=event.planned_units,
            actualUnits=event.actual_units,
            employeeId=event.staff_id,
            employeeName=self._display_name("staff", event.staff_id),
            authorizationId=event.authorization_id,
            eventCode=event.event_code,
            checkInTime=event.check_in_at,
            checkOutTime=event.check_out_at,
            comments=event.comment,
            sourceTemplateId=event.source_template_id,
        )

    def _to_preview(
        self, candidate: ScheduleEventCreate, conflicts: list[ScheduleConflict]
    ) -> ScheduleEventResponse:
        start_at, end_at = visit_bounds(candidate.eventDate, candidate.startTime, candidate.endTime)
        return ScheduleEventResponse(
            patientId=candidate.patientId,
            patientName=self._display_name("patient", candidate.patientId),
            eventDate=candidate.eventDate,
            startAt=start_at,
            endAt=end_at,
            status=candidate.status.value,
            plannedUnits=candidate.plannedUnits,
            employeeId=candidate.staffId,
            employeeName=self._display_name("staff", candidate.staffId),
            authorizationId=candidate.authorizationId,
            eventCode=candidate.eventCode,
            comments=candidate.comments,
            hasConflict=any(not c.resolved for c in conflicts),
            conflictMessages=[c.message for c in conflicts],
        )

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def expand_definition(
        self, definition: ScheduleEventCreate, repeat_config: Optional[RepeatConfig] = None
    ) -> list[ScheduleEventCreate]:
        """One candidate per occurrence date, all sharing the definition's time and metadata"""
        rule = None
        if repeat_config is not None:
            rule = build_repeat_rule(
                interval=repeat_config.interval,
                frequency=repeat_config.frequency,
                days_of_week=repeat_config.daysOfWeek,
                end_date=repeat_config.endDate,
                occurrences=repeat_config.occurrences,
            )
        dates = expand_dates(definition.eventDate, rule)
        return [definition.model_copy(update={"eventDate": day}) for day in dates]

    def create_schedule_preview(self, request: SchedulePreviewRequest) -> SchedulePreviewResponse:
        """
        Expand the definition and annotate every candidate with conflicts.
        Nothing is written.
        """
        definition = request.scheduleEvent
        logger.info(f"Creating schedule preview for patient {definition.patientId}")

        if not self.directory.get_patient(definition.patientId):
            raise NotFoundError("Patient", definition.patientId)
        if definition.staffId and not self.directory.get_staff(definition.staffId):
            raise NotFoundError("Staff", definition.staffId)
        if definition.startTime == definition.endTime:
            raise ValidationError("End time must differ from start time", field="endTime")

        candidates = self.expand_definition(definition, request.repeatConfig)
        conflicts = self.detector.detect(candidates)

        by_candidate: dict[int, list[ScheduleConflict]] = defaultdict(list)
        for conflict in conflicts:
            if conflict.conflictingEventId in candidates[conflict.candidateIndex].overriddenConflictIds:
                conflict.resolved = True
            by_candidate[conflict.candidateIndex].append(conflict)

        previews = [self._to_preview(c, by_candidate[i]) for i, c in enumerate(candidates)]
        can_save = all(c.resolved for c in conflicts)

        if len(previews) == 1:
            message = "1 event will be created"
        else:
            message = f"{len(previews)} events will be created"
        if conflicts:
            message += f" ({len(conflicts)} conflict(s) found)"

        return SchedulePreviewResponse(
            scheduleEvents=previews, conflicts=conflicts, canSave=can_save, message=message
        )

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def _validate_batch(self, candidates: list[ScheduleEventCreate]) -> dict[int, dict]:
        """
        Check references and authorizations for the whole batch.

        Returns per-candidate defaults (office, event code) resolved from the directory.
        """
        errors = []
        resolved: dict[int, dict] = {}
        units_by_authorization: dict[str, int] = defaultdict(int)
        authorizations = {}

        for index, candidate in enumerate(candidates):
            if candidate.startTime == candidate.endTime:
                errors.append(
                    {"index": index, "field": "endTime", "message": "End time must differ from start time"}
                )
            if candidate.status not in lifecycle.CREATABLE:
                errors.append(
                    {
                        "index": index,
                        "field": "status",
                        "message": f"New events cannot start as {candidate.status.value}",
                    }
                )

            patient = self.directory.get_patient(candidate.patientId)
            if not patient:
                raise NotFoundError("Patient", candidate.patientId)
            if candidate.staffId and not self.directory.get_staff(candidate.staffId):
                raise NotFoundError("Staff", candidate.staffId)

            auth = authorizations.get(candidate.authorizationId)
            if auth is None:
                auth = self.directory.get_authorization(candidate.authorizationId)
                if not auth:
                    raise NotFoundError("Authorization", candidate.authorizationId)
                authorizations[candidate.authorizationId] = auth

            if auth.patient_id and auth.patient_id != candidate.patientId:
                errors.append(
                    {
                        "index": index,
                        "field": "authorizationId",
                        "message": "Authorization does not belong to this patient",
                    }
                )
            elif not auth.covers(candidate.eventDate):
                errors.append(
                    {
                        "index": index,
                        "field": "authorizationId",
                        "message": f"Authorization is not valid on {candidate.eventDate.isoformat()}",
                    }
                )
            units_by_authorization[candidate.authorizationId] += candidate.plannedUnits

            resolved[index] = {
                "office_id": patient.office_id,
                "event_code": candidate.eventCode or auth.event_code,
            }

        for authorization_id, units in units_by_authorization.items():
            remaining = authorizations[authorization_id].remaining_units
            if remaining is not None and units > remaining:
                errors.append(
                    {
                        "field": "plannedUnits",
                        "message": (
                            f"Batch plans {units} units on authorization {authorization_id} "
                            f"but only {remaining} remain"
                        ),
                    }
                )

        if errors:
            logger.warning(f"Rejected schedule batch with {len(errors)} validation error(s)")
            raise ValidationError("Schedule events failed validation", errors=errors)
        return resolved

    def create_schedule_events(self, candidates: list[ScheduleEventCreate]) -> list[ScheduleEvent]:
        """
        Persist a confirmed batch atomically.

        Conflicts are re-detected against the latest committed state, including
        events already written earlier in this batch. A conflict is tolerated
        only when its event id is listed in the candidate's overriddenConflictIds.
        Any failure rolls the whole batch back.
        """
        if not candidates:
            raise ValidationError("No schedule events provided", field="events")

        logger.info(f"Creating {len(candidates)} schedule events")
        created: list[ScheduleEvent] = []
        try:
            begin_serializable(self.db)
            resolved = self._validate_batch(candidates)

            for index, candidate in enumerate(candidates):
                start_at, end_at = visit_bounds(candidate.eventDate, candidate.startTime, candidate.endTime)
                conflicts = self.detector.detect_interval(
                    patient_id=candidate.patientId,
                    staff_id=candidate.staffId,
                    event_date=candidate.eventDate,
                    start_at=start_at,
                    end_at=end_at,
                    candidate_index=index,
                )
                blocking = [
                    c for c in conflicts if c.conflictingEventId not in candidate.overriddenConflictIds
                ]
                if blocking:
                    raise ConflictError(
                        f"Cannot create schedule events due to {len(blocking)} conflict(s). "
                        "Please refresh and try again.",
                        conflicts=blocking,
                    )

                created.append(
                    self.repo.add_event(
                        self.db,
                        ScheduleEvent(
                            office_id=resolved[index]["office_id"],
                            patient_id=candidate.patientId,
                            staff_id=candidate.staffId,
                            authorization_id=candidate.authorizationId,
                            event_date=candidate.eventDate,
                            start_at=start_at,
                            end_at=end_at,
                            status=candidate.status.value,
                            event_code=resolved[index]["event_code"],
                            planned_units=candidate.plannedUnits,
                            comment=candidate.comments,
                        ),
                    )
                )

            self.db.commit()
        except OperationalError as e:
            self.db.rollback()
            if is_serialization_failure(e):
                logger.warning("Schedule batch lost a serialization race; caller may retry")
                raise ConcurrencyError("Schedule changed while saving; please preview again")
            raise
        except Exception:
            self.db.rollback()
            raise

        for event in created:
            self.db.refresh(event)
        logger.info(f"Created {len(created)} schedule events")
        return created

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_schedule_event(self, event_id: int) -> ScheduleEvent:
        event = self.repo.get_event(self.db, event_id)
        if not event:
            raise NotFoundError("Schedule event", event_id)
        return event

    def get_schedule_events(self, filters: ScheduleEventFilter) -> tuple[list[ScheduleEvent], int]:
        if filters.sortBy and filters.sortBy not in SORTABLE_FIELDS:
            logger.warning(f"Invalid sort field requested: {filters.sortBy}")
        if filters.dateFrom and filters.dateTo and filters.dateFrom > filters.dateTo:
            raise ValidationError("dateFrom must be on or before dateTo", field="dateFrom")
        return self.repo.search_events(self.db, filters)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _validated_changes(self, event: ScheduleEvent, data: ScheduleEventUpdate) -> dict:
        """Column values an update would write; raises before anything is applied"""
        changes: dict = {}

        if data.status is not None:
            changes["status"] = lifecycle.ensure_transition(event.status, data.status).value

        if data.authorizationId is not None:
            auth = self.directory.get_authorization(data.authorizationId)
            if not auth:
                raise NotFoundError("Authorization", data.authorizationId)
            if auth.patient_id and auth.patient_id != event.patient_id:
                raise ValidationError(
                    "Authorization does not belong to this patient", field="authorizationId"
                )
            changes["authorization_id"] = data.authorizationId

        reschedule = data.eventDate is not None or data.startTime is not None or data.endTime is not None
        if reschedule:
            event_date = data.eventDate or event.event_date
            start_time = data.startTime or event.start_at.time()
            end_time = data.endTime or event.end_at.time()
            if start_time == end_time:
                raise ValidationError("End time must differ from start time", field="endTime")
            changes["start_at"], changes["end_at"] = visit_bounds(event_date, start_time, end_time)
            changes["event_date"] = event_date

        restaff = data.clearStaff or data.staffId is not None
        if data.clearStaff:
            changes["staff_id"] = None
        elif data.staffId is not None:
            if not self.directory.get_staff(data.staffId):
                raise NotFoundError("Staff", data.staffId)
            changes["staff_id"] = data.staffId

        if data.eventCode is not None:
            changes["event_code"] = data.eventCode
        if data.plannedUnits is not None:
            changes["planned_units"] = data.plannedUnits
        if data.comments is not None:
            changes["comment"] = data.comments

        status = changes.get("status", event.status)
        if (reschedule or restaff) and status != ScheduleEventStatus.CANCELLED.value:
            conflicts = self.detector.detect_interval(
                patient_id=event.patient_id,
                staff_id=changes.get("staff_id", event.staff_id),
                event_date=changes.get("event_date", event.event_date),
                start_at=changes.get("start_at", event.start_at),
                end_at=changes.get("end_at", event.end_at),
                exclude_event_ids=[event.id],
            )
            if conflicts:
                raise ConflictError(
                    f"Updated event would conflict with {len(conflicts)} existing event(s)",
                    conflicts=conflicts,
                )
        return changes

    def update_schedule_event(self, event_id: int, data: ScheduleEventUpdate) -> ScheduleEvent:
        """Partial update; moved or re-staffed visits are checked for new conflicts"""
        try:
            begin_serializable(self.db)
            event = self.get_schedule_event(event_id)
            logger.info(f"Updating schedule event {event_id}")

            for column, value in self._validated_changes(event, data).items():
                setattr(event, column, value)
            self.db.commit()
        except OperationalError as e:
            self.db.rollback()
            if is_serialization_failure(e):
                logger.warning(f"Update of schedule event {event_id} lost a write race")
                raise ConcurrencyError("Schedule changed while saving; please retry")
            raise
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(event)
        return event

    def record_check_in(self, event_id: int, at: Optional[datetime] = None) -> ScheduleEvent:
        """EVV check-in: the visit is now in progress"""
        event = self.get_schedule_event(event_id)
        event.status = lifecycle.ensure_transition(
            event.status, ScheduleEventStatus.IN_PROGRESS, manual=False
        ).value
        event.check_in_at = at or datetime.now()
        self.db.commit()
        self.db.refresh(event)
        logger.info(f"Checked in schedule event {event_id} at {event.check_in_at}")
        return event

    def record_check_out(
        self, event_id: int, at: Optional[datetime] = None, actual_units: Optional[int] = None
    ) -> ScheduleEvent:
        """EVV check-out: the visit is completed and its actual units recorded"""
        event = self.get_schedule_event(event_id)
        event.status = lifecycle.ensure_transition(
            event.status, ScheduleEventStatus.COMPLETED, manual=False
        ).value

        check_out_at = at or datetime.now()
        if event.check_in_at and check_out_at <= event.check_in_at:
            self.db.rollback()
            raise ValidationError("Check-out must be after check-in", field="at")
        event.check_out_at = check_out_at

        if actual_units is None and event.check_in_at:
            minutes = (check_out_at - event.check_in_at).total_seconds() / 60
            actual_units = math.ceil(minutes / UNIT_MINUTES)
        event.actual_units = actual_units

        self.db.commit()
        self.db.refresh(event)
        logger.info(f"Checked out schedule event {event_id} ({event.actual_units} units)")
        return event
