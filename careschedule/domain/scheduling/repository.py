"""Scheduling repository - Database operations for templates and schedule events

Repository methods add/flush but never commit; the services own the
transaction boundaries so multi-row operations stay atomic.
"""

from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import asc, desc, func
from sqlalchemy.orm import Session, selectinload

from ...models import (
    ScheduleEvent,
    ScheduleEventStatus,
    ScheduleTemplate,
    ScheduleTemplateEvent,
    ScheduleTemplateWeek,
    TemplateStatus,
)
from .schemas import SORTABLE_FIELDS, ScheduleEventFilter


class TemplateRepository:
    """Repository for template, week and template event operations"""

    @staticmethod
    def get_template(db: Session, template_id: int) -> Optional[ScheduleTemplate]:
        return db.query(ScheduleTemplate).filter(ScheduleTemplate.id == template_id).first()

    @staticmethod
    def get_active_template(db: Session, patient_id: str) -> Optional[ScheduleTemplate]:
        """Get the patient's ACTIVE template with weeks and events loaded"""
        return (
            db.query(ScheduleTemplate)
            .options(selectinload(ScheduleTemplate.weeks).selectinload(ScheduleTemplateWeek.events))
            .filter(
                ScheduleTemplate.patient_id == patient_id,
                ScheduleTemplate.status == TemplateStatus.ACTIVE.value,
            )
            .order_by(ScheduleTemplate.created_at.desc())
            .first()
        )

    @staticmethod
    def get_active_template_for_update(db: Session, patient_id: str) -> Optional[ScheduleTemplate]:
        """
        Lock the patient's ACTIVE template row for the rest of the transaction.

        populate_existing makes sure the watermark and version come from the
        database, not from an identity-map copy loaded earlier.
        """
        return (
            db.query(ScheduleTemplate)
            .filter(
                ScheduleTemplate.patient_id == patient_id,
                ScheduleTemplate.status == TemplateStatus.ACTIVE.value,
            )
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def create_template(db: Session, **template_data) -> ScheduleTemplate:
        template = ScheduleTemplate(**template_data)
        db.add(template)
        db.flush()
        return template

    @staticmethod
    def list_weeks(db: Session, template_id: int) -> list[ScheduleTemplateWeek]:
        return (
            db.query(ScheduleTemplateWeek)
            .options(selectinload(ScheduleTemplateWeek.events))
            .filter(ScheduleTemplateWeek.template_id == template_id)
            .order_by(ScheduleTemplateWeek.week_index.asc())
            .all()
        )

    @staticmethod
    def get_week(db: Session, template_id: int, week_index: int) -> Optional[ScheduleTemplateWeek]:
        return (
            db.query(ScheduleTemplateWeek)
            .filter(
                ScheduleTemplateWeek.template_id == template_id,
                ScheduleTemplateWeek.week_index == week_index,
            )
            .first()
        )

    @staticmethod
    def create_week(db: Session, template_id: int, week_index: int, name: Optional[str] = None):
        week = ScheduleTemplateWeek(template_id=template_id, week_index=week_index, name=name)
        db.add(week)
        db.flush()
        return week

    @staticmethod
    def delete_week(db: Session, week: ScheduleTemplateWeek) -> int:
        """Batch delete the week's events, then the week. Returns deleted event count"""
        deleted = (
            db.query(ScheduleTemplateEvent)
            .filter(ScheduleTemplateEvent.week_id == week.id)
            .delete(synchronize_session=False)
        )
        db.delete(week)
        db.flush()
        return deleted

    @staticmethod
    def get_template_event(db: Session, event_id: int) -> Optional[ScheduleTemplateEvent]:
        return db.query(ScheduleTemplateEvent).filter(ScheduleTemplateEvent.id == event_id).first()

    @staticmethod
    def list_week_events(db: Session, week_id: int) -> list[ScheduleTemplateEvent]:
        return (
            db.query(ScheduleTemplateEvent)
            .filter(ScheduleTemplateEvent.week_id == week_id)
            .order_by(ScheduleTemplateEvent.day_of_week.asc(), ScheduleTemplateEvent.start_time.asc())
            .all()
        )

    @staticmethod
    def find_overlapping_template_events(
        db: Session,
        week_id: int,
        day_of_week: int,
        start_time: time,
        end_time: time,
        exclude_event_id: Optional[int] = None,
    ) -> list[ScheduleTemplateEvent]:
        query = db.query(ScheduleTemplateEvent).filter(
            ScheduleTemplateEvent.week_id == week_id,
            ScheduleTemplateEvent.day_of_week == day_of_week,
            ScheduleTemplateEvent.start_time < end_time,
            ScheduleTemplateEvent.end_time > start_time,
        )
        if exclude_event_id is not None:
            query = query.filter(ScheduleTemplateEvent.id != exclude_event_id)
        return query.all()

    @staticmethod
    def add_template_event(db: Session, **event_data) -> ScheduleTemplateEvent:
        event = ScheduleTemplateEvent(**event_data)
        db.add(event)
        db.flush()
        return event

    @staticmethod
    def delete_template_tree(db: Session, template: ScheduleTemplate) -> None:
        """Batch delete events and weeks, then the template itself"""
        week_ids = [
            row[0]
            for row in db.query(ScheduleTemplateWeek.id)
            .filter(ScheduleTemplateWeek.template_id == template.id)
            .all()
        ]
        if week_ids:
            db.query(ScheduleTemplateEvent).filter(
                ScheduleTemplateEvent.week_id.in_(week_ids)
            ).delete(synchronize_session=False)
            db.query(ScheduleTemplateWeek).filter(
                ScheduleTemplateWeek.template_id == template.id
            ).delete(synchronize_session=False)

        # Generated visits outlive their template
        db.query(ScheduleEvent).filter(ScheduleEvent.source_template_id == template.id).update(
            {ScheduleEvent.source_template_id: None}, synchronize_session=False
        )
        db.expire(template, ["weeks"])
        db.delete(template)
        db.flush()


class ScheduleEventRepository:
    """Repository for concrete schedule event operations"""

    @staticmethod
    def get_event(db: Session, event_id: int) -> Optional[ScheduleEvent]:
        return db.query(ScheduleEvent).filter(ScheduleEvent.id == event_id).first()

    @staticmethod
    def find_patient_events_between(
        db: Session, patient_id: str, date_from: date, date_to: date
    ) -> list[ScheduleEvent]:
        """Non-cancelled events of a patient between two dates (inclusive)"""
        return (
            db.query(ScheduleEvent)
            .filter(
                ScheduleEvent.patient_id == patient_id,
                ScheduleEvent.event_date >= date_from,
                ScheduleEvent.event_date <= date_to,
                ScheduleEvent.status != ScheduleEventStatus.CANCELLED.value,
            )
            .order_by(ScheduleEvent.event_date.asc(), ScheduleEvent.start_at.asc())
            .all()
        )

    @staticmethod
    def find_staff_events_between(
        db: Session, staff_id: str, date_from: date, date_to: date
    ) -> list[ScheduleEvent]:
        """Non-cancelled events assigned to an employee between two dates (inclusive)"""
        return (
            db.query(ScheduleEvent)
            .filter(
                ScheduleEvent.staff_id == staff_id,
                ScheduleEvent.event_date >= date_from,
                ScheduleEvent.event_date <= date_to,
                ScheduleEvent.status != ScheduleEventStatus.CANCELLED.value,
            )
            .order_by(ScheduleEvent.event_date.asc(), ScheduleEvent.start_at.asc())
            .all()
        )

    @staticmethod
    def exists_for_patient_start(db: Session, patient_id: str, start_at: datetime) -> bool:
        return (
            db.query(ScheduleEvent.id)
            .filter(
                ScheduleEvent.patient_id == patient_id,
                ScheduleEvent.start_at == start_at,
                ScheduleEvent.status != ScheduleEventStatus.CANCELLED.value,
            )
            .first()
            is not None
        )

    @staticmethod
    def add_event(db: Session, event: ScheduleEvent) -> ScheduleEvent:
        db.add(event)
        db.flush()
        return event

    @staticmethod
    def search_events(db: Session, filters: ScheduleEventFilter) -> tuple[list[ScheduleEvent], int]:
        """Filter, sort and paginate schedule events. Returns (page_items, total_count)"""
        query = db.query(ScheduleEvent)

        if filters.patientId:
            query = query.filter(ScheduleEvent.patient_id == filters.patientId)
        if filters.staffId:
            query = query.filter(ScheduleEvent.staff_id == filters.staffId)
        if filters.dateFrom:
            query = query.filter(ScheduleEvent.event_date >= filters.dateFrom)
        if filters.dateTo:
            query = query.filter(ScheduleEvent.event_date <= filters.dateTo)
        if filters.status:
            query = query.filter(ScheduleEvent.status == filters.status.value)
        if filters.search:
            search_term = f"%{filters.search}%"
            query = query.filter(
                (ScheduleEvent.event_code.ilike(search_term)) | (ScheduleEvent.comment.ilike(search_term))
            )

        total = query.with_entities(func.count(ScheduleEvent.id)).scalar() or 0

        columns = {
            "eventDate": ScheduleEvent.event_date,
            "startAt": ScheduleEvent.start_at,
            "endAt": ScheduleEvent.end_at,
            "status": ScheduleEvent.status,
            "plannedUnits": ScheduleEvent.planned_units,
            "actualUnits": ScheduleEvent.actual_units,
        }
        direction = desc if (filters.sortDir or "").lower() == "desc" else asc
        if filters.sortBy in SORTABLE_FIELDS:
            order = [direction(columns[filters.sortBy]), asc(ScheduleEvent.id)]
        else:
            order = [direction(ScheduleEvent.event_date), direction(ScheduleEvent.start_at), asc(ScheduleEvent.id)]

        items = (
            query.order_by(*order).offset(filters.page * filters.size).limit(filters.size).all()
        )
        return items, total
