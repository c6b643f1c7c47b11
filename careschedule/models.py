"""
Scheduling models: recurring templates and concrete visit occurrences.

Patients, staff, offices and authorizations live in the directory service;
they are referenced here by their external string ids only.
"""

import enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class TemplateStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


class ScheduleEventStatus(str, enum.Enum):
    PLANNED = "PLANNED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ScheduleTemplate(Base):
    """A patient's recurring weekly visit pattern"""

    __tablename__ = "schedule_templates"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    office_id = Column(String(64), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # DRAFT → ACTIVE → ARCHIVED; at most one ACTIVE row per patient
    status = Column(String(20), nullable=False, default=TemplateStatus.ACTIVE.value, index=True)

    # First day (Sunday) of the calendar week that maps to template week 0
    anchor_date = Column(Date, nullable=False)

    # Watermark: last date through which occurrences have been generated
    generated_through = Column(Date, nullable=True)

    # Optimistic lock stamp; bumped on every UPDATE of the row
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    weeks = relationship(
        "ScheduleTemplateWeek",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="ScheduleTemplateWeek.week_index",
    )

    __table_args__ = (
        Index(
            "uq_schedule_templates_active_patient",
            "patient_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )
    __mapper_args__ = {"version_id_col": version}


class ScheduleTemplateWeek(Base):
    """One slot in a template's week cycle"""

    __tablename__ = "schedule_template_weeks"

    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(
        Integer, ForeignKey("schedule_templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    week_index = Column(Integer, nullable=False)  # 0-based, gaps allowed
    name = Column(String(255), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    template = relationship("ScheduleTemplate", back_populates="weeks")
    events = relationship(
        "ScheduleTemplateEvent",
        back_populates="week",
        cascade="all, delete-orphan",
        order_by=lambda: [ScheduleTemplateEvent.day_of_week, ScheduleTemplateEvent.start_time],
    )

    __table_args__ = (UniqueConstraint("template_id", "week_index", name="uq_template_week_index"),)


class ScheduleTemplateEvent(Base):
    """A weekday/time entry inside a template week"""

    __tablename__ = "schedule_template_events"

    id = Column(Integer, primary_key=True, index=True)
    week_id = Column(
        Integer,
        ForeignKey("schedule_template_weeks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    day_of_week = Column(SmallInteger, nullable=False)  # 0=Sunday .. 6=Saturday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    authorization_id = Column(String(64), nullable=True)
    staff_id = Column(String(64), nullable=True)  # Optional - can be assigned later
    event_code = Column(String(32), nullable=True)
    planned_units = Column(Integer, nullable=True)
    comment = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    week = relationship("ScheduleTemplateWeek", back_populates="events")


class ScheduleEvent(Base):
    """A concrete, dated visit"""

    __tablename__ = "schedule_events"

    id = Column(Integer, primary_key=True, index=True)
    office_id = Column(String(64), nullable=True, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    staff_id = Column(String(64), nullable=True, index=True)
    authorization_id = Column(String(64), nullable=True)

    # Calendar date the visit starts on; end_at may fall on the next day
    event_date = Column(Date, nullable=False, index=True)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)

    # Status workflow: PLANNED → CONFIRMED → IN_PROGRESS → COMPLETED
    # CANCELLED is reachable from every state except COMPLETED
    status = Column(String(20), nullable=False, default=ScheduleEventStatus.PLANNED.value, index=True)

    event_code = Column(String(32), nullable=True)
    planned_units = Column(Integer, nullable=False, default=0)
    actual_units = Column(Integer, nullable=True)
    comment = Column(Text, nullable=True)

    # Written by the EVV check-in/check-out collaborator
    check_in_at = Column(DateTime, nullable=True)
    check_out_at = Column(DateTime, nullable=True)

    source_template_id = Column(
        Integer, ForeignKey("schedule_templates.id", ondelete="SET NULL"), nullable=True, index=True
    )
    generated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_schedule_events_patient_date", "patient_id", "event_date"),
        Index("ix_schedule_events_staff_date", "staff_id", "event_date"),
    )
