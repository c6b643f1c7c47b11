"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, datetime, time
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ...config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from ...models import ScheduleEventStatus

# ============================================================================
# TEMPLATES
# ============================================================================


class TemplateCreate(BaseModel):
    """Schema for creating a patient's schedule template"""

    name: Optional[str] = None
    description: Optional[str] = None
    officeId: Optional[str] = None
    anchorDate: Optional[date] = None


class WeekCreate(BaseModel):
    weekIndex: int
    name: Optional[str] = None


class TemplateEventInsert(BaseModel):
    """One time slot copied onto every listed weekday of a template week"""

    weekIndex: int
    weekdays: list[int]  # 0=Sun..6=Sat
    startTime: time
    endTime: time
    authorizationId: Optional[str] = None
    eventCode: Optional[str] = Field(default=None, max_length=32)
    plannedUnits: Optional[int] = Field(default=None, ge=0, le=24 * 60)
    staffId: Optional[str] = None
    comment: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("eventCode")
    @classmethod
    def strip_event_code(cls, v):
        if v is not None:
            v = v.strip()
            return v or None
        return v


class TemplateEventUpdate(BaseModel):
    """Partial update of a template event"""

    dayOfWeek: Optional[int] = Field(default=None, ge=0, le=6)
    startTime: Optional[time] = None
    endTime: Optional[time] = None
    authorizationId: Optional[str] = None
    eventCode: Optional[str] = Field(default=None, max_length=32)
    plannedUnits: Optional[int] = Field(default=None, ge=0, le=24 * 60)
    staffId: Optional[str] = None
    comment: Optional[str] = Field(default=None, max_length=2000)


class TemplateEventResponse(BaseModel):
    id: int
    weekId: int
    weekIndex: int
    dayOfWeek: int
    startTime: time
    endTime: time
    authorizationId: Optional[str] = None
    staffId: Optional[str] = None
    eventCode: Optional[str] = None
    plannedUnits: Optional[int] = None
    comment: Optional[str] = None


class WeekResponse(BaseModel):
    weekIndex: int
    name: Optional[str] = None
    events: list[TemplateEventResponse] = []


class TemplateResponse(BaseModel):
    id: int
    patientId: str
    officeId: Optional[str] = None
    name: str
    description: Optional[str] = None
    status: str
    anchorDate: date
    generatedThrough: Optional[date] = None
    weekIndexes: list[int] = []
    createdAt: Optional[datetime] = None


class TemplateWithWeeksResponse(BaseModel):
    template: TemplateResponse
    weeks: list[WeekResponse]


class GenerateRequest(BaseModel):
    endDate: date


# ============================================================================
# SCHEDULE EVENTS
# ============================================================================


class RepeatConfig(BaseModel):
    """
    Wire form of a repeat configuration.

    Parsed into a RepeatRule by recurrence.build_repeat_rule, which rejects
    illegal combinations (both or neither end condition, missing weekdays).
    """

    interval: int = 1
    frequency: str  # WEEK or MONTH
    daysOfWeek: Optional[list[int]] = None  # 0=Sunday, 1=Monday, ..., 6=Saturday
    endDate: Optional[date] = None
    occurrences: Optional[int] = None


class ScheduleEventCreate(BaseModel):
    """A single occurrence definition, used for both preview and commit"""

    patientId: str
    eventDate: date
    startTime: time
    endTime: time
    authorizationId: str
    staffId: Optional[str] = None  # Optional - can be assigned later
    eventCode: Optional[str] = None
    status: ScheduleEventStatus = ScheduleEventStatus.PLANNED
    plannedUnits: int = Field(ge=0)
    comments: Optional[str] = None
    # Ids of committed events the operator accepted overlapping with
    overriddenConflictIds: list[int] = []


class SchedulePreviewRequest(BaseModel):
    scheduleEvent: ScheduleEventCreate
    repeatConfig: Optional[RepeatConfig] = None


class ScheduleConflict(BaseModel):
    """A detected double-booking; never persisted"""

    conflictType: str  # PATIENT_CONFLICT or STAFF_CONFLICT
    conflictingEventId: int
    candidateIndex: int = 0
    eventDate: date
    startTime: time
    endTime: time
    message: str
    conflictingWithName: Optional[str] = None
    resolved: bool = False


class GenerateResponse(BaseModel):
    created: int
    generatedThrough: Optional[date] = None
    # Occurrences left out because they would double-book the patient or employee
    conflicts: list[ScheduleConflict] = []


class ScheduleEventResponse(BaseModel):
    id: Optional[int] = None  # None for preview rows
    patientId: str
    patientName: Optional[str] = None
    officeId: Optional[str] = None
    eventDate: date
    startAt: datetime
    endAt: datetime
    status: str
    plannedUnits: Optional[int] = None
    actualUnits: Optional[int] = None
    employeeId: Optional[str] = None
    employeeName: Optional[str] = None
    authorizationId: Optional[str] = None
    eventCode: Optional[str] = None
    checkInTime: Optional[datetime] = None
    checkOutTime: Optional[datetime] = None
    comments: Optional[str] = None
    sourceTemplateId: Optional[int] = None

    # Conflict information (for preview)
    hasConflict: bool = False
    conflictMessages: list[str] = []


class SchedulePreviewResponse(BaseModel):
    scheduleEvents: list[ScheduleEventResponse]
    conflicts: list[ScheduleConflict]
    canSave: bool
    message: str


class ScheduleEventUpdate(BaseModel):
    """
    Partial update of a committed event. Only non-null fields are applied;
    clearStaff unassigns the employee.
    """

    authorizationId: Optional[str] = None
    eventDate: Optional[date] = None
    startTime: Optional[time] = None
    endTime: Optional[time] = None
    staffId: Optional[str] = None
    clearStaff: bool = False
    eventCode: Optional[str] = None
    status: Optional[ScheduleEventStatus] = None
    plannedUnits: Optional[int] = Field(default=None, ge=0)
    comments: Optional[str] = None


class CheckInRequest(BaseModel):
    at: Optional[datetime] = None


class CheckOutRequest(BaseModel):
    at: Optional[datetime] = None
    actualUnits: Optional[int] = Field(default=None, ge=0)


SORTABLE_FIELDS = ("eventDate", "startAt", "endAt", "status", "plannedUnits", "actualUnits")


class ScheduleEventFilter(BaseModel):
    """
    Listing filters for schedule events.

    Attributes:
        patientId: only events of this patient
        staffId: only events assigned to this employee
        dateFrom: first event date to include (inclusive)
        dateTo: last event date to include (inclusive)
        status: one of the ScheduleEventStatus values
        search: case-insensitive match on event code and comments
        page: 0-based page number
        size: page size, capped at MAX_PAGE_SIZE
        sortBy: one of SORTABLE_FIELDS; unknown values fall back to eventDate
        sortDir: asc or desc
    """

    patientId: Optional[str] = None
    staffId: Optional[str] = None
    dateFrom: Optional[date] = None
    dateTo: Optional[date] = None
    status: Optional[ScheduleEventStatus] = None
    search: Optional[str] = None
    page: int = Field(default=0, ge=0)
    size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)
    sortBy: Optional[str] = None
    sortDir: str = "asc"

    @field_validator("search")
    @classmethod
    def normalize_search(cls, v):
        if v is not None:
            v = v.strip()
            return v or None
        return v


class ScheduleEventPage(BaseModel):
    items: list[ScheduleEventResponse]
    total: int
    page: int
    size: int
    totalPages: int
