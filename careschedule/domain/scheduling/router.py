"""Scheduling router - FastAPI endpoints for templates and schedule events"""

import logging
import math
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...config import MAX_PAGE_SIZE
from ...database import get_db
from ...models import ScheduleEventStatus
from ...services.directory_service import DirectoryService, get_directory
from .projector import TemplateProjector
from .schemas import (
    CheckInRequest,
    CheckOutRequest,
    GenerateRequest,
    GenerateResponse,
    ScheduleEventCreate,
    ScheduleEventFilter,
    ScheduleEventPage,
    ScheduleEventResponse,
    ScheduleEventUpdate,
    SchedulePreviewRequest,
    SchedulePreviewResponse,
    TemplateCreate,
    TemplateEventInsert,
    TemplateEventResponse,
    TemplateEventUpdate,
    TemplateResponse,
    TemplateWithWeeksResponse,
    WeekCreate,
)
from .service import ScheduleService
from .template_service import (
    TemplateService,
    to_template_event_response,
    to_template_response,
    to_template_with_weeks_response,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Scheduling"])


def get_template_service(
    db: Session = Depends(get_db), directory: DirectoryService = Depends(get_directory)
) -> TemplateService:
    """Dependency injection for TemplateService"""
    return TemplateService(db, directory)


def get_schedule_service(
    db: Session = Depends(get_db), directory: DirectoryService = Depends(get_directory)
) -> ScheduleService:
    """Dependency injection for ScheduleService"""
    return ScheduleService(db, directory)


def get_projector(
    db: Session = Depends(get_db), directory: DirectoryService = Depends(get_directory)
) -> TemplateProjector:
    return TemplateProjector(db, directory)


def event_filters(
    patientId: Optional[str] = Query(None),
    staffId: Optional[str] = Query(None),
    dateFrom: Optional[date] = Query(None),
    dateTo: Optional[date] = Query(None),
    status: Optional[ScheduleEventStatus] = Query(None),
    search: Optional[str] = Query(None, description="Matches event code and comments"),
    page: int = Query(0, ge=0),
    size: Optional[int] = Query(None, ge=1),
    sortBy: Optional[str] = Query(None),
    sortDir: str = Query("asc", pattern="^(asc|desc)$"),
) -> ScheduleEventFilter:
    """Query-string filters shared by all schedule event listings"""
    values = dict(
        patientId=patientId,
        staffId=staffId,
        dateFrom=dateFrom,
        dateTo=dateTo,
        status=status,
        search=search,
        page=page,
        sortBy=sortBy,
        sortDir=sortDir,
    )
    if size is not None:
        values["size"] = min(size, MAX_PAGE_SIZE)
    return ScheduleEventFilter(**values)


def _page(service: ScheduleService, filters: ScheduleEventFilter) -> ScheduleEventPage:
    items, total = service.get_schedule_events(filters)
    return ScheduleEventPage(
        items=[service.to_response(e) for e in items],
        total=total,
        page=filters.page,
        size=filters.size,
        totalPages=math.ceil(total / filters.size) if total else 0,
    )


# ============================================================================
# TEMPLATES
# ============================================================================


@router.post("/patients/{patient_id}/schedule/template", response_model=TemplateResponse, status_code=201)
async def create_template(
    patient_id: str,
    data: Optional[TemplateCreate] = None,
    service: TemplateService = Depends(get_template_service),
):
    """Create the patient's active template; week 0 is created with it"""
    template = service.create_template(patient_id, data)
    return to_template_response(template)


@router.get("/patients/{patient_id}/schedule/template", response_model=Optional[TemplateWithWeeksResponse])
async def get_template_with_weeks(
    patient_id: str,
    service: TemplateService = Depends(get_template_service),
):
    """Get the patient's active template with weeks and events, or null"""
    template = service.get_template_with_weeks(patient_id)
    if not template:
        return None
    return to_template_with_weeks_response(template)


@router.delete("/schedule/templates/{template_id}")
async def delete_template(
    template_id: int,
    service: TemplateService = Depends(get_template_service),
):
    service.delete_template(template_id)
    return {"message": "Template deleted successfully"}


@router.post("/schedule/templates/{template_id}/archive", response_model=TemplateResponse)
async def archive_template(
    template_id: int,
    service: TemplateService = Depends(get_template_service),
):
    """Archive a template so the patient can get a new active one"""
    return to_template_response(service.archive_template(template_id))


@router.post("/schedule/templates/{template_id}/weeks", response_model=TemplateResponse)
async def add_week(
    template_id: int,
    data: WeekCreate,
    service: TemplateService = Depends(get_template_service),
):
    template = service.add_week(template_id, data.weekIndex, data.name)
    return to_template_response(template)


@router.delete("/schedule/templates/{template_id}/weeks/{week_index}")
async def delete_week(
    template_id: int,
    week_index: int,
    service: TemplateService = Depends(get_template_service),
):
    """Delete a week together with its template events"""
    service.delete_week(template_id, week_index)
    return {"message": "Week deleted successfully"}


@router.post(
    "/schedule/templates/{template_id}/events",
    response_model=list[TemplateEventResponse],
    status_code=201,
)
async def insert_template_event(
    template_id: int,
    data: TemplateEventInsert,
    service: TemplateService = Depends(get_template_service),
):
    """Add one event per weekday to a template week; returns the whole week"""
    events = service.insert_template_event(template_id, data)
    return [to_template_event_response(e) for e in events]


@router.patch("/schedule/templates/{template_id}/events/{event_id}", response_model=TemplateEventResponse)
async def update_template_event(
    template_id: int,
    event_id: int,
    data: TemplateEventUpdate,
    service: TemplateService = Depends(get_template_service),
):
    event = service.update_template_event(template_id, event_id, data)
    return to_template_event_response(event)


@router.delete(
    "/schedule/templates/{template_id}/events/{event_id}",
    response_model=list[TemplateEventResponse],
)
async def delete_template_event(
    template_id: int,
    event_id: int,
    service: TemplateService = Depends(get_template_service),
):
    """Delete a template event; returns what is left in its week"""
    events = service.delete_template_event(template_id, event_id)
    return [to_template_event_response(e) for e in events]


@router.post("/patients/{patient_id}/schedule/generate", response_model=GenerateResponse)
async def generate_from_template(
    patient_id: str,
    data: GenerateRequest,
    projector: TemplateProjector = Depends(get_projector),
    templates: TemplateService = Depends(get_template_service),
):
    """Project the active template through endDate; occurrences that double-book are skipped"""
    created = projector.generate_from_template(patient_id, data.endDate)
    template = templates.get_template_with_weeks(patient_id)
    return GenerateResponse(
        created=created,
        generatedThrough=template.generated_through if template else None,
        conflicts=projector.conflicts,
    )


# ============================================================================
# SCHEDULE EVENTS
# ============================================================================


@router.post("/schedule/events/preview", response_model=SchedulePreviewResponse)
async def create_schedule_preview(
    data: SchedulePreviewRequest,
    service: ScheduleService = Depends(get_schedule_service),
):
    """Expand a definition and report conflicts without saving anything"""
    return service.create_schedule_preview(data)


@router.post("/schedule/events", response_model=list[ScheduleEventResponse], status_code=201)
async def create_schedule_events(
    data: list[ScheduleEventCreate],
    service: ScheduleService = Depends(get_schedule_service),
):
    """Save a previewed batch; all or nothing"""
    events = service.create_schedule_events(data)
    return [service.to_response(e) for e in events]


@router.get("/schedule/events", response_model=ScheduleEventPage)
async def get_schedule_events(
    filters: ScheduleEventFilter = Depends(event_filters),
    service: ScheduleService = Depends(get_schedule_service),
):
    return _page(service, filters)


@router.get("/patients/{patient_id}/schedule/events", response_model=ScheduleEventPage)
async def get_patient_schedule_events(
    patient_id: str,
    filters: ScheduleEventFilter = Depends(event_filters),
    service: ScheduleService = Depends(get_schedule_service),
):
    return _page(service, filters.model_copy(update={"patientId": patient_id}))


@router.get("/staff/{staff_id}/schedule/events", response_model=ScheduleEventPage)
async def get_staff_schedule_events(
    staff_id: str,
    filters: ScheduleEventFilter = Depends(event_filters),
    service: ScheduleService = Depends(get_schedule_service),
):
    return _page(service, filters.model_copy(update={"staffId": staff_id}))


@router.get("/schedule/events/{event_id}", response_model=ScheduleEventResponse)
async def get_schedule_event(
    event_id: int,
    service: ScheduleService = Depends(get_schedule_service),
):
    return service.to_response(service.get_schedule_event(event_id))


@router.patch("/schedule/events/{event_id}", response_model=ScheduleEventResponse)
async def update_schedule_event(
    event_id: int,
    data: ScheduleEventUpdate,
    service: ScheduleService = Depends(get_schedule_service),
):
    """Partially update an event; status changes follow the visit lifecycle"""
    return service.to_response(service.update_schedule_event(event_id, data))


@router.post("/schedule/events/{event_id}/check-in", response_model=ScheduleEventResponse)
async def check_in(
    event_id: int,
    data: Optional[CheckInRequest] = None,
    service: ScheduleService = Depends(get_schedule_service),
):
    event = service.record_check_in(event_id, data.at if data else None)
    return service.to_response(event)


@router.post("/schedule/events/{event_id}/check-out", response_model=ScheduleEventResponse)
async def check_out(
    event_id: int,
    data: Optional[CheckOutRequest] = None,
    service: ScheduleService = Depends(get_schedule_service),
):
    event = service.record_check_out(
        event_id,
        at=data.at if data else None,
        actual_units=data.actualUnits if data else None,
    )
    return service.to_response(event)


__all__ = [
    "router",
    "get_template_service",
    "get_schedule_service",
    "get_projector",
]
