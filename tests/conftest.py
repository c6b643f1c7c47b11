from datetime import date, datetime, time

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from careschedule import models  # noqa: F401
from careschedule.database import Base, get_db
from careschedule.main import app
from careschedule.models import ScheduleEvent, ScheduleEventStatus
from careschedule.services.directory_service import InMemoryDirectory, get_directory


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def directory():
    directory = InMemoryDirectory()
    directory.add_patient("P1", display_name="Ada Patient", office_id="OFF1")
    directory.add_patient("P2", display_name="Ben Patient", office_id="OFF1")
    directory.add_staff("S1", display_name="Sam Aide", office_id="OFF1")
    directory.add_staff("S2", display_name="Kim Aide", office_id="OFF1")
    directory.add_authorization("A1", "P1", event_code="T1019")
    directory.add_authorization("A2", "P2", event_code="S5125")
    return directory


@pytest.fixture
def client(session_factory, directory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_directory] = lambda: directory
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def add_event(db):
    """Insert a committed schedule event directly"""

    def _add(
        patient_id="P1",
        staff_id=None,
        event_date=date(2025, 3, 3),
        start=time(9, 0),
        end=time(10, 0),
        status=ScheduleEventStatus.PLANNED,
        **fields,
    ):
        event = ScheduleEvent(
            patient_id=patient_id,
            staff_id=staff_id,
            event_date=event_date,
            start_at=datetime.combine(event_date, start),
            end_at=datetime.combine(event_date, end),
            status=status.value,
            planned_units=4,
            **fields,
        )
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    return _add
