from datetime import date

import httpx
import pytest

from careschedule.services.directory_service import (
    AuthorizationRef,
    HttpDirectoryService,
    InMemoryDirectory,
)


def make_directory(handler):
    return HttpDirectoryService(
        "http://directory.test/api/", api_key="secret", transport=httpx.MockTransport(handler)
    )


def test_http_directory_parses_records_and_caches():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path == "/api/patients/P1":
            return httpx.Response(
                200, json={"data": {"id": "P1", "displayName": "Ada Patient", "officeId": "OFF1"}}
            )
        if request.url.path == "/api/authorizations/A1":
            return httpx.Response(
                200,
                json={
                    "id": "A1",
                    "patientId": "P1",
                    "eventCode": "T1019",
                    "startDate": "2025-01-01",
                    "endDate": "2025-06-30",
                    "remainingUnits": 120,
                },
            )
        return httpx.Response(404)

    directory = make_directory(handler)

    patient = directory.get_patient("P1")
    assert patient.display_name == "Ada Patient"
    assert patient.office_id == "OFF1"
    assert directory.get_patient("P1") is not None
    assert len(calls) == 1
    assert calls[0].headers["Authorization"] == "Bearer secret"

    auth = directory.get_authorization("A1")
    assert auth.event_code == "T1019"
    assert auth.remaining_units == 120
    assert auth.covers(date(2025, 3, 3))
    assert not auth.covers(date(2025, 7, 1))

    assert directory.get_staff("S9") is None
    directory.close()


def test_http_directory_raises_on_server_error():
    directory = make_directory(lambda request: httpx.Response(503))
    with pytest.raises(httpx.HTTPStatusError):
        directory.get_patient("P1")


def test_inactive_authorization_covers_nothing():
    auth = AuthorizationRef(id="A1", active=False)
    assert not auth.covers(date(2025, 3, 3))


def test_in_memory_directory_modes():
    strict = InMemoryDirectory()
    strict.add_staff("S1", display_name="Sam Aide")
    assert strict.get_staff("S1").display_name == "Sam Aide"
    assert strict.get_staff("S2") is None
    assert strict.get_authorization("A1") is None

    permissive = InMemoryDirectory(permissive=True)
    assert permissive.get_patient("P7").id == "P7"
    assert permissive.get_authorization("A1").covers(date(2025, 3, 3))
