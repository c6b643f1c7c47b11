"""
Directory gateway for patients, staff and authorizations.

Those records are owned by other components; scheduling only needs to know
whether a reference exists, what to call it, and whether an authorization
still covers a visit.
"""

import logging
from datetime import date
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..config import DIRECTORY_API_KEY, DIRECTORY_API_URL, DIRECTORY_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class DirectoryRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PersonRef(DirectoryRecord):
    """A patient or staff member as seen by scheduling"""

    id: str
    display_name: Optional[str] = None
    office_id: Optional[str] = None
    active: bool = True


class AuthorizationRef(DirectoryRecord):
    """Entitlement of a patient to a bounded number of service units"""

    id: str
    patient_id: Optional[str] = None
    event_code: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    remaining_units: Optional[int] = None
    active: bool = True

    def covers(self, day: date) -> bool:
        if not self.active:
            return False
        if self.start_date and day < self.start_date:
            return False
        if self.end_date and day > self.end_date:
            return False
        return True


class DirectoryService:
    """Lookup contract the scheduling services depend on"""

    def get_patient(self, patient_id: str) -> Optional[PersonRef]:
        raise NotImplementedError

    def get_staff(self, staff_id: str) -> Optional[PersonRef]:
        raise NotImplementedError

    def get_authorization(self, authorization_id: str) -> Optional[AuthorizationRef]:
        raise NotImplementedError


class InMemoryDirectory(DirectoryService):
    """
    Directory backed by dictionaries.

    With permissive=True unknown ids resolve to bare references, which is how
    the service runs when no directory URL is configured.
    """

    def __init__(self, permissive: bool = False):
        self.permissive = permissive
        self.patients: dict[str, PersonRef] = {}
        self.staff: dict[str, PersonRef] = {}
        self.authorizations: dict[str, AuthorizationRef] = {}

    def add_patient(self, patient_id: str, display_name: Optional[str] = None, office_id: Optional[str] = None):
        self.patients[patient_id] = PersonRef(id=patient_id, display_name=display_name, office_id=office_id)
        return self.patients[patient_id]

    def add_staff(self, staff_id: str, display_name: Optional[str] = None, office_id: Optional[str] = None):
        self.staff[staff_id] = PersonRef(id=staff_id, display_name=display_name, office_id=office_id)
        return self.staff[staff_id]

    def add_authorization(self, authorization_id: str, patient_id: str, **fields):
        self.authorizations[authorization_id] = AuthorizationRef(
            id=authorization_id, patient_id=patient_id, **fields
        )
        return self.authorizations[authorization_id]

    def get_patient(self, patient_id: str) -> Optional[PersonRef]:
        if patient_id in self.patients:
            return self.patients[patient_id]
        return PersonRef(id=patient_id) if self.permissive else None

    def get_staff(self, staff_id: str) -> Optional[PersonRef]:
        if staff_id in self.staff:
            return self.staff[staff_id]
        return PersonRef(id=staff_id) if self.permissive else None

    def get_authorization(self, authorization_id: str) -> Optional[AuthorizationRef]:
        if authorization_id in self.authorizations:
            return self.authorizations[authorization_id]
        return AuthorizationRef(id=authorization_id) if self.permissive else None


class HttpDirectoryService(DirectoryService):
    """Directory client for the agency's patient/staff/authorization API"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = DIRECTORY_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout, transport=transport
        )
        # Lookups repeat a lot inside one batch; cache per instance (one instance per request)
        self._cache: dict[tuple[str, str], Optional[dict]] = {}

    def close(self) -> None:
        self.client.close()

    def _fetch(self, kind: str, identifier: str) -> Optional[dict]:
        key = (kind, identifier)
        if key in self._cache:
            return self._cache[key]

        try:
            response = self.client.get(f"/{kind}/{identifier}")
        except httpx.HTTPError as e:
            logger.error(f"Directory lookup failed for {kind}/{identifier}: {e}")
            raise

        if response.status_code == 404:
            self._cache[key] = None
            return None
        if response.status_code != 200:
            logger.error(f"Directory returned HTTP {response.status_code} for {kind}/{identifier}")
        response.raise_for_status()

        payload = response.json()
        # Some deployments wrap records in {"data": ...}
        if isinstance(payload, dict) and "data" in payload and isinstance(payload["data"], dict):
            payload = payload["data"]
        self._cache[key] = payload
        return payload

    def get_patient(self, patient_id: str) -> Optional[PersonRef]:
        data = self._fetch("patients", patient_id)
        return PersonRef.model_validate(data) if data is not None else None

    def get_staff(self, staff_id: str) -> Optional[PersonRef]:
        data = self._fetch("staff", staff_id)
        return PersonRef.model_validate(data) if data is not None else None

    def get_authorization(self, authorization_id: str) -> Optional[AuthorizationRef]:
        data = self._fetch("authorizations", authorization_id)
        return AuthorizationRef.model_validate(data) if data is not None else None


def get_directory():
    """FastAPI dependency yielding the configured directory"""
    if not DIRECTORY_API_URL:
        yield InMemoryDirectory(permissive=True)
        return

    directory = HttpDirectoryService(DIRECTORY_API_URL, api_key=DIRECTORY_API_KEY)
    try:
        yield directory
    finally:
        directory.close()
