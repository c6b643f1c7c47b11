"""
Scheduling error taxonomy.

Services raise these; main.py registers handlers that turn them into JSON
responses with the matching status code.
"""

from typing import Any, Optional


class SchedulingError(Exception):
    """Base class for all scheduling errors"""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"detail": self.message}


class ValidationError(SchedulingError):
    """Malformed input: weekday sets, end conditions, time ranges, illegal status changes"""

    status_code = 422

    def __init__(self, message: str, errors: Optional[list[dict]] = None, field: Optional[str] = None):
        super().__init__(message)
        self.errors = list(errors or [])
        if field and not self.errors:
            self.errors.append({"field": field, "message": message})

    def to_dict(self) -> dict:
        return {"detail": self.message, "errors": self.errors}


class NotFoundError(SchedulingError):
    """Unknown template, week, event, patient, staff or authorization"""

    status_code = 404

    def __init__(self, resource: str, identifier: Any = None):
        if identifier is None:
            message = f"{resource} not found"
        else:
            message = f"{resource} not found: {identifier}"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


class ConflictError(SchedulingError):
    """Duplicate active template, overlapping template event, or overlap found at commit time"""

    status_code = 409

    def __init__(self, message: str, conflicts: Optional[list] = None):
        super().__init__(message)
        self.conflicts = list(conflicts or [])

    def to_dict(self) -> dict:
        body = {"detail": self.message}
        if self.conflicts:
            body["conflicts"] = [
                c.model_dump(mode="json", by_alias=True) if hasattr(c, "model_dump") else c
                for c in self.conflicts
            ]
        return body


class ConcurrencyError(SchedulingError):
    """Lost a race on the template watermark; the whole call can be retried"""

    status_code = 409

    def to_dict(self) -> dict:
        return {"detail": self.message, "retryable": True}
