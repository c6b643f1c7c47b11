"""Scheduling domain - Recurring templates, visit generation, preview/commit of ad-hoc visits

Layout:
- schemas.py      Request/response models
- repository.py   Database queries (flush only, services commit)
- recurrence.py   Repeat rule parsing and date expansion
- conflicts.py    Patient/employee double-booking detection
- lifecycle.py    Visit status machine
- template_service.py  Templates, weeks and template events
- projector.py    Template -> dated visits
- service.py      Preview/commit workflow, queries, updates, check-in/out
- router.py       FastAPI endpoints
"""

from .router import router

__all__ = ["router"]
