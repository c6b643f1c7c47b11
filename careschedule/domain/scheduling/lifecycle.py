"""Schedule event status machine"""

from ...exceptions import ValidationError
from ...models import ScheduleEventStatus

PLANNED = ScheduleEventStatus.PLANNED
CONFIRMED = ScheduleEventStatus.CONFIRMED
IN_PROGRESS = ScheduleEventStatus.IN_PROGRESS
COMPLETED = ScheduleEventStatus.COMPLETED
CANCELLED = ScheduleEventStatus.CANCELLED

TRANSITIONS: dict[ScheduleEventStatus, frozenset] = {
    PLANNED: frozenset({CONFIRMED, IN_PROGRESS, CANCELLED}),
    CONFIRMED: frozenset({IN_PROGRESS, CANCELLED}),
    IN_PROGRESS: frozenset({COMPLETED, CANCELLED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
}

# Statuses an office user may set directly; the rest come from check-in/check-out
MANUAL_TARGETS = frozenset({CONFIRMED, CANCELLED})

# Statuses a new event may be committed with
CREATABLE = frozenset({PLANNED, CONFIRMED})


def can_transition(current: ScheduleEventStatus, target: ScheduleEventStatus) -> bool:
    return target in TRANSITIONS[ScheduleEventStatus(current)]


def ensure_transition(current, target, manual: bool = True) -> ScheduleEventStatus:
    """
    Validate a status change and return the target status.

    Setting the current status again is a no-op. With manual=True only
    CONFIRMED and CANCELLED may be requested.
    """
    current = ScheduleEventStatus(current)
    target = ScheduleEventStatus(target)
    if current == target:
        return target

    if manual and target not in MANUAL_TARGETS:
        raise ValidationError(
            f"Status {target.value} is set by check-in/check-out, not by a direct update",
            field="status",
        )
    if not can_transition(current, target):
        raise ValidationError(
            f"Cannot change status from {current.value} to {target.value}",
            field="status",
        )
    return target
