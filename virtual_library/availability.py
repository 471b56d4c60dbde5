import calendar
from datetime import datetime
from enum import Enum

from .errors import Conflict
from .models import AvailabilityStatus


class Action(str, Enum):
    CHECKOUT = "checkout"
    CHECK_IN = "check_in"
    PURCHASE = "purchase"


TRANSITIONS: dict[tuple[AvailabilityStatus, Action], AvailabilityStatus] = {
    (AvailabilityStatus.AVAILABLE, Action.CHECKOUT): AvailabilityStatus.CHECKED_OUT,
    (AvailabilityStatus.CHECKED_OUT, Action.CHECK_IN): AvailabilityStatus.AVAILABLE,
    (AvailabilityStatus.AVAILABLE, Action.PURCHASE): AvailabilityStatus.PURCHASED,
    # Only legal for the holder of the open loan; the service checks the holder.
    (AvailabilityStatus.CHECKED_OUT, Action.PURCHASE): AvailabilityStatus.PURCHASED,
}

CONFLICT_MESSAGES = {
    (AvailabilityStatus.CHECKED_OUT, Action.CHECKOUT): "Book is currently checked out by another user.",
    (AvailabilityStatus.PURCHASED, Action.CHECKOUT): "Book has been purchased and cannot be checked out.",
    (AvailabilityStatus.AVAILABLE, Action.CHECK_IN): "Book is not checked out.",
    (AvailabilityStatus.PURCHASED, Action.CHECK_IN): "Book has been purchased and cannot be checked in.",
    (AvailabilityStatus.PURCHASED, Action.PURCHASE): "Book has already been purchased.",
}


def transition(current: AvailabilityStatus, action: Action) -> AvailabilityStatus:
    """Return the status reached by applying ``action`` to ``current``.

    Raises ``Conflict`` for any pair not listed in ``TRANSITIONS``.
    """
    current = AvailabilityStatus(current)
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise Conflict(CONFLICT_MESSAGES.get((current, action))) from None


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)
