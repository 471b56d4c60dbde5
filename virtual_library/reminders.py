import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import notifications
from .entities import BookRecord, CheckoutRecord, UserRecord, utcnow
from .models import EpisodeStatus
from .notifications import Outbox

logger = logging.getLogger(__name__)


def send_due_reminders(session: Session, outbox: Outbox, now: datetime, window_days: int = 7) -> int:
    """Remind borrowers whose loan falls due ``window_days`` from ``now``.

    The one-day band ``(now + window - 1d, now + window]`` means a daily run
    reminds each loan once.
    """
    upper = now + timedelta(days=window_days)
    lower = upper - timedelta(days=1)
    rows = session.execute(
        select(BookRecord.title, BookRecord.author, UserRecord.email, CheckoutRecord.return_date)
        .join(BookRecord, CheckoutRecord.book_id == BookRecord.id)
        .join(UserRecord, CheckoutRecord.user_id == UserRecord.id)
        .where(
            CheckoutRecord.status == EpisodeStatus.CHECKED_OUT,
            CheckoutRecord.return_date.is_not(None),
            CheckoutRecord.return_date <= upper,
            CheckoutRecord.return_date > lower,
        )
    ).all()
    for title, author, email, due_date in rows:
        try:
            outbox.submit(notifications.due_reminder(email, title, author, due_date))
        except Exception as exc:  # noqa: BLE001
            logger.warning("reminder.submit_failed", extra={"to": email, "error": repr(exc)})
    logger.info("reminder.scan_complete", extra={"sent": len(rows)})
    return len(rows)


def seconds_until(hour: int, tz: ZoneInfo, now: datetime) -> float:
    """Seconds from aware ``now`` to the next ``hour``:00 in ``tz``."""
    local = now.astimezone(tz)
    target = local.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= local:
        target += timedelta(days=1)
    return (target - local).total_seconds()


class ReminderScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        outbox: Outbox,
        hour: int = 2,
        timezone: str = "America/Montreal",
        window_days: int = 7,
    ):
        self.session_factory = session_factory
        self.outbox = outbox
        self.hour = hour
        self.tz = ZoneInfo(timezone)
        self.window_days = window_days
        self._task: asyncio.Task | None = None

    def run_once(self) -> int:
        session = self.session_factory()
        try:
            return send_due_reminders(session, self.outbox, utcnow(), self.window_days)
        finally:
            session.close()

    async def _loop(self) -> None:
        while True:
            delay = seconds_until(self.hour, self.tz, datetime.now(self.tz))
            await asyncio.sleep(delay)
            logger.info("reminder.scan_start")
            try:
                await asyncio.to_thread(self.run_once)
            except Exception:
                logger.exception("reminder.scan_failed")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._loop(), name="due-reminders")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
