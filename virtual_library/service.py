"""Book availability engine.

Every change to a book's ``availability_status`` and every open/close of a
checkout episode goes through ``CirculationService``. Each operation runs in
one transaction that locks the book row before reading its status, so the
status and the open episode cannot disagree. Notifications are handed to the
outbox only after the commit and never affect the result.
"""

import logging
import re
from collections.abc import Callable, Iterable
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Optional

from opentelemetry import metrics, trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import notifications
from .availability import Action, add_months, transition
from .entities import BookRecord, CheckoutRecord, utcnow
from .errors import Conflict, DependencyFailure, InvalidArgument, LibraryError, NotFound
from .models import AvailabilityStatus, CheckoutResult, EpisodeStatus, Identity, UserBook
from .notifications import Notification, Outbox

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)
transitions_counter = metrics.get_meter(__name__).create_counter(
    "library.transitions", description="Committed availability transitions"
)

ERROR_LABELS = {
    "checkout": "checkout",
    "checkin": "check-in",
    "purchase": "purchase confirmation",
    "register": "registering book in local DB",
}

# Primary keys are 32-bit INTEGER columns.
MAX_BOOK_ID = 2**31 - 1
BOOK_ID_PATTERN = re.compile(r"[0-9]{1,10}")


def parse_book_id(value: Any) -> int:
    """Coerce a local book id from a request body.

    Accepts a positive int, or a string of ASCII digits, that fits the
    ``books.id`` column; anything else is ``InvalidArgument``.
    """
    if isinstance(value, bool):
        raise InvalidArgument("Invalid book ID provided.")
    if isinstance(value, int):
        book_id = value
    elif isinstance(value, str) and BOOK_ID_PATTERN.fullmatch(value.strip()):
        book_id = int(value.strip())
    else:
        raise InvalidArgument("Invalid book ID provided.")
    if not 0 < book_id <= MAX_BOOK_ID:
        raise InvalidArgument("Invalid book ID provided.")
    return book_id


class CirculationService:
    def __init__(
        self,
        session: Session,
        outbox: Outbox,
        clock: Callable[[], datetime] = utcnow,
        loan_period_months: int = 1,
    ):
        self.session = session
        self.outbox = outbox
        self.clock = clock
        self.loan_period_months = loan_period_months

    def checkout(
        self,
        user: Identity,
        google_book_id: str,
        title: str,
        author: Optional[str] = None,
        cover_image_url: Optional[str] = None,
    ) -> CheckoutResult:
        if not google_book_id or not title:
            raise InvalidArgument("Google Book ID and Title are required.")

        now = self.clock()
        due_date = add_months(now, self.loan_period_months)
        with tracer.start_as_current_span("circulation.checkout"), self._unit_of_work("checkout"):
            book = self._lock_book_by_google_id(google_book_id)
            if book is None:
                book = BookRecord(
                    google_book_id=google_book_id,
                    title=title,
                    author=author,
                    cover_image_url=cover_image_url,
                    availability_status=transition(AvailabilityStatus.AVAILABLE, Action.CHECKOUT),
                )
                self.session.add(book)
                self.session.flush()
            else:
                book.availability_status = transition(book.availability_status, Action.CHECKOUT)
            self.session.add(
                CheckoutRecord(
                    user_id=user.id,
                    book_id=book.id,
                    checkout_date=now,
                    return_date=due_date,
                    status=EpisodeStatus.CHECKED_OUT,
                )
            )
            self.session.flush()
            book_id, book_title, book_author = book.id, book.title, book.author

        self._committed(Action.CHECKOUT, user, book_id)
        self._notify(notifications.checked_out(user.email, book_title, book_author, due_date))
        return CheckoutResult(book_id_in_db=book_id, due_date=due_date)

    def check_in(self, user: Identity, book_id: Any) -> None:
        book_id = parse_book_id(book_id)
        now = self.clock()
        with tracer.start_as_current_span("circulation.checkin"), self._unit_of_work("checkin"):
            book = self._lock_book(book_id)
            episode = self._lock_open_episode(book_id, user_id=user.id)
            if book is None or episode is None:
                logger.warning("checkin.not_found", extra={"user_id": user.id, "book_id": book_id})
                raise NotFound("Book not found as checked out by this user.")
            episode.status = EpisodeStatus.RETURNED
            episode.return_date = now
            book.availability_status = transition(book.availability_status, Action.CHECK_IN)
            self.session.flush()
            book_title, book_author = book.title, book.author

        self._committed(Action.CHECK_IN, user, book_id)
        self._notify(notifications.checked_in(user.email, book_title, book_author))

    def confirm_purchase(
        self,
        user: Identity,
        book_id: Any,
        title: Optional[str] = None,
        author: Optional[str] = None,
    ) -> None:
        book_id = parse_book_id(book_id)
        now = self.clock()
        with tracer.start_as_current_span("circulation.purchase"), self._unit_of_work("purchase"):
            book = self._lock_book(book_id)
            if book is None:
                raise NotFound("Book not found.")
            current = book.availability_status
            if current == AvailabilityStatus.CHECKED_OUT:
                loan = self._lock_open_episode(book_id)
                if loan is None or loan.user_id != user.id:
                    raise Conflict("Book is currently checked out by another user.")
                loan.status = EpisodeStatus.RETURNED
                loan.return_date = now
            book.availability_status = transition(current, Action.PURCHASE)
            self.session.add(
                CheckoutRecord(user_id=user.id, book_id=book_id, checkout_date=now, status=EpisodeStatus.PURCHASED)
            )
            self.session.flush()
            book_title, book_author = title or book.title, author or book.author

        self._committed(Action.PURCHASE, user, book_id)
        self._notify(notifications.purchased(user.email, book_title, book_author))

    def register(
        self,
        google_book_id: str,
        title: str,
        author: Optional[str] = None,
        cover_image_url: Optional[str] = None,
    ) -> int:
        """Resolve or create the local row for a catalog id without touching its status."""
        if not google_book_id or not title:
            raise InvalidArgument("Google Book ID and Title are required to register book.")
        try:
            with self._unit_of_work("register"):
                book = self._find_book_by_google_id(google_book_id)
                if book is None:
                    book = BookRecord(
                        google_book_id=google_book_id,
                        title=title,
                        author=author,
                        cover_image_url=cover_image_url,
                        availability_status=AvailabilityStatus.AVAILABLE,
                    )
                    self.session.add(book)
                    self.session.flush()
                return book.id
        except Conflict:
            # Lost the insert race; the winner's row is committed now.
            book = self._find_book_by_google_id(google_book_id)
            if book is None:
                raise
            return book.id

    def checked_out_books(self, user: Identity) -> list[UserBook]:
        return self._episodes(user, statuses=[EpisodeStatus.CHECKED_OUT])

    def history(self, user: Identity) -> list[UserBook]:
        return self._episodes(user)

    def availability(self, google_book_ids: Iterable[str]) -> dict[str, tuple[AvailabilityStatus, int]]:
        ids = list(google_book_ids)
        if not ids:
            return {}
        rows = self.session.execute(
            select(BookRecord.google_book_id, BookRecord.availability_status, BookRecord.id).where(
                BookRecord.google_book_id.in_(ids)
            )
        ).all()
        return {google_id: (status, book_id) for google_id, status, book_id in rows}

    @contextmanager
    def _unit_of_work(self, operation: str):
        try:
            yield
            self.session.commit()
        except LibraryError:
            self.session.rollback()
            raise
        except IntegrityError as exc:
            self.session.rollback()
            logger.info(f"{operation}.race_lost", extra={"error": str(exc.orig)})
            raise Conflict("Book is currently checked out by another user.") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(f"{operation}.failed")
            raise DependencyFailure(f"Server error during {ERROR_LABELS[operation]}.") from exc
        except Exception:
            self.session.rollback()
            raise

    def _find_book_by_google_id(self, google_book_id: str) -> Optional[BookRecord]:
        return self.session.execute(
            select(BookRecord).where(BookRecord.google_book_id == google_book_id)
        ).scalar_one_or_none()

    def _lock_book_by_google_id(self, google_book_id: str) -> Optional[BookRecord]:
        return self._locked(select(BookRecord).where(BookRecord.google_book_id == google_book_id))

    def _lock_book(self, book_id: int) -> Optional[BookRecord]:
        return self._locked(select(BookRecord).where(BookRecord.id == book_id))

    def _lock_open_episode(self, book_id: int, user_id: Optional[int] = None) -> Optional[CheckoutRecord]:
        query = select(CheckoutRecord).where(
            CheckoutRecord.book_id == book_id,
            CheckoutRecord.status == EpisodeStatus.CHECKED_OUT,
        )
        if user_id is not None:
            query = query.where(CheckoutRecord.user_id == user_id)
        return self._locked(query)

    def _locked(self, query):
        # SELECT ... FOR UPDATE, refreshing any copy already in the identity map.
        return self.session.execute(
            query.with_for_update().execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _episodes(self, user: Identity, statuses: Optional[list[EpisodeStatus]] = None) -> list[UserBook]:
        query = (
            select(CheckoutRecord, BookRecord)
            .join(BookRecord, CheckoutRecord.book_id == BookRecord.id)
            .where(CheckoutRecord.user_id == user.id)
            .order_by(CheckoutRecord.checkout_date.desc(), CheckoutRecord.id.desc())
        )
        if statuses:
            query = query.where(CheckoutRecord.status.in_(statuses))
        return [
            UserBook(
                book_id_in_db=book.id,
                google_book_id=book.google_book_id,
                title=book.title,
                author=book.author,
                cover_image_url=book.cover_image_url,
                checkout_date=episode.checkout_date,
                return_date=episode.return_date,
                checkout_status=episode.status,
            )
            for episode, book in self.session.execute(query).all()
        ]

    def _committed(self, action: Action, user: Identity, book_id: int) -> None:
        transitions_counter.add(1, {"action": action.value})
        logger.info(f"{action.value}.committed", extra={"user_id": user.id, "book_id": book_id})

    def _notify(self, notification: Notification) -> None:
        try:
            self.outbox.submit(notification)
        except Exception as exc:  # noqa: BLE001
            logger.warning("notification.submit_failed", extra={"to": notification.to, "error": repr(exc)})
