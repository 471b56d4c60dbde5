import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

import pytest
from hypothesis import given, settings, strategies as st
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from virtual_library.db import Base
from virtual_library.entities import BookRecord, CheckoutRecord, UserRecord
from virtual_library.errors import Conflict, DependencyFailure, InvalidArgument, NotFound
from virtual_library.models import AvailabilityStatus, EpisodeStatus, Identity
from virtual_library.service import CirculationService

LATER = datetime(2026, 3, 15, 9, 30)


def _book(session, google_book_id):
    session.expire_all()
    return session.execute(select(BookRecord).where(BookRecord.google_book_id == google_book_id)).scalar_one()


def _episodes(session, book_id=None):
    session.expire_all()
    query = select(CheckoutRecord).order_by(CheckoutRecord.id)
    if book_id is not None:
        query = query.where(CheckoutRecord.book_id == book_id)
    return session.execute(query).scalars().all()


def _count(session, model):
    return session.scalar(select(func.count()).select_from(model))


def _fail_on_flush(monkeypatch, session):
    def boom(*args, **kwargs):
        raise OperationalError("INSERT INTO checkouts", {}, Exception("disk I/O error"))

    monkeypatch.setattr(session, "flush", boom)


def test_checkout_of_new_book_creates_book_and_episode(service, db_session, make_user, outbox, now):
    reader = make_user("reader@example.com")

    result = service.checkout(reader, "GB123", "Dune", "F. Herbert", "https://covers.example/dune.jpg")

    assert result.due_date == datetime(2026, 2, 28, 10, 0)
    book = _book(db_session, "GB123")
    assert book.id == result.book_id_in_db
    assert book.availability_status == AvailabilityStatus.CHECKED_OUT
    assert book.cover_image_url == "https://covers.example/dune.jpg"
    [episode] = _episodes(db_session, book.id)
    assert episode.user_id == reader.id
    assert episode.status == EpisodeStatus.CHECKED_OUT
    assert episode.checkout_date == now
    assert episode.return_date == result.due_date
    [notification] = outbox.sent
    assert notification.to == "reader@example.com"
    assert notification.subject == "Book Checked Out: Dune"
    assert "February 28, 2026" in notification.html


def test_checkout_of_checked_out_book_conflicts_without_changes(service, db_session, make_user, outbox):
    first = make_user("first@example.com")
    second = make_user("second@example.com")
    service.checkout(first, "GB123", "Dune", "F. Herbert")
    outbox.sent.clear()

    with pytest.raises(Conflict) as exc:
        service.checkout(second, "GB123", "Dune", "F. Herbert")

    assert exc.value.message == "Book is currently checked out by another user."
    book = _book(db_session, "GB123")
    assert book.availability_status == AvailabilityStatus.CHECKED_OUT
    [episode] = _episodes(db_session)
    assert episode.user_id == first.id
    assert outbox.sent == []


def test_checkout_requires_catalog_id_and_title(outbox):
    service = CirculationService(None, outbox)
    reader = Identity(id=1, email="reader@example.com")

    with pytest.raises(InvalidArgument):
        service.checkout(reader, "", "Dune")
    with pytest.raises(InvalidArgument):
        service.checkout(reader, "GB123", "")


@pytest.mark.parametrize(
    "bad_id", ["abc", "", "12abc", "-4", "²", "¹⁰", "1.0", 0, -3, 2**31, 10**20, True, None, 1.5, [1]]
)
def test_check_in_rejects_malformed_ids_before_touching_store(bad_id, outbox):
    # No session: any store access would blow up with AttributeError.
    service = CirculationService(None, outbox)

    with pytest.raises(InvalidArgument):
        service.check_in(Identity(id=1, email="reader@example.com"), bad_id)


def test_check_in_returns_book_and_closes_episode(service, db_session, make_user, outbox):
    reader = make_user("reader@example.com")
    result = service.checkout(reader, "GB123", "Dune", "F. Herbert")
    service.clock = lambda: LATER

    service.check_in(reader, str(result.book_id_in_db))

    assert _book(db_session, "GB123").availability_status == AvailabilityStatus.AVAILABLE
    [episode] = _episodes(db_session)
    assert episode.status == EpisodeStatus.RETURNED
    assert episode.return_date == LATER
    assert outbox.sent[-1].subject == "Book Checked In: Dune"


def test_check_in_without_open_episode_is_not_found(service, db_session, make_user):
    reader = make_user("reader@example.com")
    book_id = service.register("GB9", "Emma", "J. Austen")

    with pytest.raises(NotFound) as exc:
        service.check_in(reader, book_id)

    assert exc.value.message == "Book not found as checked out by this user."
    assert _book(db_session, "GB9").availability_status == AvailabilityStatus.AVAILABLE
    assert _episodes(db_session) == []


def test_check_in_by_another_user_is_not_found(service, db_session, make_user):
    holder = make_user("holder@example.com")
    stranger = make_user("stranger@example.com")
    result = service.checkout(holder, "GB123", "Dune")

    with pytest.raises(NotFound):
        service.check_in(stranger, result.book_id_in_db)

    assert _book(db_session, "GB123").availability_status == AvailabilityStatus.CHECKED_OUT
    [episode] = _episodes(db_session)
    assert episode.status == EpisodeStatus.CHECKED_OUT


def test_double_check_in_is_not_found(service, make_user):
    reader = make_user("reader@example.com")
    result = service.checkout(reader, "GB123", "Dune")
    service.check_in(reader, result.book_id_in_db)

    with pytest.raises(NotFound):
        service.check_in(reader, result.book_id_in_db)


def test_check_in_then_checkout_by_other_user_gets_fresh_due_date(service, db_session, make_user):
    first = make_user("first@example.com")
    second = make_user("second@example.com")
    loan = service.checkout(first, "GB123", "Dune")
    service.clock = lambda: LATER
    service.check_in(first, loan.book_id_in_db)

    again = service.checkout(second, "GB123", "Dune")

    assert again.book_id_in_db == loan.book_id_in_db
    assert again.due_date == datetime(2026, 4, 15, 9, 30)
    returned, current = _episodes(db_session)
    assert (returned.user_id, returned.status) == (first.id, EpisodeStatus.RETURNED)
    assert (current.user_id, current.status) == (second.id, EpisodeStatus.CHECKED_OUT)
    assert current.return_date == again.due_date


def test_purchase_of_available_book(service, db_session, make_user, outbox, now):
    buyer = make_user("buyer@example.com")
    book_id = service.register("GB5", "Neuromancer", "W. Gibson")

    service.confirm_purchase(buyer, book_id, "Neuromancer", "William Gibson")

    assert _book(db_session, "GB5").availability_status == AvailabilityStatus.PURCHASED
    [episode] = _episodes(db_session)
    assert episode.status == EpisodeStatus.PURCHASED
    assert episode.checkout_date == now
    assert episode.return_date is None
    assert outbox.sent[-1].subject == "Book Purchased: Neuromancer"
    assert "William Gibson" in outbox.sent[-1].html


def test_purchase_by_loan_holder_closes_the_loan(service, db_session, make_user):
    reader = make_user("reader@example.com")
    loan = service.checkout(reader, "GB123", "Dune")

    service.confirm_purchase(reader, loan.book_id_in_db)

    assert _book(db_session, "GB123").availability_status == AvailabilityStatus.PURCHASED
    closed, bought = _episodes(db_session)
    assert closed.status == EpisodeStatus.RETURNED
    assert bought.status == EpisodeStatus.PURCHASED


def test_purchase_of_book_on_loan_to_someone_else_conflicts(service, db_session, make_user):
    holder = make_user("holder@example.com")
    buyer = make_user("buyer@example.com")
    loan = service.checkout(holder, "GB123", "Dune")

    with pytest.raises(Conflict):
        service.confirm_purchase(buyer, loan.book_id_in_db)

    assert _book(db_session, "GB123").availability_status == AvailabilityStatus.CHECKED_OUT
    [episode] = _episodes(db_session)
    assert episode.status == EpisodeStatus.CHECKED_OUT


def test_purchased_book_has_no_way_out(service, db_session, make_user):
    buyer = make_user("buyer@example.com")
    other = make_user("other@example.com")
    book_id = service.register("GB5", "Neuromancer")
    service.confirm_purchase(buyer, book_id)

    with pytest.raises(Conflict):
        service.checkout(other, "GB5", "Neuromancer")
    with pytest.raises(Conflict):
        service.confirm_purchase(other, book_id)
    with pytest.raises(NotFound):
        service.check_in(buyer, book_id)

    assert _book(db_session, "GB5").availability_status == AvailabilityStatus.PURCHASED
    assert len(_episodes(db_session)) == 1


def test_purchase_of_unknown_book_is_not_found(service, make_user):
    buyer = make_user("buyer@example.com")

    with pytest.raises(NotFound):
        service.confirm_purchase(buyer, 404)


def test_register_is_idempotent_and_keeps_status(service, db_session, make_user):
    reader = make_user("reader@example.com")
    loan = service.checkout(reader, "GB123", "Dune")

    assert service.register("GB123", "Dune (reissue)") == loan.book_id_in_db
    book = _book(db_session, "GB123")
    assert book.availability_status == AvailabilityStatus.CHECKED_OUT
    assert book.title == "Dune"

    fresh = service.register("GB7", "Emma", "J. Austen")
    assert fresh != loan.book_id_in_db
    assert _book(db_session, "GB7").availability_status == AvailabilityStatus.AVAILABLE


def test_lost_insert_race_is_reported_as_conflict(service, db_session, make_user, monkeypatch):
    first = make_user("first@example.com")
    second = make_user("second@example.com")
    service.checkout(first, "GB123", "Dune")
    # The racer looked before the winner committed and saw no row.
    monkeypatch.setattr(service, "_lock_book_by_google_id", lambda google_book_id: None)

    with pytest.raises(Conflict):
        service.checkout(second, "GB123", "Dune")

    monkeypatch.undo()
    assert _count(db_session, BookRecord) == 1
    [episode] = _episodes(db_session)
    assert episode.user_id == first.id


def test_second_session_observes_committed_checkout(session_factory, make_user, outbox, now):
    first = make_user("first@example.com")
    second = make_user("second@example.com")
    winner = CirculationService(session_factory(), outbox, clock=lambda: now)
    loser = CirculationService(session_factory(), outbox, clock=lambda: now)
    try:
        loser.register("GB123", "Dune")  # loser's session now holds the row as available
        winner.checkout(first, "GB123", "Dune")

        with pytest.raises(Conflict):
            loser.checkout(second, "GB123", "Dune")
    finally:
        winner.session.close()
        loser.session.close()


def test_store_failure_during_checkout_of_new_book_persists_nothing(service, db_session, make_user, outbox, monkeypatch):
    reader = make_user("reader@example.com")
    _fail_on_flush(monkeypatch, db_session)

    with pytest.raises(DependencyFailure) as exc:
        service.checkout(reader, "GB123", "Dune")

    monkeypatch.undo()
    assert exc.value.message == "Server error during checkout."
    assert _count(db_session, BookRecord) == 0
    assert _count(db_session, CheckoutRecord) == 0
    assert outbox.sent == []


def test_store_failure_during_checkout_of_known_book_keeps_it_available(service, db_session, make_user, monkeypatch):
    reader = make_user("reader@example.com")
    service.register("GB123", "Dune")
    _fail_on_flush(monkeypatch, db_session)

    with pytest.raises(DependencyFailure):
        service.checkout(reader, "GB123", "Dune")

    monkeypatch.undo()
    assert _book(db_session, "GB123").availability_status == AvailabilityStatus.AVAILABLE
    assert _count(db_session, CheckoutRecord) == 0


def test_store_failure_during_check_in_keeps_loan_open(service, db_session, make_user, monkeypatch):
    reader = make_user("reader@example.com")
    loan = service.checkout(reader, "GB123", "Dune")
    _fail_on_flush(monkeypatch, db_session)

    with pytest.raises(DependencyFailure) as exc:
        service.check_in(reader, loan.book_id_in_db)

    monkeypatch.undo()
    assert exc.value.message == "Server error during check-in."
    assert _book(db_session, "GB123").availability_status == AvailabilityStatus.CHECKED_OUT
    [episode] = _episodes(db_session)
    assert episode.status == EpisodeStatus.CHECKED_OUT
    assert episode.return_date == loan.due_date


def test_store_failure_during_purchase_rolls_back(service, db_session, make_user, monkeypatch):
    buyer = make_user("buyer@example.com")
    book_id = service.register("GB5", "Neuromancer")
    _fail_on_flush(monkeypatch, db_session)

    with pytest.raises(DependencyFailure):
        service.confirm_purchase(buyer, book_id)

    monkeypatch.undo()
    assert _book(db_session, "GB5").availability_status == AvailabilityStatus.AVAILABLE
    assert _count(db_session, CheckoutRecord) == 0


def test_unexpected_driver_error_still_rolls_back(service, db_session, make_user, monkeypatch):
    reader = make_user("reader@example.com")
    service.register("GB123", "Dune")
    rollbacks = []
    real_rollback = db_session.rollback

    def boom(*args, **kwargs):
        raise OverflowError("Python int too large to convert to SQLite INTEGER")

    def tracking_rollback():
        rollbacks.append(True)
        real_rollback()

    monkeypatch.setattr(db_session, "flush", boom)
    monkeypatch.setattr(db_session, "rollback", tracking_rollback)

    with pytest.raises(OverflowError):
        service.checkout(reader, "GB123", "Dune")

    monkeypatch.undo()
    assert rollbacks == [True]
    assert _book(db_session, "GB123").availability_status == AvailabilityStatus.AVAILABLE
    assert _count(db_session, CheckoutRecord) == 0


def test_notification_failure_does_not_change_outcome(db_session, make_user, failing_outbox, now):
    reader = make_user("reader@example.com")
    service = CirculationService(db_session, failing_outbox, clock=lambda: now)

    loan = service.checkout(reader, "GB123", "Dune")
    service.check_in(reader, loan.book_id_in_db)

    assert _book(db_session, "GB123").availability_status == AvailabilityStatus.AVAILABLE


def test_history_and_current_loans(service, make_user):
    reader = make_user("reader@example.com")
    dune = service.checkout(reader, "GB1", "Dune")
    service.clock = lambda: LATER
    service.check_in(reader, dune.book_id_in_db)
    service.checkout(reader, "GB2", "Emma")

    history = service.history(reader)
    assert [(entry.title, entry.checkout_status) for entry in history] == [
        ("Emma", EpisodeStatus.CHECKED_OUT),
        ("Dune", EpisodeStatus.RETURNED),
    ]
    assert [entry.google_book_id for entry in service.checked_out_books(reader)] == ["GB2"]


def test_availability_overlay_only_lists_known_books(service, make_user):
    reader = make_user("reader@example.com")
    loan = service.checkout(reader, "GB1", "Dune")

    assert service.availability(["GB1", "GB-unknown"]) == {
        "GB1": (AvailabilityStatus.CHECKED_OUT, loan.book_id_in_db)
    }
    assert service.availability([]) == {}


class _NullOutbox:
    def submit(self, notification):
        pass


def _assert_status_matches_open_episodes(session):
    session.expire_all()
    for book in session.execute(select(BookRecord)).scalars():
        open_count = session.scalar(
            select(func.count())
            .select_from(CheckoutRecord)
            .where(CheckoutRecord.book_id == book.id, CheckoutRecord.status == EpisodeStatus.CHECKED_OUT)
        )
        assert open_count <= 1
        assert (book.availability_status == AvailabilityStatus.CHECKED_OUT) == (open_count == 1)


OPERATIONS = st.lists(
    st.tuples(
        st.sampled_from(["checkout", "check_in", "purchase"]),
        st.integers(min_value=0, max_value=1),
        st.integers(min_value=0, max_value=2),
    ),
    max_size=25,
)


@settings(max_examples=40, deadline=None)
@given(OPERATIONS)
def test_book_status_always_matches_open_episodes(operations):
    engine = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    session = Session(engine, autoflush=False, expire_on_commit=False)
    try:
        records = [UserRecord(email=f"user{n}@example.com", password_hash="x") for n in range(2)]
        session.add_all(records)
        session.commit()
        users = [Identity(id=record.id, email=record.email) for record in records]
        service = CirculationService(session, _NullOutbox(), clock=lambda: datetime(2026, 5, 1))
        catalog_ids = ["GB0", "GB1", "GB2"]

        for action, who, which in operations:
            try:
                if action == "checkout":
                    service.checkout(users[who], catalog_ids[which], f"Book {which}")
                    continue
                book_id = session.scalar(select(BookRecord.id).where(BookRecord.google_book_id == catalog_ids[which]))
                if book_id is None:
                    continue
                if action == "check_in":
                    service.check_in(users[who], book_id)
                else:
                    service.confirm_purchase(users[who], book_id)
            except (Conflict, NotFound):
                pass
            finally:
                _assert_status_matches_open_episodes(session)
    finally:
        session.close()
        engine.dispose()


@pytest.mark.skipif(
    not os.getenv("APP_TEST_DATABASE_URL", "").startswith("postgresql"),
    reason="row locking needs PostgreSQL",
)
@pytest.mark.parametrize("preregistered", [False, True])
def test_concurrent_checkouts_have_exactly_one_winner(session_factory, make_user, outbox, now, preregistered):
    users = [make_user(f"racer{n}@example.com") for n in range(8)]
    if preregistered:
        with session_factory() as session:
            CirculationService(session, outbox).register("GB-race", "Race")
    barrier = threading.Barrier(len(users))

    def attempt(user):
        with session_factory() as session:
            service = CirculationService(session, outbox, clock=lambda: now)
            barrier.wait()
            try:
                service.checkout(user, "GB-race", "Race")
                return "won"
            except Conflict:
                return "lost"

    with ThreadPoolExecutor(max_workers=len(users)) as pool:
        outcomes = list(pool.map(attempt, users))

    assert outcomes.count("won") == 1
    with session_factory() as session:
        assert _count(session, BookRecord) == 1
        assert _count(session, CheckoutRecord) == 1
        _assert_status_matches_open_episodes(session)
