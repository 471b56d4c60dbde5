from sqlalchemy import delete, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .entities import BookRecord, FavoriteRecord, ReviewRecord, UserRecord
from .errors import Conflict, NotFound
from .models import CreateReview, FavoriteBook, Identity, Review


class ReviewService:
    def __init__(self, session: Session):
        self.session = session

    def add(self, user: Identity, payload: CreateReview) -> Review:
        if self.session.get(BookRecord, payload.book_id) is None:
            raise NotFound("Book not found.")
        record = ReviewRecord(
            user_id=user.id,
            book_id=payload.book_id,
            rating=payload.rating,
            review_text=payload.review_text,
        )
        self.session.add(record)
        self.session.commit()
        return Review(
            review_id=record.id,
            book_id_in_db=record.book_id,
            rating=record.rating,
            review_text=record.review_text,
            created_at=record.created_at,
            email=user.email,
        )

    def for_book(self, book_id: int) -> list[Review]:
        rows = self.session.execute(
            select(ReviewRecord, UserRecord.email)
            .join(UserRecord, ReviewRecord.user_id == UserRecord.id)
            .where(ReviewRecord.book_id == book_id)
            .order_by(ReviewRecord.created_at.desc(), ReviewRecord.id.desc())
        ).all()
        return [self._to_schema(review, email=email) for review, email in rows]

    def by_user(self, user: Identity) -> list[Review]:
        rows = self.session.execute(
            select(ReviewRecord, BookRecord)
            .join(BookRecord, ReviewRecord.book_id == BookRecord.id)
            .where(ReviewRecord.user_id == user.id)
            .order_by(ReviewRecord.created_at.desc(), ReviewRecord.id.desc())
        ).all()
        return [self._to_schema(review, book=book) for review, book in rows]

    @staticmethod
    def _to_schema(review: ReviewRecord, email: str | None = None, book: BookRecord | None = None) -> Review:
        return Review(
            review_id=review.id,
            book_id_in_db=review.book_id,
            rating=review.rating,
            review_text=review.review_text,
            created_at=review.created_at,
            email=email,
            google_book_id=book.google_book_id if book else None,
            title=book.title if book else None,
            author=book.author if book else None,
        )


class FavoriteService:
    def __init__(self, session: Session):
        self.session = session

    def add(self, user: Identity, book_id: int) -> None:
        if self.session.get(BookRecord, book_id) is None:
            raise NotFound("Book not found.")
        if self.is_favorited(user, book_id):
            raise Conflict("Book is already in your favorites.")
        self.session.add(FavoriteRecord(user_id=user.id, book_id=book_id))
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("Book is already in your favorites.") from exc

    def remove(self, user: Identity, book_id: int) -> None:
        result = self.session.execute(
            delete(FavoriteRecord).where(FavoriteRecord.user_id == user.id, FavoriteRecord.book_id == book_id)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFound("Book not found in your favorites.")
        self.session.commit()

    def list(self, user: Identity) -> list[FavoriteBook]:
        rows = self.session.execute(
            select(FavoriteRecord, BookRecord)
            .join(BookRecord, FavoriteRecord.book_id == BookRecord.id)
            .where(FavoriteRecord.user_id == user.id)
            .order_by(FavoriteRecord.created_at.desc())
        ).all()
        return [
            FavoriteBook(
                book_id_in_db=book.id,
                google_book_id=book.google_book_id,
                title=book.title,
                author=book.author,
                cover_image_url=book.cover_image_url,
                description=book.description,
                favorited_at=favorite.created_at,
            )
            for favorite, book in rows
        ]

    def is_favorited(self, user: Identity, book_id: int) -> bool:
        return bool(
            self.session.execute(
                select(
                    exists().where(FavoriteRecord.user_id == user.id, FavoriteRecord.book_id == book_id)
                )
            ).scalar()
        )
