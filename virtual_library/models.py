from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    CHECKED_OUT = "checked_out"
    PURCHASED = "purchased"


class EpisodeStatus(str, Enum):
    CHECKED_OUT = "checked_out"
    RETURNED = "returned"
    PURCHASED = "purchased"


class Identity(BaseModel):
    """Authenticated caller, as carried in the access token."""

    id: int
    email: str


class Credentials(BaseModel):
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=6, max_length=128)


class AuthResponse(BaseModel):
    token: str
    user: Identity


class CatalogBook(BaseModel):
    id: str
    title: str
    authors: list[str] = []
    description: Optional[str] = None
    cover_image_url: Optional[str] = None
    published_date: Optional[str] = None
    categories: list[str] = []
    page_count: Optional[int] = None
    publisher: Optional[str] = None
    web_reader_link: Optional[str] = None
    availability_status: AvailabilityStatus = AvailabilityStatus.AVAILABLE
    book_id_in_db: Optional[int] = None


class CheckoutRequest(BaseModel):
    google_book_id: str = Field(min_length=1, max_length=64)
    title: str = Field(min_length=1, max_length=500)
    author: Optional[str] = Field(default=None, max_length=500)
    cover_image_url: Optional[str] = Field(default=None, max_length=1000)


class RegisterBookRequest(CheckoutRequest):
    pass


class CheckoutResult(BaseModel):
    message: str = "Book checked out successfully!"
    book_id_in_db: int
    due_date: datetime


class CheckInRequest(BaseModel):
    # Validated by the circulation service so malformed ids map to 400, not 422.
    book_id: Any = None


class PurchaseConfirmRequest(BaseModel):
    book_id_in_db: Any = None
    title: Optional[str] = None
    author: Optional[str] = None
    payment_intent_id: Optional[str] = None


class Message(BaseModel):
    message: str


class RegisteredBook(BaseModel):
    book_id_in_db: int
    message: str = "Book registered in local DB."


class UserBook(BaseModel):
    book_id_in_db: int
    google_book_id: str
    title: str
    author: Optional[str] = None
    cover_image_url: Optional[str] = None
    checkout_date: datetime
    return_date: Optional[datetime] = None
    checkout_status: EpisodeStatus


class CreateReview(BaseModel):
    book_id: int = Field(gt=0)
    rating: int = Field(ge=1, le=5)
    review_text: str = Field(min_length=1, max_length=5000)


class Review(BaseModel):
    review_id: int
    book_id_in_db: int
    rating: int
    review_text: str
    created_at: datetime
    email: Optional[str] = None
    google_book_id: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None


class AddFavorite(BaseModel):
    book_id: int = Field(gt=0)


class FavoriteBook(BaseModel):
    book_id_in_db: int
    google_book_id: str
    title: str
    author: Optional[str] = None
    cover_image_url: Optional[str] = None
    description: Optional[str] = None
    favorited_at: datetime


class FavoriteStatus(BaseModel):
    is_favorited: bool


class PaymentItem(BaseModel):
    book_id: int = Field(gt=0)
    quantity: int = Field(default=1, gt=0, le=100)


class CreatePaymentIntent(BaseModel):
    items: list[PaymentItem] = Field(min_length=1)
    amount: int = Field(gt=0, le=100_000_000)
    currency: str = Field(default="usd", min_length=3, max_length=3)


class PaymentIntentResponse(BaseModel):
    client_secret: str


class RecommendRequest(BaseModel):
    user_preferences: Optional[str] = Field(default=None, max_length=2000)


class Recommendations(BaseModel):
    recommendations: str
