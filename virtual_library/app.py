import logging
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .accounts import AccountService
from .auth import AuthVerifier
from .catalog import GoogleBooksClient
from .community import FavoriteService, ReviewService
from .config import get_settings
from .db import dispose_engine, get_session, get_session_factory, init_db
from .errors import LibraryError
from .models import (
    AddFavorite,
    AuthResponse,
    CatalogBook,
    CheckInRequest,
    CheckoutRequest,
    CheckoutResult,
    CreatePaymentIntent,
    CreateReview,
    Credentials,
    FavoriteBook,
    FavoriteStatus,
    Identity,
    Message,
    PaymentIntentResponse,
    PurchaseConfirmRequest,
    RecommendRequest,
    Recommendations,
    RegisterBookRequest,
    RegisteredBook,
    Review,
    UserBook,
)
from .notifications import Mailer, Outbox, ThreadedOutbox
from .payments import PaymentService, StripeClient
from .ratelimit import SlidingWindowLimiter, per_user_limit
from .recommendations import OpenAIClient, RecommendationService
from .reminders import ReminderScheduler
from .service import CirculationService, parse_book_id

settings = get_settings()

auth_verifier = AuthVerifier(
    secret=settings.jwt_secret,
    algorithm=settings.jwt_algorithm,
    ttl_seconds=settings.jwt_ttl_seconds,
)
current_user = auth_verifier

outbox = ThreadedOutbox(Mailer.from_settings(settings))
catalog_client = GoogleBooksClient(
    api_key=settings.google_books_api_key,
    base_url=settings.google_books_url,
    timeout=settings.http_timeout_seconds,
)
stripe_client = StripeClient(
    secret_key=settings.stripe_secret_key,
    base_url=settings.stripe_api_url,
    timeout=settings.http_timeout_seconds,
)
openai_client = OpenAIClient(
    api_key=settings.openai_api_key,
    model=settings.openai_model,
    base_url=settings.openai_api_url,
)
recommend_limiter = SlidingWindowLimiter(max_requests=settings.recommend_rate_limit, window_seconds=60)
recommend_access = per_user_limit(recommend_limiter, current_user)


def get_outbox() -> Outbox:
    return outbox


def get_catalog() -> GoogleBooksClient:
    return catalog_client


def get_circulation_service(session=Depends(get_session), box: Outbox = Depends(get_outbox)) -> CirculationService:
    return CirculationService(session, box, loan_period_months=settings.loan_period_months)


def get_account_service(session=Depends(get_session)) -> AccountService:
    return AccountService(session)


def get_review_service(session=Depends(get_session)) -> ReviewService:
    return ReviewService(session)


def get_favorite_service(session=Depends(get_session)) -> FavoriteService:
    return FavoriteService(session)


def get_payment_service(session=Depends(get_session)) -> PaymentService:
    return PaymentService(session, stripe_client)


def get_recommendation_service(session=Depends(get_session)) -> RecommendationService:
    return RecommendationService(session, openai_client)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    scheduler = None
    if settings.reminder_enabled:
        scheduler = ReminderScheduler(
            get_session_factory(),
            outbox,
            hour=settings.reminder_hour,
            timezone=settings.reminder_timezone,
            window_days=settings.reminder_window_days,
        )
        scheduler.start()
    yield
    if scheduler is not None:
        await scheduler.stop()
    outbox.shutdown(wait=False)
    dispose_engine()


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Virtual library: catalog search, circulation, purchases, reviews and recommendations.",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)
if settings.otel_enabled:
    from .otel import configure_otel

    configure_otel(app)

allowed_origins = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


router = APIRouter(prefix="/api")
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
books_router = APIRouter(prefix="/api/books", tags=["books"])
reviews_router = APIRouter(prefix="/api/reviews", tags=["reviews"])
users_router = APIRouter(prefix="/api/users", tags=["users"])
stripe_router = APIRouter(prefix="/api/stripe", tags=["payments"])
ai_router = APIRouter(prefix="/api/ai", tags=["ai"])


@router.get("/health", tags=["health"])
def health() -> dict:
    return {"status": "ok"}


@auth_router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
def register(payload: Credentials, accounts: AccountService = Depends(get_account_service)) -> AuthResponse:
    user = accounts.register(payload)
    return AuthResponse(token=auth_verifier.issue(user), user=user)


@auth_router.post("/login", response_model=AuthResponse)
def login(payload: Credentials, accounts: AccountService = Depends(get_account_service)) -> AuthResponse:
    user = accounts.authenticate(payload)
    return AuthResponse(token=auth_verifier.issue(user), user=user)


def _with_local_status(books: List[CatalogBook], service: CirculationService) -> List[CatalogBook]:
    local = service.availability(book.id for book in books)
    for book in books:
        if book.id in local:
            book.availability_status, book.book_id_in_db = local[book.id]
    return books


@books_router.get("/search", response_model=List[CatalogBook])
def search_books(
    query: str = "",
    genre: Optional[str] = None,
    author: Optional[str] = None,
    catalog: GoogleBooksClient = Depends(get_catalog),
    service: CirculationService = Depends(get_circulation_service),
) -> List[CatalogBook]:
    return _with_local_status(catalog.search(query, genre=genre, author=author), service)


@books_router.get("/user/checked-out", response_model=List[UserBook])
def checked_out_books(
    user: Identity = Depends(current_user),
    service: CirculationService = Depends(get_circulation_service),
) -> List[UserBook]:
    return service.checked_out_books(user)


@books_router.get("/user/history", response_model=List[UserBook])
def checkout_history(
    user: Identity = Depends(current_user),
    service: CirculationService = Depends(get_circulation_service),
) -> List[UserBook]:
    return service.history(user)


@books_router.get("/user/reviews", response_model=List[Review])
def user_reviews(
    user: Identity = Depends(current_user),
    reviews: ReviewService = Depends(get_review_service),
) -> List[Review]:
    return reviews.by_user(user)


@books_router.get("/{google_book_id}", response_model=CatalogBook)
def book_details(
    google_book_id: str,
    catalog: GoogleBooksClient = Depends(get_catalog),
    service: CirculationService = Depends(get_circulation_service),
) -> CatalogBook:
    return _with_local_status([catalog.lookup(google_book_id)], service)[0]


@books_router.post("/checkout", response_model=CheckoutResult)
def checkout_book(
    payload: CheckoutRequest,
    user: Identity = Depends(current_user),
    service: CirculationService = Depends(get_circulation_service),
) -> CheckoutResult:
    result = service.checkout(user, payload.google_book_id, payload.title, payload.author, payload.cover_image_url)
    result.message = "Book checked out successfully! An email confirmation has been sent and the book is due in 1 month."
    return result


@books_router.post("/checkin", response_model=Message)
def checkin_book(
    payload: CheckInRequest,
    user: Identity = Depends(current_user),
    service: CirculationService = Depends(get_circulation_service),
) -> Message:
    service.check_in(user, payload.book_id)
    return Message(message="Book checked in successfully! An email confirmation has been sent.")


@books_router.post("/purchase-confirm", response_model=Message)
def purchase_confirmation(
    payload: PurchaseConfirmRequest,
    user: Identity = Depends(current_user),
    service: CirculationService = Depends(get_circulation_service),
    payments: PaymentService = Depends(get_payment_service),
) -> Message:
    book_id = parse_book_id(payload.book_id_in_db)
    if payload.payment_intent_id and payments.stripe.secret_key:
        payments.verify_purchase(user, payload.payment_intent_id, book_id)
    service.confirm_purchase(user, book_id, payload.title, payload.author)
    return Message(message="Purchase confirmed and email sent!")


@books_router.post("/register-in-db", response_model=RegisteredBook)
def register_book(
    payload: RegisterBookRequest,
    user: Identity = Depends(current_user),
    service: CirculationService = Depends(get_circulation_service),
) -> RegisteredBook:
    book_id = service.register(payload.google_book_id, payload.title, payload.author, payload.cover_image_url)
    return RegisteredBook(book_id_in_db=book_id)


@reviews_router.post("", response_model=Review, status_code=status.HTTP_201_CREATED)
def add_review(
    payload: CreateReview,
    user: Identity = Depends(current_user),
    reviews: ReviewService = Depends(get_review_service),
) -> Review:
    return reviews.add(user, payload)


@reviews_router.get("/{book_id}", response_model=List[Review])
def reviews_for_book(book_id: int, reviews: ReviewService = Depends(get_review_service)) -> List[Review]:
    return reviews.for_book(book_id)


@users_router.post("/favorites", response_model=Message, status_code=status.HTTP_201_CREATED)
def add_favorite(
    payload: AddFavorite,
    user: Identity = Depends(current_user),
    favorites: FavoriteService = Depends(get_favorite_service),
) -> Message:
    favorites.add(user, payload.book_id)
    return Message(message="Book added to favorites.")


@users_router.get("/favorites", response_model=List[FavoriteBook])
def list_favorites(
    user: Identity = Depends(current_user),
    favorites: FavoriteService = Depends(get_favorite_service),
) -> List[FavoriteBook]:
    return favorites.list(user)


@users_router.delete("/favorites/{book_id}", response_model=Message)
def remove_favorite(
    book_id: int,
    user: Identity = Depends(current_user),
    favorites: FavoriteService = Depends(get_favorite_service),
) -> Message:
    favorites.remove(user, book_id)
    return Message(message="Book removed from favorites.")


@users_router.get("/favorites/status/{book_id}", response_model=FavoriteStatus)
def favorite_status(
    book_id: int,
    user: Identity = Depends(current_user),
    favorites: FavoriteService = Depends(get_favorite_service),
) -> FavoriteStatus:
    return FavoriteStatus(is_favorited=favorites.is_favorited(user, book_id))


@stripe_router.post("/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    payload: CreatePaymentIntent,
    user: Identity = Depends(current_user),
    payments: PaymentService = Depends(get_payment_service),
) -> PaymentIntentResponse:
    return PaymentIntentResponse(client_secret=payments.create_intent(user, payload))


@ai_router.post("/recommend", response_model=Recommendations)
def recommend(
    payload: RecommendRequest,
    user: Identity = Depends(recommend_access),
    recommender: RecommendationService = Depends(get_recommendation_service),
) -> Recommendations:
    return Recommendations(recommendations=recommender.recommend(user, payload.user_preferences))


for _router in (router, auth_router, books_router, reviews_router, users_router, stripe_router, ai_router):
    app.include_router(_router)


@app.middleware("http")
async def security_headers(request, call_next):
    if settings.require_https:
        forwarded_proto = request.headers.get("x-forwarded-proto", "")
        if (forwarded_proto and forwarded_proto.lower() != "https") or (
            request.url.scheme != "https" and not forwarded_proto
        ):
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "HTTPS required"})

    response = await call_next(request)
    response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'; base-uri 'none'")
    response.headers.setdefault("Cross-Origin-Resource-Policy", "same-origin")
    if request.headers.get("authorization"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


request_logger = logging.getLogger("virtual_library.requests")


@app.middleware("http")
async def request_logging_middleware(request, call_next):
    request_logger.info("request.start", extra={"path": request.url.path, "method": request.method})
    response = await call_next(request)
    request_logger.info(
        "request.end",
        extra={"path": request.url.path, "method": request.method, "status": response.status_code},
    )
    return response


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response
