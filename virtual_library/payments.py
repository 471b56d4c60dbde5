import json
import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from .entities import BookRecord
from .errors import DependencyFailure, InvalidArgument
from .models import CreatePaymentIntent, Identity

logger = logging.getLogger(__name__)


class StripeClient:
    """Minimal PaymentIntents client over the Stripe REST API."""

    def __init__(
        self,
        secret_key: Optional[str],
        base_url: str = "https://api.stripe.com/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def create_intent(self, amount: int, currency: str, metadata: dict[str, str]) -> str:
        form = {
            "amount": str(amount),
            "currency": currency.lower(),
            "payment_method_types[]": "card",
        }
        form.update({f"metadata[{key}]": value for key, value in metadata.items()})
        return self._request("POST", "/payment_intents", data=form)["client_secret"]

    def retrieve_intent(self, intent_id: str) -> dict[str, Any]:
        return self._request("GET", f"/payment_intents/{quote(intent_id, safe='')}")

    def _request(self, method: str, path: str, data: Optional[dict[str, str]] = None) -> dict[str, Any]:
        if not self.secret_key:
            raise DependencyFailure("Payments are not configured.")
        try:
            with httpx.Client(
                base_url=self.base_url,
                auth=(self.secret_key, ""),
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                resp = client.request(method, path, data=data)
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as exc:
            error = (exc.response.json() or {}).get("error", {}) if _is_json(exc.response) else {}
            logger.error(
                "stripe.http_error",
                extra={"path": path, "status": exc.response.status_code, "error": error.get("message")},
            )
            raise DependencyFailure(error.get("message") or "Payment provider error.") from exc
        except httpx.HTTPError as exc:
            logger.error("stripe.unreachable", extra={"path": path, "error": str(exc)})
            raise DependencyFailure("Payment provider error.") from exc


class PaymentService:
    def __init__(self, session: Session, stripe: StripeClient):
        self.session = session
        self.stripe = stripe

    def create_intent(self, user: Identity, payload: CreatePaymentIntent) -> str:
        metadata = {"user_id": str(user.id), "items": json.dumps(self.describe_items(payload), separators=(",", ":"))}
        client_secret = self.stripe.create_intent(payload.amount, payload.currency, metadata)
        logger.info("payment.intent_created", extra={"user_id": user.id, "amount": payload.amount})
        return client_secret

    def describe_items(self, payload: CreatePaymentIntent) -> list[dict[str, Any]]:
        """Item metadata built from local rows; ids unknown to the store are dropped."""
        ids = [item.book_id for item in payload.items]
        books = {
            book.id: book
            for book in self.session.execute(select(BookRecord).where(BookRecord.id.in_(ids))).scalars()
        }
        return [
            {
                "id": item.book_id,
                "google_book_id": books[item.book_id].google_book_id,
                "title": books[item.book_id].title,
                "author": books[item.book_id].author,
                "quantity": item.quantity,
            }
            for item in payload.items
            if item.book_id in books
        ]

    def verify_purchase(self, user: Identity, intent_id: str, book_id: int) -> None:
        intent = self.stripe.retrieve_intent(intent_id)
        metadata = intent.get("metadata") or {}
        if intent.get("status") != "succeeded":
            raise InvalidArgument("Payment has not been completed.")
        if metadata.get("user_id") != str(user.id) or book_id not in purchased_book_ids(metadata):
            raise InvalidArgument("Payment does not cover this book.")


def purchased_book_ids(metadata: dict[str, Any]) -> list[int]:
    """Local book ids listed in a payment intent's ``items`` metadata."""
    try:
        items = json.loads(metadata.get("items") or "[]")
    except (TypeError, ValueError):
        return []
    ids = []
    for item in items if isinstance(items, list) else []:
        if isinstance(item, dict) and isinstance(item.get("id"), int):
            ids.append(item["id"])
    return ids


def _is_json(response: httpx.Response) -> bool:
    return response.headers.get("content-type", "").startswith("application/json")
