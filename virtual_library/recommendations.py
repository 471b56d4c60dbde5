import logging
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .entities import BookRecord, CheckoutRecord
from .errors import DependencyFailure
from .models import EpisodeStatus, Identity

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20


class OpenAIClient:
    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-3.5-turbo",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def recommend(self, prompt: str) -> str:
        if not self.api_key:
            raise DependencyFailure("Recommendations are not configured.")
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": 500,
            "temperature": 0.7,
        }
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                resp = client.post("/chat/completions", json=body, headers={"Authorization": f"Bearer {self.api_key}"})
                resp.raise_for_status()
                return resp.json()["choices"][0]["message"]["content"]
        except httpx.HTTPStatusError as exc:
            logger.error("openai.http_error", extra={"status": exc.response.status_code})
            raise DependencyFailure("Error generating recommendations.") from exc
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as exc:
            logger.error("openai.bad_response", extra={"error": repr(exc)})
            raise DependencyFailure("Error generating recommendations.") from exc


def build_prompt(history: list[str], preferences: Optional[str] = None) -> str:
    parts = ["I am a virtual library user looking for book recommendations."]
    if preferences:
        parts.append(f"My explicit interests include: {preferences}.")
    if history:
        parts.append(f"My reading history includes the following books: {'; '.join(history)}.")
        parts.append(
            "Based on this history, please identify any **trends** in my reading habits "
            "(e.g., preferred genres, authors, themes, styles). Then, suggest 5 to 7 new books "
            "that fit these trends, or expand on them."
        )
    else:
        parts.append(
            "I have no extensive reading history yet. Please suggest 5 to 7 popular books across "
            "different genres or based on my stated interests if any."
        )
    parts.append(
        "For each recommendation, provide the title, author, and a brief reason for the suggestion, "
        "clearly linking it to an identified trend or general appeal. Format your response as a numbered "
        'list, starting with "Identified Trends:" if history is provided, and use HTML tags for bolding '
        "or lists if appropriate."
    )
    return " ".join(parts)


class RecommendationService:
    def __init__(self, session: Session, client: OpenAIClient):
        self.session = session
        self.client = client

    def recommend(self, user: Identity, preferences: Optional[str] = None) -> str:
        return self.client.recommend(build_prompt(self.reading_history(user), preferences))

    def reading_history(self, user: Identity) -> list[str]:
        try:
            rows = self.session.execute(
                select(BookRecord.title, BookRecord.author, BookRecord.categories)
                .join(CheckoutRecord, CheckoutRecord.book_id == BookRecord.id)
                .where(CheckoutRecord.user_id == user.id, CheckoutRecord.status.in_(list(EpisodeStatus)))
                .order_by(CheckoutRecord.checkout_date.desc(), CheckoutRecord.id.desc())
                .limit(HISTORY_LIMIT)
            ).all()
        except SQLAlchemyError:
            # Recommendations still work without history.
            self.session.rollback()
            logger.exception("recommend.history_failed", extra={"user_id": user.id})
            return []

        entries = []
        for title, author, categories in rows:
            entry = f"{title} by {author or 'Unknown Author'}"
            if categories:
                entry += f" (Category: {', '.join(categories)})"
            entries.append(entry)
        return entries
