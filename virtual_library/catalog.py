import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx

from .errors import DependencyFailure, NotFound
from .models import CatalogBook

logger = logging.getLogger(__name__)


class GoogleBooksClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = "https://www.googleapis.com/books/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def search(self, query: str, genre: Optional[str] = None, author: Optional[str] = None) -> list[CatalogBook]:
        params = {"q": query or ""}
        if genre:
            params["subject"] = genre
        payload = self._get("/volumes", params)
        books = [self._to_book(item) for item in payload.get("items") or []]
        return [book for book in books if _matches(book, genre=genre, author=author)]

    def lookup(self, google_book_id: str) -> CatalogBook:
        try:
            payload = self._get(f"/volumes/{quote(google_book_id, safe='')}", {})
        except NotFound:
            raise NotFound("Book not found or data incomplete from external API.") from None
        if not payload.get("volumeInfo"):
            raise NotFound("Book not found or data incomplete from external API.")
        return self._to_book(payload)

    def _get(self, path: str, params: dict[str, str]) -> dict[str, Any]:
        if self.api_key:
            params = {**params, "key": self.api_key}
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                resp = client.get(path, params=params)
                if resp.status_code == httpx.codes.NOT_FOUND:
                    raise NotFound()
                resp.raise_for_status()
                return resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error("catalog.http_error", extra={"path": path, "status": exc.response.status_code})
            raise DependencyFailure("Error fetching books from external API.") from exc
        except httpx.HTTPError as exc:
            logger.error("catalog.unreachable", extra={"path": path, "error": str(exc)})
            raise DependencyFailure("Error fetching books from external API.") from exc

    @staticmethod
    def _to_book(item: dict[str, Any]) -> CatalogBook:
        info = item.get("volumeInfo") or {}
        return CatalogBook(
            id=item["id"],
            title=info.get("title") or "Untitled",
            authors=info.get("authors") or [],
            description=info.get("description"),
            cover_image_url=(info.get("imageLinks") or {}).get("thumbnail"),
            published_date=info.get("publishedDate"),
            categories=info.get("categories") or [],
            page_count=info.get("pageCount"),
            publisher=info.get("publisher"),
            web_reader_link=(item.get("accessInfo") or {}).get("webReaderLink"),
        )


def _matches(book: CatalogBook, genre: Optional[str], author: Optional[str]) -> bool:
    if genre and book.categories:
        wanted = genre.lower()
        if not any(wanted in category.lower() for category in book.categories):
            return False
    if author and book.authors:
        wanted = author.lower()
        if not any(wanted in name.lower() for name in book.authors):
            return False
    return True
