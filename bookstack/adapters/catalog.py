"""
Catalog API providers

- OpenLibraryProvider: https://openlibrary.org/api/books (ISBN lookups, free, no key)
- GoogleBooksProvider: https://www.googleapis.com/books/v1/volumes (ISBN, or title/author search)
"""
import logging
from typing import Any, Dict, Optional

from bookstack.adapters.base import (
    EnrichmentProvider, ProviderKind, ProviderQuery, normalize_metadata, response_json, send,
)
from bookstack.core.exceptions import ProviderResponseError
from bookstack.core.http_client import HTTPClientPool

logger = logging.getLogger(__name__)


class OpenLibraryProvider(EnrichmentProvider):
    kind = ProviderKind.OPEN_LIBRARY

    def __init__(self, pool: HTTPClientPool, api_base: str = "https://openlibrary.org"):
        self._pool = pool
        self._api_base = api_base.rstrip("/")

    async def call(self, query: ProviderQuery) -> Dict[str, Any]:
        if not query.isbn:
            raise ProviderResponseError("Open Library lookups need an ISBN", provider=self.name)

        client = await self._pool.get_client(self.name)
        bibkey = f"ISBN:{query.isbn}"
        response = await send(
            client, self.name, "GET", f"{self._api_base}/api/books",
            params={"bibkeys": bibkey, "format": "json", "jscmd": "data"},
        )
        payload = response_json(response, self.name)
        book = payload.get(bibkey) if isinstance(payload, dict) else None
        if not book:
            raise ProviderResponseError(f"Open Library has no record for {query.isbn}", provider=self.name)

        cover = book.get("cover") or {}
        subjects = book.get("subjects") or []
        excerpts = book.get("excerpts") or []
        return normalize_metadata({
            "title": book.get("title"),
            "author": [a.get("name") for a in book.get("authors") or [] if a.get("name")],
            "publisher": _first_name(book.get("publishers")),
            "description": excerpts[0].get("text") if excerpts and isinstance(excerpts[0], dict) else book.get("notes"),
            "genre": _first_name(subjects),
            "pages": book.get("number_of_pages"),
            "format": book.get("physical_format"),
            "cover_url": cover.get("large") or cover.get("medium") or cover.get("small"),
        }, self.name)


class GoogleBooksProvider(EnrichmentProvider):
    kind = ProviderKind.GOOGLE_BOOKS

    def __init__(
        self,
        pool: HTTPClientPool,
        api_base: str = "https://www.googleapis.com/books/v1",
        api_key: str = "",
    ):
        self._pool = pool
        self._api_base = api_base.rstrip("/")
        self._api_key = api_key

    def _search_terms(self, query: ProviderQuery) -> Optional[str]:
        if query.isbn:
            return f"isbn:{query.isbn}"
        terms = []
        if query.title:
            terms.append(f'intitle:"{query.title}"')
        if query.author:
            terms.append(f'inauthor:"{query.author}"')
        return "+".join(terms) or None

    async def call(self, query: ProviderQuery) -> Dict[str, Any]:
        q = self._search_terms(query)
        if not q:
            raise ProviderResponseError("Google Books needs an ISBN or a title", provider=self.name)

        params = {"q": q, "maxResults": 1}
        if self._api_key:
            params["key"] = self._api_key

        client = await self._pool.get_client(self.name)
        response = await send(client, self.name, "GET", f"{self._api_base}/volumes", params=params)
        payload = response_json(response, self.name)
        items = payload.get("items") if isinstance(payload, dict) else None
        if not items:
            raise ProviderResponseError(f"Google Books has no match for {q}", provider=self.name)

        info = items[0].get("volumeInfo") or {}
        images = info.get("imageLinks") or {}
        categories = info.get("categories") or []
        return normalize_metadata({
            "title": info.get("title"),
            "author": info.get("authors"),
            "publisher": info.get("publisher"),
            "description": info.get("description"),
            "genre": categories[0] if categories else None,
            "pages": info.get("pageCount"),
            "format": info.get("printType"),
            "cover_url": images.get("thumbnail") or images.get("smallThumbnail"),
        }, self.name)


def _first_name(entries) -> Optional[str]:
    for entry in entries or []:
        name = entry.get("name") if isinstance(entry, dict) else entry
        if name:
            return name
    return None
