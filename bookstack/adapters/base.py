"""
Enrichment provider interface

Every metadata source (catalog API or LLM) implements EnrichmentProvider.call:
given the identifiers and caller-supplied text of one record, return a
normalized metadata dict or raise a ProviderError subclass. Retry, circuit
breaking and fallback live in the enrichment chain, not here.

Normalized metadata keys:
    title, author, publisher, description, genre, pages, format, cover_url
"""
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import httpx

from bookstack.core.exceptions import (
    ProviderConfigurationError, ProviderError, ProviderResponseError, ProviderTimeoutError,
    ProviderTransportError,
)

logger = logging.getLogger(__name__)

METADATA_FIELDS = ("title", "author", "publisher", "description", "genre", "pages", "format", "cover_url")

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)
CONFIGURATION_STATUS_CODES = (400, 401, 403)


class ProviderKind(str, Enum):
    """Known enrichment providers."""
    OPEN_LIBRARY = "open_library"
    GOOGLE_BOOKS = "google_books"
    GEMINI = "gemini"
    CLAUDE = "claude"
    OPENAI = "openai"


@dataclass
class ProviderQuery:
    """What we know about a record before enrichment."""
    isbn: Optional[str] = None
    upc: Optional[str] = None
    asin: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None

    @property
    def has_identifiers(self) -> bool:
        return any((self.isbn, self.upc, self.asin, self.title))

    def cache_key(self) -> str:
        parts = [self.isbn, self.upc, self.asin, self.title, self.author]
        return "|".join((p or "").strip().lower() for p in parts)


class EnrichmentProvider(ABC):
    """
    Abstract base class for metadata providers.

    Subclasses set `kind` and implement `call`.
    """

    kind: ProviderKind

    @property
    def name(self) -> str:
        return self.kind.value

    @abstractmethod
    async def call(self, query: ProviderQuery) -> Dict[str, Any]:
        """
        Look up metadata for one record.

        Raises:
            ProviderTimeoutError / ProviderTransportError: retryable failures
            ProviderResponseError / ProviderConfigurationError: terminal failures
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


async def send(client: httpx.AsyncClient, provider: str, method: str, url: str, **kwargs) -> httpx.Response:
    """
    Issue a request and translate transport problems and HTTP status codes
    into the provider error hierarchy.
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise ProviderTimeoutError(f"{provider} request timed out", provider=provider) from e
    except httpx.TransportError as e:
        raise ProviderTransportError(f"{provider} transport error: {type(e).__name__}", provider=provider) from e

    if response.status_code >= 400:
        raise status_error(provider, response.status_code)
    return response


def status_error(provider: str, status: int) -> ProviderError:
    """Map an HTTP error status to the provider error it stands for."""
    if status in RETRYABLE_STATUS_CODES:
        return ProviderTransportError(f"{provider} returned HTTP {status}", provider=provider, status_code=status)
    if status in CONFIGURATION_STATUS_CODES:
        return ProviderConfigurationError(f"{provider} rejected the request (HTTP {status})", provider=provider)
    return ProviderResponseError(f"{provider} returned HTTP {status}", provider=provider)


def response_json(response: httpx.Response, provider: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise ProviderResponseError(f"{provider} returned invalid JSON", provider=provider) from e


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, list):
        value = ", ".join(str(v).strip() for v in value if str(v).strip())
    text = str(value).strip()
    return text or None


def _clean_pages(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None
    match = re.search(r"\d+", str(value))
    return int(match.group()) if match and int(match.group()) > 0 else None


def normalize_metadata(data: Dict[str, Any], provider: str) -> Dict[str, Any]:
    """
    Keep the known fields, trimmed; a result needs a title or an author.

    Raises:
        ProviderResponseError: neither title nor author present
    """
    if not isinstance(data, Mapping):
        raise ProviderResponseError(f"{provider} response is not an object", provider=provider)
    metadata = {name: _clean_text(data.get(name)) for name in METADATA_FIELDS if name != "pages"}
    metadata["pages"] = _clean_pages(data.get("pages"))
    if not metadata.get("title") and not metadata.get("author"):
        raise ProviderResponseError(f"{provider} response has neither title nor author", provider=provider)
    return metadata


_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.IGNORECASE)


def parse_json_payload(text: str, provider: str) -> Dict[str, Any]:
    """Parse a JSON object out of model output, stripping markdown code fences."""
    cleaned = _FENCE.sub("", text or "").strip()
    if not cleaned.startswith("{"):
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise ProviderResponseError(f"{provider} response contains no JSON object", provider=provider)
        cleaned = cleaned[start:end + 1]
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ProviderResponseError(f"{provider} response is not valid JSON", provider=provider) from e
    if not isinstance(payload, dict):
        raise ProviderResponseError(f"{provider} response is not a JSON object", provider=provider)
    return normalize_metadata(payload, provider)
