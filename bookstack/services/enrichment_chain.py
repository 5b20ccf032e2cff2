"""
Enrichment Fallback Chain

Walks an ordered list of providers (cheapest/fastest first) until one returns
usable metadata:

    for each provider:
        circuit open?            -> skip, try the next one
        call with retry ladder   -> retryable errors back off 1s, 2s, 4s ...
        success                  -> tag with provider name, stop
        failure                  -> record the attempt, try the next one
    all failed                   -> degraded result built from the caller's data

enrich() never raises and never returns None. Successful results are cached
per chain instance.
"""
import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from bookstack.adapters.base import EnrichmentProvider, ProviderQuery, normalize_metadata
from bookstack.core.circuit_breaker import CircuitBreakerRegistry
from bookstack.core.exceptions import (
    BookstackError, CircuitOpenError, ProviderResponseError, is_retryable,
)
from bookstack.core.metadata_cache import MetadataCache
from bookstack.core.retry import RetryPolicy, call_with_timeout, with_retry

logger = logging.getLogger(__name__)


class EnrichmentStatus(str, Enum):
    COMPLETED = "completed"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class ProviderAttempt:
    provider: str
    attempts: int
    error: Optional[str] = None
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.skipped


@dataclass
class EnrichedMetadata:
    title: Optional[str] = None
    author: Optional[str] = None
    publisher: Optional[str] = None
    description: Optional[str] = None
    genre: Optional[str] = None
    pages: Optional[int] = None
    format: Optional[str] = None
    cover_url: Optional[str] = None
    source: Optional[str] = None
    status: EnrichmentStatus = EnrichmentStatus.DEGRADED
    error: Optional[str] = None
    attempts: List[ProviderAttempt] = field(default_factory=list)

    def attempts_for(self, provider: str) -> int:
        return sum(a.attempts for a in self.attempts if a.provider == provider)


def counts_as_provider_failure(error: BaseException) -> bool:
    """A "not found" or unusable payload says nothing about provider health."""
    return not isinstance(error, ProviderResponseError)


def _should_retry(error: BaseException) -> bool:
    # Retrying against an open circuit cannot succeed
    return is_retryable(error) and not isinstance(error, CircuitOpenError)


class EnrichmentChain:
    def __init__(
        self,
        providers: List[EnrichmentProvider],
        breakers: Optional[CircuitBreakerRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cache: Optional[MetadataCache] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.providers = list(providers)
        self.breakers = breakers or CircuitBreakerRegistry(counts_as_failure=counts_as_provider_failure)
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache = cache
        self._sleep = sleep

    def _degraded(self, query: ProviderQuery, status: EnrichmentStatus, error: str,
                  attempts: List[ProviderAttempt], caller: Optional[Dict[str, Any]] = None) -> EnrichedMetadata:
        caller = caller or {}
        return EnrichedMetadata(
            title=query.title,
            author=query.author,
            publisher=caller.get("publisher"),
            description=caller.get("description"),
            genre=caller.get("genre"),
            format=caller.get("format"),
            status=status,
            error=error,
            attempts=attempts,
        )

    async def enrich(self, query: ProviderQuery, caller: Optional[Dict[str, Any]] = None) -> EnrichedMetadata:
        """
        Look up metadata for one record.

        Args:
            query: identifiers plus caller-supplied title/author
            caller: other caller-supplied fields (publisher, genre ...) kept on a degraded result
        """
        if not query.has_identifiers:
            return self._degraded(
                query, EnrichmentStatus.FAILED, "No identifiers provided for enrichment", [], caller,
            )

        cache_key = query.cache_key()
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug(f"[Enrichment] Cache hit for {cache_key}")
                return replace(cached, attempts=[])

        attempts: List[ProviderAttempt] = []
        last_error: Optional[str] = None

        for provider in self.providers:
            breaker = self.breakers.get(provider.name)
            if not breaker.is_call_permitted():
                last_error = f"{provider.name}: circuit open"
                attempts.append(ProviderAttempt(provider.name, 0, "circuit open", skipped=True))
                logger.info(f"[Enrichment] Skipping {provider.name}: circuit {breaker.state.value}")
                continue

            calls = 0

            async def attempt(provider=provider, breaker=breaker):
                nonlocal calls
                calls += 1
                return await breaker.execute(
                    call_with_timeout, provider.call, query,
                    timeout=self.retry_policy.timeout_seconds, label=provider.name,
                )

            try:
                data = await with_retry(
                    attempt, self.retry_policy, label=provider.name,
                    should_retry=_should_retry, sleep=self._sleep,
                )
                # A payload without title or author counts as a provider miss
                data = normalize_metadata(data, provider.name)
            except BookstackError as e:
                last_error = f"{provider.name}: {e.message}"
                attempts.append(ProviderAttempt(provider.name, calls, e.message))
                logger.info(f"[Enrichment] {provider.name} failed after {calls} attempt(s): {e.message}")
                continue
            except Exception as e:
                # Unexpected provider errors fall through to the next provider
                last_error = f"{provider.name}: {type(e).__name__}"
                attempts.append(ProviderAttempt(provider.name, calls, f"{type(e).__name__}: {e}"))
                logger.exception(f"[Enrichment] {provider.name} raised unexpectedly")
                continue

            attempts.append(ProviderAttempt(provider.name, calls))
            result = EnrichedMetadata(
                title=data.get("title"),
                author=data.get("author"),
                publisher=data.get("publisher"),
                description=data.get("description"),
                genre=data.get("genre"),
                pages=data.get("pages"),
                format=data.get("format"),
                cover_url=data.get("cover_url"),
                source=provider.name,
                status=EnrichmentStatus.COMPLETED,
                attempts=attempts,
            )
            if self.cache is not None:
                self.cache.set(cache_key, result)
            logger.info(f"[Enrichment] {cache_key} enriched via {provider.name}")
            return result

        error = last_error or "No enrichment providers enabled"
        logger.warning(f"[Enrichment] All providers failed for {cache_key}: {error}")
        return self._degraded(query, EnrichmentStatus.DEGRADED, error, attempts, caller)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "providers": [p.name for p in self.providers],
            "circuits": self.breakers.get_metrics(),
            "cache": self.cache.get_stats() if self.cache is not None else None,
        }
