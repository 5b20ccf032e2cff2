"""
Provider registry

Builds the ordered provider list from settings. The order comes from
ENRICHMENT_PROVIDER_ORDER (already validated at settings load); disabled or
unconfigured providers are left out.
"""
import logging
from typing import Callable, Dict, List

from bookstack.adapters.base import EnrichmentProvider, ProviderKind
from bookstack.adapters.catalog import GoogleBooksProvider, OpenLibraryProvider
from bookstack.adapters.llm import ClaudeProvider, GeminiProvider, OpenAIProvider
from bookstack.core.http_client import HTTPClientPool

logger = logging.getLogger(__name__)


def _factories(settings, pool: HTTPClientPool) -> Dict[ProviderKind, Callable[[], EnrichmentProvider]]:
    return {
        ProviderKind.OPEN_LIBRARY: lambda: OpenLibraryProvider(pool, settings.OPEN_LIBRARY_API_BASE),
        ProviderKind.GOOGLE_BOOKS: lambda: GoogleBooksProvider(
            pool, settings.GOOGLE_BOOKS_API_BASE, settings.GOOGLE_BOOKS_API_KEY,
        ),
        ProviderKind.GEMINI: lambda: GeminiProvider(pool, settings.GEMINI_API_KEY, settings.GEMINI_MODEL),
        ProviderKind.CLAUDE: lambda: ClaudeProvider(pool, settings.ANTHROPIC_API_KEY, settings.CLAUDE_MODEL),
        ProviderKind.OPENAI: lambda: OpenAIProvider(pool, settings.OPENAI_API_KEY, settings.OPENAI_MODEL),
    }


def build_providers(settings, pool: HTTPClientPool) -> List[EnrichmentProvider]:
    factories = _factories(settings, pool)
    providers = []
    for kind in settings.ENRICHMENT_PROVIDER_ORDER:
        if not settings.provider_enabled(kind):
            logger.info(f"[Enrichment] Provider {kind.value} disabled or missing API key")
            continue
        providers.append(factories[kind]())
    logger.info(f"[Enrichment] Provider chain: {[p.name for p in providers] or 'none'}")
    return providers
