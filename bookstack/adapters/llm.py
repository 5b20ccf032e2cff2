"""
LLM metadata providers

Used after the catalog APIs, cheapest first (Gemini, Claude, OpenAI by
default). Each asks the model for a JSON object with the normalized metadata
fields and parses it with parse_json_payload (code fences stripped, title or
author required). A provider is only built when its API key is configured.
"""
import logging
from typing import Any, Dict, Optional

import openai
from openai import AsyncOpenAI

from bookstack.adapters.base import (
    EnrichmentProvider, ProviderKind, ProviderQuery, parse_json_payload, response_json, send, status_error,
)
from bookstack.core.exceptions import ProviderResponseError, ProviderTimeoutError, ProviderTransportError
from bookstack.core.http_client import HTTPClientPool

logger = logging.getLogger(__name__)

MAX_OUTPUT_TOKENS = 500
TEMPERATURE = 0.1

SYSTEM_PROMPT = "You are a book metadata expert. Return only valid JSON."

PROMPT_TEMPLATE = """Find metadata for this book: {identifiers}

Return ONLY a JSON object with these fields (no markdown, no explanation):
{{
  "title": "full book title",
  "author": "author name(s)",
  "publisher": "publisher name",
  "description": "2-3 sentence description",
  "genre": "primary genre",
  "pages": number of pages,
  "format": "Hardcover/Paperback/eBook/etc"
}}

If you cannot find accurate information, use null for unknown fields. Do not fabricate data."""


def describe_query(query: ProviderQuery) -> str:
    parts = [
        query.isbn and f"ISBN: {query.isbn}",
        query.upc and f"UPC: {query.upc}",
        query.asin and f"ASIN: {query.asin}",
        query.title and f'Title: "{query.title}"',
        query.author and f"Author: {query.author}",
    ]
    return ", ".join(p for p in parts if p)


def build_prompt(query: ProviderQuery) -> str:
    identifiers = describe_query(query)
    if not identifiers:
        raise ProviderResponseError("No identifiers provided for LLM enrichment")
    return PROMPT_TEMPLATE.format(identifiers=identifiers)


class _LLMProvider(EnrichmentProvider):
    def __init__(self, pool: HTTPClientPool, api_key: str, model: str):
        self._pool = pool
        self._api_key = api_key
        self.model = model

    async def call(self, query: ProviderQuery) -> Dict[str, Any]:
        text = await self._generate(build_prompt(query))
        if not text:
            raise ProviderResponseError(f"Empty {self.name} response", provider=self.name)
        return parse_json_payload(text, self.name)

    async def _generate(self, prompt: str) -> Optional[str]:
        client = await self._pool.get_client(self.name)
        payload = response_json(await self._request(client, prompt), self.name)
        try:
            return self._extract_text(payload)
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderResponseError(f"{self.name} response has unexpected shape", provider=self.name) from e

    async def _request(self, client, prompt: str):
        """POST the prompt, returning the raw response."""
        raise NotImplementedError

    def _extract_text(self, payload: Dict[str, Any]) -> str:
        """Pull the generated text out of the provider envelope."""
        raise NotImplementedError


class GeminiProvider(_LLMProvider):
    kind = ProviderKind.GEMINI
    API_BASE = "https://generativelanguage.googleapis.com/v1beta"

    async def _request(self, client, prompt: str):
        return await send(
            client, self.name, "POST", f"{self.API_BASE}/models/{self.model}:generateContent",
            params={"key": self._api_key},
            json={
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {"temperature": TEMPERATURE, "maxOutputTokens": MAX_OUTPUT_TOKENS},
            },
        )

    def _extract_text(self, payload: Dict[str, Any]) -> str:
        return payload["candidates"][0]["content"]["parts"][0]["text"]


class ClaudeProvider(_LLMProvider):
    kind = ProviderKind.CLAUDE
    API_URL = "https://api.anthropic.com/v1/messages"
    API_VERSION = "2023-06-01"

    async def _request(self, client, prompt: str):
        return await send(
            client, self.name, "POST", self.API_URL,
            headers={"x-api-key": self._api_key, "anthropic-version": self.API_VERSION},
            json={
                "model": self.model,
                "max_tokens": MAX_OUTPUT_TOKENS,
                "messages": [{"role": "user", "content": prompt}],
            },
        )

    def _extract_text(self, payload: Dict[str, Any]) -> str:
        return payload["content"][0]["text"]


class OpenAIProvider(_LLMProvider):
    """
    OpenAI chat completions through the official SDK.

    The SDK rides on the pooled httpx client and never retries on its own;
    its exceptions are mapped onto the provider error hierarchy.
    """
    kind = ProviderKind.OPENAI

    def __init__(self, pool: HTTPClientPool, api_key: str, model: str):
        super().__init__(pool, api_key, model)
        self._sdk: Optional[AsyncOpenAI] = None

    async def _get_sdk(self) -> AsyncOpenAI:
        if self._sdk is None:
            self._sdk = AsyncOpenAI(
                api_key=self._api_key,
                http_client=await self._pool.get_client(self.name),
                max_retries=0,
            )
        return self._sdk

    async def _generate(self, prompt: str) -> Optional[str]:
        client = await self._get_sdk()
        try:
            completion = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=TEMPERATURE,
                max_tokens=MAX_OUTPUT_TOKENS,
            )
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError(f"{self.name} request timed out", provider=self.name) from e
        except openai.APIConnectionError as e:
            raise ProviderTransportError(f"{self.name} transport error: {type(e).__name__}", provider=self.name) from e
        except openai.APIStatusError as e:
            raise status_error(self.name, e.status_code) from e
        except openai.APIResponseValidationError as e:
            raise ProviderResponseError(f"{self.name} response has unexpected shape", provider=self.name) from e

        try:
            return completion.choices[0].message.content
        except (IndexError, AttributeError, TypeError) as e:
            raise ProviderResponseError(f"{self.name} response has unexpected shape", provider=self.name) from e
