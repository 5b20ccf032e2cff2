"""
HTTP client pool for enrichment providers.

One httpx.AsyncClient per provider, reused across records so TCP/TLS
connections stay warm. The pool belongs to a pipeline instance and is closed
with it.
"""
import asyncio
import logging
from typing import Dict, Optional

import httpx

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 15.0
USER_AGENT = "BookstackIntake/1.0"


class HTTPClientPool:
    """
    Manages a pool of HTTP clients for connection reuse.

    Args:
        timeout: Default client timeout in seconds
        transport: Optional transport shared by every client (httpx.MockTransport in tests)
    """

    def __init__(self, timeout: float = HTTP_TIMEOUT_SECONDS, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._timeout = timeout
        self._transport = transport
        self._clients: Dict[str, httpx.AsyncClient] = {}
        self._lock = asyncio.Lock()

    async def get_client(self, source_name: str) -> httpx.AsyncClient:
        """Get or create an HTTP client for a source."""
        async with self._lock:
            if source_name not in self._clients:
                self._clients[source_name] = httpx.AsyncClient(
                    timeout=self._timeout,
                    headers={"User-Agent": f"{USER_AGENT} ({source_name})"},
                    follow_redirects=True,
                    limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                    transport=self._transport,
                )
                logger.debug(f"[HTTPPool] Created client for {source_name}")
            return self._clients[source_name]

    async def close_all(self):
        """Close all HTTP clients."""
        async with self._lock:
            for source_name, client in self._clients.items():
                try:
                    await client.aclose()
                    logger.debug(f"[HTTPPool] Closed client for {source_name}")
                except httpx.HTTPError as e:
                    logger.warning(f"[HTTPPool] Error closing client for {source_name}: {e}")
            self._clients.clear()
