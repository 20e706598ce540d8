import logging
from typing import Callable, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

ClientFactory = Callable[[], httpx.AsyncClient]


def build_client_factory(user_agent: str, timeout: float = DEFAULT_TIMEOUT,
                         max_connections: int = 10,
                         transport: Optional[httpx.AsyncBaseTransport] = None) -> ClientFactory:
    """Return a callable producing configured AsyncClients (one per stage run)."""

    def factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"User-Agent": user_agent},
            timeout=timeout,
            follow_redirects=True,
            limits=httpx.Limits(max_connections=max_connections),
            transport=transport,
        )

    return factory


async def fetch_with_timeout(client: httpx.AsyncClient, url: str,
                             timeout: float = DEFAULT_TIMEOUT) -> httpx.Response:
    """GET ``url``; the request is cancelled once ``timeout`` seconds elapse.

    Raises httpx.TimeoutException on timeout and httpx.HTTPError for other
    transport failures. Non-2xx responses are returned, not raised.
    """
    return await client.get(url, timeout=httpx.Timeout(timeout))
