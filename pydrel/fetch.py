"""
pydrel.fetch
============
The remote side of :meth:`RelationalModel.get_async` and of the
``fetch`` coroutines on models and collections.

Anything with an ``async fetch(url)`` coroutine returning decoded JSON
satisfies :class:`Fetcher`; :class:`HttpFetcher` is the stock
implementation over :class:`httpx.AsyncClient`.
"""

from typing import Any, Dict, Optional, Protocol, runtime_checkable

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from . import settings


class FetchError(RuntimeError):
    """A remote fetch failed, or no fetcher was configured for it."""


@runtime_checkable
class Fetcher(Protocol):
    async def fetch(self, url: str) -> Any: ...


class HttpFetcher(BaseModel):
    """
    GET-and-decode fetcher.

    ``transport`` is handed to :class:`httpx.AsyncClient` as-is, which is
    how tests plug in :class:`httpx.MockTransport`.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    base_url: str = ""
    timeout: float = Field(default_factory=lambda: settings.DEFAULT_FETCH_TIMEOUT)
    headers: Dict[str, str] = Field(default_factory=dict)
    transport: Optional[httpx.AsyncBaseTransport] = None

    def setup_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=self.headers,
            transport=self.transport,
        )

    async def fetch(self, url: str) -> Any:
        """
        GET ``url`` (relative to ``base_url``) and return the JSON body.

        Transport failures and non-2xx responses raise :class:`FetchError`.
        """
        async with self.setup_client() as client:
            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.debug("GET {} failed: {}", url, exc)
                raise FetchError(f"GET {url} failed: {exc}") from exc
            return response.json()


def resolve_fetcher(explicit: Optional[Fetcher], *owners: Any) -> Fetcher:
    """
    Return ``explicit`` or the first ``fetcher`` configured on ``owners``
    (instances, collections or classes, in priority order).
    """
    if explicit is not None:
        return explicit
    for owner in owners:
        fetcher = getattr(owner, "fetcher", None) if owner is not None else None
        if fetcher is not None:
            return fetcher
    raise FetchError("No fetcher configured; pass fetcher=... or set a class-level 'fetcher'")
