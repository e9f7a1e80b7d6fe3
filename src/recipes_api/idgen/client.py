"""HTTP client for the identity allocation service.

The service answers ``GET {host}{path}`` with ``{"id": <int>}``.  Any
non-success status, transport failure or malformed body is an
:class:`AllocationError`; callers must not persist anything in that case.

Usage::

    async with IdGeneratorClient("http://idgen:3001", "/api/v1/id") as idgen:
        recipe_id = await idgen.request_id()
"""

from __future__ import annotations

import logging

import httpx

from recipes_api.core.config import IdGeneratorConfig
from recipes_api.core.errors import AllocationError
from recipes_api.observability.metrics import record_allocation_failure

logger = logging.getLogger(__name__)


class IdGeneratorClient:
    """Request globally unique recipe ids from the allocation service.

    Parameters
    ----------
    host:
        Base URL of the service, e.g. ``"http://idgen:3001"``.
    path:
        Endpoint path, e.g. ``"/api/v1/id"``.
    timeout:
        HTTP request timeout in seconds.
    transport:
        Optional ``httpx`` transport, used by tests to stub the service.
    """

    def __init__(
        self,
        host: str,
        path: str,
        *,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = IdGeneratorConfig(host=host, path=path, timeout=timeout)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(
        cls,
        config: IdGeneratorConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> IdGeneratorClient:
        return cls(
            config.host,
            config.path,
            timeout=config.timeout,
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._config.url

    # -- Lifecycle -----------------------------------------------------------

    async def open(self) -> None:
        """Create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout),
                transport=self._transport,
            )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> IdGeneratorClient:
        await self.open()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- Allocation ----------------------------------------------------------

    async def request_id(self) -> int:
        """Allocate one id.

        Raises
        ------
        AllocationError
            The service could not be reached, answered with a non-success
            status, or returned a body without an integer ``id``.
        """
        if self._client is None:
            await self.open()
        assert self._client is not None

        try:
            response = await self._client.get(self.url)
        except httpx.HTTPError as exc:
            record_allocation_failure()
            raise AllocationError(
                f"Could not reach id generator at {self.url}: {exc}"
            ) from exc

        if not response.is_success:
            record_allocation_failure()
            raise AllocationError(
                f"Id generator at {self.url} answered {response.status_code}",
                status_code=response.status_code,
            )

        try:
            recipe_id = response.json()["id"]
        except (ValueError, KeyError, TypeError) as exc:
            record_allocation_failure()
            raise AllocationError(
                f"Id generator at {self.url} returned an unusable body",
                status_code=response.status_code,
            ) from exc

        if isinstance(recipe_id, bool) or not isinstance(recipe_id, int):
            record_allocation_failure()
            raise AllocationError(
                f"Id generator returned non-integer id {recipe_id!r}",
                status_code=response.status_code,
            )

        logger.debug("Allocated recipe id %d", recipe_id)
        return recipe_id
