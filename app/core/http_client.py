"""
Base HTTP client shared by every upstream source adapter.

Provides bounded concurrency, finite timeouts and standardized error
classification. Request pacing comes from the fan-out dispatch delay.
A single call makes exactly one attempt: retry and circuit breaking are
applied around adapter calls by app.core.resilience.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.core.api_errors import NetworkError, ParseError, classify_http_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpstreamResponse:
    """Parsed JSON body plus the verbatim text it came from."""

    data: Any
    text: str
    url: str


class BaseAPIClient:
    """
    Base class for all upstream API clients.

    Provides unified:
    - Single-attempt GET requests returning parsed JSON
    - Bounded concurrency via semaphore
    - Non-2xx / connection failures mapped to NetworkError
    - Undecodable bodies mapped to ParseError
    - Connection pooling

    Subclasses should:
    - Set SOURCE_NAME and BASE_URL class attributes
    - Implement API-specific methods that call get()
    """

    # Override in subclass
    SOURCE_NAME: str = "unknown"
    BASE_URL: str = ""

    # Default settings
    DEFAULT_MAX_CONCURRENCY: int = 4
    DEFAULT_TIMEOUT: float = 30.0
    DEFAULT_CONNECT_TIMEOUT: float = 10.0

    def __init__(
        self,
        base_url: Optional[str] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the API client.

        Args:
            base_url: Override for BASE_URL
            max_concurrency: Maximum concurrent requests (semaphore size)
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url or self.BASE_URL
        self.max_concurrency = max_concurrency
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._transport = transport

        self.semaphore = asyncio.Semaphore(max_concurrency)

        # HTTP client (lazy initialization)
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(
            f"Initialized {self.SOURCE_NAME} client: "
            f"base_url={self.base_url}, "
            f"max_concurrency={max_concurrency}, "
            f"timeout={timeout}s"
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                follow_redirects=True,
                transport=self._transport,
                limits=httpx.Limits(
                    max_connections=self.max_concurrency * 2,
                    max_keepalive_connections=self.max_concurrency
                )
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.debug(f"{self.SOURCE_NAME} client closed")

    def _build_headers(self) -> Dict[str, str]:
        """
        Build request headers.

        Override to add API-specific headers.
        """
        return {
            "Accept": "application/json",
            "User-Agent": f"HazardDataCollector/{self.SOURCE_NAME}-client"
        }

    def _build_url(self, url: str) -> str:
        if url.startswith("http"):
            return url
        if not url:
            return self.base_url
        return f"{self.base_url.rstrip('/')}/{url.lstrip('/')}"

    async def get(
        self,
        url: str = "",
        params: Optional[Dict[str, Any]] = None,
        resource_id: str = "unknown",
    ) -> UpstreamResponse:
        """
        Make one GET request and decode the JSON body.

        Args:
            url: Full URL or path (BASE_URL is prepended to paths)
            params: Query parameters
            resource_id: Identifier for logging

        Returns:
            UpstreamResponse with parsed data and raw text

        Raises:
            NetworkError: Non-2xx status, timeout or connection failure
            ParseError: Body is not valid JSON
        """
        full_url = self._build_url(url)

        async with self.semaphore:
            client = await self._get_client()

            logger.debug(f"[{self.SOURCE_NAME}] GET {resource_id}")
            try:
                response = await client.get(
                    full_url, params=params, headers=self._build_headers()
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise classify_http_error(
                    e.response.status_code,
                    e.response.text[:500],
                    self.SOURCE_NAME,
                ) from e
            except httpx.TimeoutException as e:
                raise NetworkError(
                    message=f"Timed out fetching {resource_id}: {e}",
                    source=self.SOURCE_NAME,
                ) from e
            except httpx.RequestError as e:
                raise NetworkError(
                    message=f"Request failed for {resource_id}: {e}",
                    source=self.SOURCE_NAME,
                ) from e

        text = response.text
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ParseError(
                message=f"Response for {resource_id} is not valid JSON: {e}",
                source=self.SOURCE_NAME,
            ) from e

        logger.debug(f"[{self.SOURCE_NAME}] Successfully fetched {resource_id}")
        return UpstreamResponse(data=data, text=text, url=str(response.url))
