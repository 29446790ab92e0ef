"""
Source adapter contract.

An adapter turns one provider query into a finite, lazy sequence of
ObservationRecords:

    records = await adapter.fetch(query)   # one HTTP GET, may raise NetworkError/ParseError
    for record in records:                 # elements parsed one at a time
        ...

Calling fetch() again re-queries upstream; the returned iterator is not a
persistent cursor. An element that fails to parse is logged and skipped,
the rest of the batch continues.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar

from app.core.api_errors import ParseError
from app.core.http_client import BaseAPIClient, UpstreamResponse
from app.core.observations import HazardDomain, ObservationRecord

logger = logging.getLogger(__name__)

Q = TypeVar("Q")


class SourceAdapter(BaseAPIClient, ABC, Generic[Q]):
    """
    Base class for provider adapters.

    Subclasses implement:
    - build_request(): (url, params) for a query
    - extract_elements(): list of upstream elements from a decoded body
    - parse_element(): one ObservationRecord (or None to skip silently)
    - load_cached(): fallback records for the query scope
    """

    DOMAIN: HazardDomain

    @abstractmethod
    def build_request(self, query: Q) -> Tuple[str, Dict[str, Any]]:
        """Return (url or path, query params) for the provider."""

    @abstractmethod
    def extract_elements(self, response: UpstreamResponse, query: Q) -> Iterable[Any]:
        """
        Pull the element list out of a decoded body.

        Raises:
            ParseError: The body does not have the documented structure
        """

    @abstractmethod
    def parse_element(
        self, element: Any, response: UpstreamResponse, query: Q
    ) -> Optional[ObservationRecord]:
        """Map one upstream element to a record."""

    @abstractmethod
    def load_cached(self, store, query: Q) -> List[ObservationRecord]:
        """Most recent stored observations for the same query scope."""

    def describe(self, query: Q) -> str:
        describe = getattr(query, "describe", None)
        return describe() if callable(describe) else repr(query)

    def scope_key(self, query: Q) -> str:
        """Key used to address the query scope in logs and fan-out results."""
        return self.describe(query)

    async def fetch(self, query: Q) -> Iterator[ObservationRecord]:
        """
        Query upstream and return a lazy iterator of records.

        Raises:
            NetworkError: Upstream unreachable or non-2xx
            ParseError: Response body unusable as a whole
        """
        url, params = self.build_request(query)
        response = await self.get(url, params=params, resource_id=self.describe(query))
        elements = self.extract_elements(response, query)
        return self._iter_records(elements, response, query)

    def _iter_records(
        self, elements: Iterable[Any], response: UpstreamResponse, query: Q
    ) -> Iterator[ObservationRecord]:
        parsed = 0
        dropped = 0
        for element in elements:
            try:
                record = self.parse_element(element, response, query)
            except (ParseError, KeyError, IndexError, TypeError, ValueError) as e:
                dropped += 1
                logger.warning(
                    f"[{self.SOURCE_NAME}] Dropping unparseable element "
                    f"({self.describe(query)}): {e}"
                )
                continue
            if record is None:
                continue
            parsed += 1
            yield record

        logger.info(
            f"[{self.SOURCE_NAME}] Parsed {parsed} records for {self.describe(query)}"
            + (f", dropped {dropped}" if dropped else "")
        )

    def require(self, mapping: Dict[str, Any], key: str, what: str = "element") -> Any:
        """Fetch a mandatory field, raising ParseError when it is missing."""
        value = mapping.get(key) if isinstance(mapping, dict) else None
        if value is None:
            raise ParseError(
                message=f"{what} is missing required field '{key}'",
                source=self.SOURCE_NAME,
                element=mapping,
            )
        return value
