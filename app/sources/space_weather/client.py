"""
Space weather adapters.

NOAA SWPC planetary K-index (1-minute feed):
https://services.swpc.noaa.gov/json/planetary_k_index_1m.json
    [{"time_tag": "2024-05-10T17:00:00", "Kp": 8.0, "estimated_Kp": 8.33}, ...]
Kp falls back to estimated_Kp when absent.

NASA DONKI coronal mass ejections:
https://api.nasa.gov/DONKI/CME?startDate=YYYY-MM-DD&endDate=YYYY-MM-DD&api_key=...
    [{"activityID", "startTime": "2024-05-08T05:36Z", "sourceLocation",
      "catalog", "cmeAnalyses": [{"speed", "type"}, ...]}, ...]
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from app.core.api_errors import ParseError
from app.core.http_client import UpstreamResponse
from app.core.observations import (
    HazardDomain,
    SpaceWeatherQuery,
    SpaceWeatherRecord,
    as_utc,
    dump_payload,
    utcnow,
)
from app.core.source_adapter import SourceAdapter

logger = logging.getLogger(__name__)

KP_METRIC = "kp_index"
CME_METRIC = "cme"

# How far back the Kp fallback looks for stored samples
KP_FALLBACK_HOURS = 3


def parse_time(value: str) -> datetime:
    """ISO-8601 timestamp from SWPC/DONKI; a trailing Z or no offset means UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def _list_body(response: UpstreamResponse, source: str) -> List[Any]:
    if not isinstance(response.data, list):
        raise ParseError(message="Response is not a JSON array", source=source)
    return response.data


class _SpaceWeatherAdapter(SourceAdapter[SpaceWeatherQuery]):
    DOMAIN = HazardDomain.SPACE_WEATHER
    METRIC: str = ""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(
            base_url=base_url,
            max_concurrency=2,
            timeout=timeout,
            connect_timeout=connect_timeout,
            transport=transport,
        )
        self._clock = clock

    def extract_elements(self, response: UpstreamResponse, query: SpaceWeatherQuery) -> List[Any]:
        return _list_body(response, self.SOURCE_NAME)

    def _cached_since(self, store, since: datetime) -> List[SpaceWeatherRecord]:
        return [
            rec for rec in store.find_recent_since(self.DOMAIN, since)
            if rec.metric_type == self.METRIC
        ]


class KpIndexAdapter(_SpaceWeatherAdapter):
    """Planetary K-index samples from NOAA SWPC."""

    SOURCE_NAME = "noaa_swpc_kp"
    BASE_URL = "https://services.swpc.noaa.gov/json/planetary_k_index_1m.json"
    METRIC = KP_METRIC

    @classmethod
    def from_settings(cls, settings, transport=None) -> "KpIndexAdapter":
        return cls(
            base_url=settings.noaa_kp_index_url,
            timeout=settings.space_weather_timeout,
            connect_timeout=settings.connect_timeout,
            transport=transport,
        )

    def describe(self, query: SpaceWeatherQuery) -> str:
        return "planetary Kp"

    def build_request(self, query: SpaceWeatherQuery) -> Tuple[str, Dict[str, Any]]:
        return "", {}

    def parse_element(
        self, element: Dict[str, Any], response: UpstreamResponse, query: SpaceWeatherQuery
    ) -> SpaceWeatherRecord:
        time_tag = self.require(element, "time_tag", "Kp sample")
        estimated = element.get("estimated_Kp")
        kp = element.get("Kp")
        if kp is None:
            kp = estimated
        if kp is None:
            raise ParseError(
                message=f"Kp sample {time_tag} has neither Kp nor estimated_Kp",
                source=self.SOURCE_NAME,
                element=element,
            )

        return SpaceWeatherRecord(
            natural_key=f"kp:{time_tag}",
            domain=self.DOMAIN,
            provider=self.SOURCE_NAME,
            observed_at=parse_time(time_tag),
            collected_at=utcnow(),
            raw_payload=dump_payload(element),
            metric_type=KP_METRIC,
            index_value=float(kp),
            estimated_kp=float(estimated) if estimated is not None else None,
        )

    def load_cached(self, store, query: SpaceWeatherQuery) -> List[SpaceWeatherRecord]:
        return self._cached_since(store, self._clock() - timedelta(hours=KP_FALLBACK_HOURS))


class CMEAdapter(_SpaceWeatherAdapter):
    """Coronal mass ejections from NASA DONKI."""

    SOURCE_NAME = "nasa_donki_cme"
    BASE_URL = "https://api.nasa.gov/DONKI"
    METRIC = CME_METRIC

    def __init__(self, api_key: str = "DEMO_KEY", **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key

    @classmethod
    def from_settings(cls, settings, transport=None) -> "CMEAdapter":
        return cls(
            api_key=settings.nasa_api_key,
            base_url=settings.nasa_donki_base_url,
            timeout=settings.space_weather_timeout,
            connect_timeout=settings.connect_timeout,
            transport=transport,
        )

    def describe(self, query: SpaceWeatherQuery) -> str:
        return f"CME {query.describe()}"

    def build_request(self, query: SpaceWeatherQuery) -> Tuple[str, Dict[str, Any]]:
        today = self._clock().date()
        return "CME", {
            "startDate": (today - timedelta(days=query.days)).isoformat(),
            "endDate": today.isoformat(),
            "api_key": self.api_key,
        }

    def parse_element(
        self, element: Dict[str, Any], response: UpstreamResponse, query: SpaceWeatherQuery
    ) -> SpaceWeatherRecord:
        activity_id = self.require(element, "activityID", "CME")
        start_time = self.require(element, "startTime", "CME")

        analyses = element.get("cmeAnalyses") or []
        first = analyses[0] if analyses else {}
        speed = first.get("speed")

        return SpaceWeatherRecord(
            natural_key=str(activity_id),
            domain=self.DOMAIN,
            provider=self.SOURCE_NAME,
            observed_at=parse_time(start_time),
            collected_at=utcnow(),
            raw_payload=dump_payload(element),
            metric_type=CME_METRIC,
            speed_km_s=float(speed) if speed is not None else None,
            cme_type=first.get("type"),
            source_location=element.get("sourceLocation") or None,
            catalog=element.get("catalog"),
        )

    def load_cached(self, store, query: SpaceWeatherQuery) -> List[SpaceWeatherRecord]:
        return self._cached_since(store, self._clock() - timedelta(days=query.days))
