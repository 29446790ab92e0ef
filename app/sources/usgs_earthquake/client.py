"""
USGS FDSN event service adapter.

Official documentation:
https://earthquake.usgs.gov/fdsnws/event/1/

Query shapes:
- recent: starttime = now - hours, minmagnitude
- significant: same, defaults 168 hours / M6.0
- location: latitude/longitude/maxradiuskm over the last 30 days
  (radius given in degrees, converted at 111 km/degree)

Response (GeoJSON FeatureCollection), fields used per feature:
- id
- properties: mag, magType, place, time (epoch ms), tsunami (1 = flag set),
  alert, sig, felt, mmi, net, url
- geometry.coordinates: [longitude, latitude, depth_km]
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from app.core.api_errors import ParseError
from app.core.http_client import UpstreamResponse
from app.core.observations import (
    EarthquakeQuery,
    HazardDomain,
    SeismicRecord,
    dump_payload,
    utcnow,
)
from app.core.source_adapter import SourceAdapter

logger = logging.getLogger(__name__)

QUERY_PATH = "fdsnws/event/1/query"
TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


def extract_region(place: Optional[str]) -> str:
    """
    Region from a USGS place string.

    "10 km SSW of Ridgecrest, CA" -> "CA"; a string without a comma is
    returned whole; no place at all gives "Unknown".
    """
    if not place or not place.strip():
        return "Unknown"
    if "," in place:
        return place.rsplit(",", 1)[1].strip() or "Unknown"
    return place.strip()


def _float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def longitude_ranges(longitude: float, radius: float) -> List[Tuple[float, float]]:
    """
    Longitude spans covered by longitude +/- radius.

    A box crossing the antimeridian is split in two.
    """
    west, east = longitude - radius, longitude + radius
    if east - west >= 360:
        return [(-180.0, 180.0)]
    if west < -180:
        return [(west + 360, 180.0), (-180.0, east)]
    if east > 180:
        return [(west, 180.0), (-180.0, east - 360)]
    return [(west, east)]


class USGSEarthquakeAdapter(SourceAdapter[EarthquakeQuery]):
    """Seismic events from the USGS FDSN event service."""

    SOURCE_NAME = "usgs_earthquake"
    BASE_URL = "https://earthquake.usgs.gov"
    DOMAIN = HazardDomain.SEISMIC

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        connect_timeout: float = 10.0,
        max_concurrency: int = 4,
        fallback_hours: int = 24,
        location_lookback_days: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(
            base_url=base_url,
            max_concurrency=max_concurrency,
            timeout=timeout,
            connect_timeout=connect_timeout,
            transport=transport,
        )
        self.fallback_hours = fallback_hours
        self.location_lookback_days = location_lookback_days
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, transport=None) -> "USGSEarthquakeAdapter":
        return cls(
            base_url=settings.usgs_earthquake_base_url,
            timeout=settings.usgs_earthquake_timeout,
            connect_timeout=settings.connect_timeout,
            fallback_hours=settings.earthquake_fallback_hours,
            location_lookback_days=settings.location_lookback_days,
            transport=transport,
        )

    def build_request(self, query: EarthquakeQuery) -> Tuple[str, Dict[str, Any]]:
        now = self._clock()
        if query.is_location:
            start = now - timedelta(days=self.location_lookback_days)
        else:
            start = now - timedelta(hours=query.hours)

        params: Dict[str, Any] = {
            "format": "geojson",
            "starttime": start.strftime(TIME_FORMAT),
            "minmagnitude": query.min_magnitude,
            "orderby": "time",
        }
        if query.is_location:
            params["latitude"] = query.latitude
            params["longitude"] = query.longitude
            params["maxradiuskm"] = round(query.radius_km, 3)
        return QUERY_PATH, params

    def extract_elements(self, response: UpstreamResponse, query: EarthquakeQuery) -> List[Any]:
        data = response.data
        features = data.get("features") if isinstance(data, dict) else None
        if not isinstance(features, list):
            raise ParseError(
                message="GeoJSON response has no 'features' list",
                source=self.SOURCE_NAME,
            )
        return features

    def parse_element(
        self, element: Dict[str, Any], response: UpstreamResponse, query: EarthquakeQuery
    ) -> SeismicRecord:
        event_id = self.require(element, "id", "feature")
        props = self.require(element, "properties", "feature")
        event_time = self.require(props, "time", "feature properties")

        coordinates = (element.get("geometry") or {}).get("coordinates") or []
        longitude = _float(coordinates[0]) if len(coordinates) > 0 else None
        latitude = _float(coordinates[1]) if len(coordinates) > 1 else None
        depth_km = _float(coordinates[2]) if len(coordinates) > 2 else None

        place = props.get("place")
        mmi = props.get("mmi")

        return SeismicRecord(
            natural_key=str(event_id),
            domain=HazardDomain.SEISMIC,
            provider=self.SOURCE_NAME,
            observed_at=datetime.fromtimestamp(int(event_time) / 1000.0, tz=timezone.utc),
            collected_at=utcnow(),
            raw_payload=dump_payload(element),
            magnitude=_float(props.get("mag")),
            magnitude_type=props.get("magType"),
            depth_km=depth_km,
            latitude=latitude,
            longitude=longitude,
            place=place,
            region=extract_region(place),
            tsunami_warning=props.get("tsunami") == 1,
            alert_level=props.get("alert"),
            significance=_int(props.get("sig")),
            felt_reports=_int(props.get("felt")),
            max_intensity=str(mmi) if mmi is not None else None,
            network=props.get("net"),
            event_url=props.get("url"),
        )

    def load_cached(self, store, query: EarthquakeQuery) -> List[SeismicRecord]:
        since = self._clock() - timedelta(hours=self.fallback_hours)
        if query.is_location:
            r = query.radius_degrees
            min_lat = max(-90.0, query.latitude - r)
            max_lat = min(90.0, query.latitude + r)
            records: List[SeismicRecord] = []
            for west, east in longitude_ranges(query.longitude, r):
                records.extend(
                    store.find_in_bounding_box(
                        self.DOMAIN, min_lat, max_lat, west, east, since=since
                    )
                )
            records.sort(key=lambda rec: rec.observed_at, reverse=True)
            return [
                rec for rec in records
                if rec.magnitude is not None and rec.magnitude >= query.min_magnitude
            ]
        return store.find_recent_since(self.DOMAIN, since, min_magnitude=query.min_magnitude)
