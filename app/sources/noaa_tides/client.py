"""
NOAA CO-OPS Tides & Currents adapter.

Official documentation:
https://api.tidesandcurrents.noaa.gov/api/prod/

One request per station:
    datagetter?station=8518750&product=water_level&datum=MLLW&units=metric
              &time_zone=gmt&format=json&date=latest&application=...

Response:
    {"metadata": {"id", "name", "lat", "lon"},
     "data": [{"t": "YYYY-MM-DD HH:MM", "v": "1.234", "s", "f", "q"}]}

An unknown station or a station without recent data answers 200 with
{"error": {"message": ...}}; that is treated as an unusable body.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from app.core.api_errors import ParseError
from app.core.http_client import UpstreamResponse
from app.core.observations import (
    HazardDomain,
    StationQuery,
    WaterLevelRecord,
    flood_stage_fields,
    utcnow,
)
from app.core.source_adapter import SourceAdapter
from app.sources.noaa_tides.metadata import (
    DATUM,
    FEET_PER_METER,
    LOCATION_TYPE,
    PRODUCT,
    TIDE_STATION_NAMES,
    TIME_ZONE,
    UNITS,
)

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M"


class NOAATidesAdapter(SourceAdapter[StationQuery]):
    """Latest coastal water level per station."""

    SOURCE_NAME = "noaa_tides"
    BASE_URL = "https://api.tidesandcurrents.noaa.gov/api/prod"
    DOMAIN = HazardDomain.TIDE

    def __init__(
        self,
        base_url: Optional[str] = None,
        application: str = "hazard-data-collector",
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        max_concurrency: int = 4,
        flood_stages: Optional[Mapping[str, Dict[str, float]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(
            base_url=base_url,
            max_concurrency=max_concurrency,
            timeout=timeout,
            connect_timeout=connect_timeout,
            transport=transport,
        )
        self.application = application
        self.flood_stages = flood_stages or {}

    @classmethod
    def from_settings(cls, settings, transport=None) -> "NOAATidesAdapter":
        return cls(
            base_url=settings.noaa_tides_base_url,
            application=settings.noaa_tides_application,
            timeout=settings.noaa_tides_timeout,
            connect_timeout=settings.connect_timeout,
            max_concurrency=settings.fan_out_max_concurrency,
            flood_stages=settings.flood_stages,
            transport=transport,
        )

    def build_request(self, query: StationQuery) -> Tuple[str, Dict[str, Any]]:
        return "datagetter", {
            "station": query.station_id,
            "product": PRODUCT,
            "datum": DATUM,
            "units": UNITS,
            "time_zone": TIME_ZONE,
            "application": self.application,
            "format": "json",
            "date": "latest",
        }

    def extract_elements(
        self, response: UpstreamResponse, query: StationQuery
    ) -> List[Tuple[Dict[str, Any], Dict[str, Any]]]:
        data = response.data
        if not isinstance(data, dict):
            raise ParseError(message="Response is not a JSON object", source=self.SOURCE_NAME)
        if "error" in data:
            message = (data.get("error") or {}).get("message", "unknown error")
            raise ParseError(
                message=f"Station {query.station_id}: {message}",
                source=self.SOURCE_NAME,
            )

        points = data.get("data")
        if not isinstance(points, list):
            raise ParseError(message="Response has no 'data' list", source=self.SOURCE_NAME)

        metadata = data.get("metadata") or {}
        return [(metadata, point) for point in points]

    def parse_element(
        self,
        element: Tuple[Dict[str, Any], Dict[str, Any]],
        response: UpstreamResponse,
        query: StationQuery,
    ) -> WaterLevelRecord:
        metadata, point = element
        station_id = str(metadata.get("id") or query.station_id)

        observed_at = datetime.strptime(
            self.require(point, "t", "data point"), TIME_FORMAT
        ).replace(tzinfo=timezone.utc)
        meters = float(self.require(point, "v", "data point"))

        lat = metadata.get("lat")
        lon = metadata.get("lon")

        return WaterLevelRecord(
            natural_key=f"{self.SOURCE_NAME}:{station_id}:{observed_at.isoformat()}",
            domain=self.DOMAIN,
            provider=self.SOURCE_NAME,
            observed_at=observed_at,
            collected_at=utcnow(),
            raw_payload=response.text,
            station_id=station_id,
            station_name=metadata.get("name") or TIDE_STATION_NAMES.get(station_id),
            location_type=LOCATION_TYPE,
            latitude=float(lat) if lat not in (None, "") else None,
            longitude=float(lon) if lon not in (None, "") else None,
            water_level_meters=meters,
            water_level_feet=meters * FEET_PER_METER,
            datum=DATUM,
            quality_code=point.get("q"),
            **flood_stage_fields(self.flood_stages.get(station_id)),
        )

    def load_cached(self, store, query: StationQuery) -> List[WaterLevelRecord]:
        latest = store.find_latest_for_station(self.DOMAIN, query.station_id)
        return [latest] if latest else []
