"""
USGS NWIS Instantaneous Values adapter.

Official documentation:
https://waterservices.usgs.gov/docs/instantaneous-values/

One request per site:
    ?format=json&sites=01646500&parameterCd=00065,00060&siteStatus=active

Response, fields used per entry of value.timeSeries:
- sourceInfo.siteName, sourceInfo.siteCode[0].value
- sourceInfo.geoLocation.geogLocation.{latitude, longitude}
- variable.variableCode[0].value ("00065" or "00060")
- values[0].value[0].{value, dateTime, qualifiers}

The gage height and discharge series of one site are merged into a
single reading.
"""
import logging
from datetime import datetime
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
from app.sources.usgs_water.metadata import (
    DISCHARGE,
    GAGE_HEIGHT,
    LOCATION_TYPE,
    METERS_PER_FOOT,
    NO_DATA_VALUE,
    PARAMETER_CODES,
    RIVER_SITE_NAMES,
)

logger = logging.getLogger(__name__)


def _variable_code(series: Dict[str, Any]) -> str:
    code = (series.get("variable") or {}).get("variableCode")
    if isinstance(code, list):
        code = code[0].get("value") if code else None
    return str(code or "")


def _site_code(series: Dict[str, Any]) -> Optional[str]:
    code = (series.get("sourceInfo") or {}).get("siteCode")
    if isinstance(code, list):
        code = code[0].get("value") if code else None
    return str(code) if code else None


def _latest_value(series: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    blocks = series.get("values") or []
    if not blocks:
        return None
    values = blocks[0].get("value") or []
    return values[0] if values else None


class USGSWaterAdapter(SourceAdapter[StationQuery]):
    """Latest river gage height and discharge per site."""

    SOURCE_NAME = "usgs_water"
    BASE_URL = "https://waterservices.usgs.gov/nwis/iv"
    DOMAIN = HazardDomain.RIVER

    def __init__(
        self,
        base_url: Optional[str] = None,
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
        self.flood_stages = flood_stages or {}

    @classmethod
    def from_settings(cls, settings, transport=None) -> "USGSWaterAdapter":
        return cls(
            base_url=settings.usgs_water_base_url,
            timeout=settings.usgs_water_timeout,
            connect_timeout=settings.connect_timeout,
            max_concurrency=settings.fan_out_max_concurrency,
            flood_stages=settings.flood_stages,
            transport=transport,
        )

    def build_request(self, query: StationQuery) -> Tuple[str, Dict[str, Any]]:
        return "", {
            "format": "json",
            "sites": query.station_id,
            "parameterCd": PARAMETER_CODES,
            "siteStatus": "active",
        }

    def extract_elements(
        self, response: UpstreamResponse, query: StationQuery
    ) -> List[Tuple[str, List[Dict[str, Any]]]]:
        data = response.data
        value = data.get("value") if isinstance(data, dict) else None
        series = value.get("timeSeries") if isinstance(value, dict) else None
        if not isinstance(series, list):
            raise ParseError(
                message="Response has no 'value.timeSeries' list",
                source=self.SOURCE_NAME,
            )

        by_site: Dict[str, List[Dict[str, Any]]] = {}
        for entry in series:
            site = _site_code(entry) or query.station_id
            by_site.setdefault(site, []).append(entry)
        return list(by_site.items())

    def parse_element(
        self,
        element: Tuple[str, List[Dict[str, Any]]],
        response: UpstreamResponse,
        query: StationQuery,
    ) -> WaterLevelRecord:
        site_code, series = element

        gage_height: Optional[float] = None
        discharge: Optional[float] = None
        observed_at: Optional[datetime] = None
        qualifiers: List[str] = []
        site_name = None
        latitude = longitude = None

        for entry in series:
            source_info = entry.get("sourceInfo") or {}
            site_name = site_name or source_info.get("siteName")
            geo = (source_info.get("geoLocation") or {}).get("geogLocation") or {}
            if latitude is None and geo.get("latitude") is not None:
                latitude = float(geo["latitude"])
                longitude = float(geo["longitude"])

            latest = _latest_value(entry)
            if latest is None:
                continue
            reading = float(self.require(latest, "value", "time series value"))
            if reading == NO_DATA_VALUE:
                continue

            code = _variable_code(entry)
            if GAGE_HEIGHT in code:
                gage_height = reading
            elif DISCHARGE in code:
                discharge = reading
            else:
                continue

            timestamp = datetime.fromisoformat(
                self.require(latest, "dateTime", "time series value")
            )
            if observed_at is None or timestamp > observed_at:
                observed_at = timestamp
            qualifiers.extend(q for q in latest.get("qualifiers") or [] if q not in qualifiers)

        if observed_at is None:
            raise ParseError(
                message=f"Site {site_code} has no gage height or discharge value",
                source=self.SOURCE_NAME,
            )

        return WaterLevelRecord(
            natural_key=f"{self.SOURCE_NAME}:{site_code}:{observed_at.isoformat()}",
            domain=self.DOMAIN,
            provider=self.SOURCE_NAME,
            observed_at=observed_at,
            collected_at=utcnow(),
            raw_payload=response.text,
            station_id=site_code,
            station_name=site_name or RIVER_SITE_NAMES.get(site_code),
            location_type=LOCATION_TYPE,
            latitude=latitude,
            longitude=longitude,
            water_level_feet=gage_height,
            water_level_meters=gage_height * METERS_PER_FOOT if gage_height is not None else None,
            gage_height_feet=gage_height,
            discharge_cfs=discharge,
            quality_code=",".join(qualifiers) or None,
            **flood_stage_fields(self.flood_stages.get(site_code)),
        )

    def load_cached(self, store, query: StationQuery) -> List[WaterLevelRecord]:
        latest = store.find_latest_for_station(self.DOMAIN, query.station_id)
        return [latest] if latest else []
