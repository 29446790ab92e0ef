"""
Hazard observation records and query types.

Records are immutable value objects sharing one envelope. Derived fields
(severity, flood severity, tsunami risk...) are never stored on a record;
they are recomputed by app.core.risk_classifier.
"""
import json
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Type


class HazardDomain(str, Enum):
    """Hazard domains collected by the service."""
    SEISMIC = "seismic"
    TIDE = "tide"
    RIVER = "river"
    SPACE_WEATHER = "space-weather"


WATER_DOMAINS = (HazardDomain.TIDE, HazardDomain.RIVER)

MIN_MAGNITUDE = 0.0
MAX_MAGNITUDE = 10.0


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class ObservationRecord:
    """
    Common envelope for every observation.

    Attributes:
        natural_key: Provider-assigned unique id, used for deduplication
        domain: Hazard domain of the record
        provider: Provider that produced the record (e.g. 'usgs_water')
        observed_at: Event/reading time reported upstream
        collected_at: Local collection time, stamped once at parse time
        raw_payload: Upstream payload kept verbatim for audit/debugging
    """

    natural_key: str
    domain: HazardDomain
    provider: str
    observed_at: datetime
    collected_at: datetime
    raw_payload: str

    ENVELOPE_FIELDS: ClassVar[tuple] = (
        "natural_key", "domain", "provider", "observed_at",
        "collected_at", "raw_payload",
    )

    def __post_init__(self):
        if not self.natural_key:
            raise ValueError("natural_key must be a non-empty string")
        object.__setattr__(self, "domain", HazardDomain(self.domain))
        object.__setattr__(self, "observed_at", as_utc(self.observed_at))
        object.__setattr__(self, "collected_at", as_utc(self.collected_at))

    def attributes(self) -> Dict[str, Any]:
        """Domain attributes (everything outside the envelope)."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self.ENVELOPE_FIELDS
        }

    def to_dict(self, include_raw: bool = False) -> Dict[str, Any]:
        """JSON-ready dictionary of the record."""
        data = {
            "natural_key": self.natural_key,
            "domain": self.domain.value,
            "provider": self.provider,
            "observed_at": self.observed_at.isoformat(),
            "collected_at": self.collected_at.isoformat(),
        }
        data.update(self.attributes())
        if include_raw:
            data["raw_payload"] = self.raw_payload
        return data


@dataclass(frozen=True)
class SeismicRecord(ObservationRecord):
    """One earthquake event."""

    magnitude: Optional[float] = None
    magnitude_type: Optional[str] = None
    depth_km: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    place: Optional[str] = None
    region: Optional[str] = None
    tsunami_warning: bool = False
    alert_level: Optional[str] = None
    significance: Optional[int] = None
    felt_reports: Optional[int] = None
    max_intensity: Optional[str] = None
    network: Optional[str] = None
    event_url: Optional[str] = None

    def __post_init__(self):
        super().__post_init__()
        if self.magnitude is not None and not (
            MIN_MAGNITUDE <= self.magnitude <= MAX_MAGNITUDE
        ):
            raise ValueError(
                f"magnitude {self.magnitude} outside [{MIN_MAGNITUDE}, {MAX_MAGNITUDE}]"
            )


@dataclass(frozen=True)
class WaterLevelRecord(ObservationRecord):
    """One tide or river gauge reading; flood stages are in feet."""

    station_id: str = ""
    station_name: Optional[str] = None
    location_type: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    water_level_feet: Optional[float] = None
    water_level_meters: Optional[float] = None
    datum: Optional[str] = None
    discharge_cfs: Optional[float] = None
    gage_height_feet: Optional[float] = None
    action_stage_feet: Optional[float] = None
    minor_flood_stage_feet: Optional[float] = None
    moderate_flood_stage_feet: Optional[float] = None
    major_flood_stage_feet: Optional[float] = None
    quality_code: Optional[str] = None

    def __post_init__(self):
        super().__post_init__()
        if self.domain not in WATER_DOMAINS:
            raise ValueError(f"water level record cannot belong to {self.domain.value}")
        if not self.station_id:
            raise ValueError("station_id is required for water level records")


@dataclass(frozen=True)
class SpaceWeatherRecord(ObservationRecord):
    """Planetary Kp sample or coronal mass ejection."""

    metric_type: str = "kp_index"
    index_value: Optional[float] = None
    estimated_kp: Optional[float] = None
    speed_km_s: Optional[float] = None
    cme_type: Optional[str] = None
    source_location: Optional[str] = None
    catalog: Optional[str] = None


RECORD_TYPES: Dict[HazardDomain, Type[ObservationRecord]] = {
    HazardDomain.SEISMIC: SeismicRecord,
    HazardDomain.TIDE: WaterLevelRecord,
    HazardDomain.RIVER: WaterLevelRecord,
    HazardDomain.SPACE_WEATHER: SpaceWeatherRecord,
}


def record_type_for(domain: HazardDomain) -> Type[ObservationRecord]:
    return RECORD_TYPES[HazardDomain(domain)]


def partition_key_for(record: ObservationRecord) -> str:
    """Water levels partition by station, everything else by natural key."""
    if isinstance(record, WaterLevelRecord):
        return record.station_id
    return record.natural_key


FLOOD_STAGE_FIELDS = {
    "action": "action_stage_feet",
    "minor": "minor_flood_stage_feet",
    "moderate": "moderate_flood_stage_feet",
    "major": "major_flood_stage_feet",
}


def flood_stage_fields(stages: Optional[Dict[str, float]]) -> Dict[str, Optional[float]]:
    """WaterLevelRecord keyword arguments for a station's configured flood stages."""
    stages = stages or {}
    return {field_name: stages.get(stage) for stage, field_name in FLOOD_STAGE_FIELDS.items()}


def dump_payload(element: Any) -> str:
    """Serialize one upstream element for raw_payload."""
    return json.dumps(element, separators=(",", ":"), sort_keys=True, default=str)


# =============================================================================
# Queries
# =============================================================================

KM_PER_DEGREE = 111.0


@dataclass(frozen=True)
class EarthquakeQuery:
    """
    Seismic query shapes.

    recent: hours + min_magnitude
    significant: same, flagged so routing tags alerts "significant"
    location: centre point + radius in degrees (sent upstream in km)
    """

    hours: int = 24
    min_magnitude: float = 4.5
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_degrees: Optional[float] = None
    significant: bool = False

    @property
    def is_location(self) -> bool:
        return (
            self.latitude is not None
            and self.longitude is not None
            and self.radius_degrees is not None
        )

    @property
    def radius_km(self) -> Optional[float]:
        if self.radius_degrees is None:
            return None
        return self.radius_degrees * KM_PER_DEGREE

    def describe(self) -> str:
        if self.is_location:
            return (
                f"near ({self.latitude}, {self.longitude}) "
                f"r={self.radius_degrees}deg M>={self.min_magnitude}"
            )
        label = "significant" if self.significant else "recent"
        return f"{label} {self.hours}h M>={self.min_magnitude}"


@dataclass(frozen=True)
class Station:
    """A monitored tide station or river gauge site."""

    station_id: str
    name: str


@dataclass(frozen=True)
class StationQuery:
    """Latest reading for one station."""

    station_id: str

    def describe(self) -> str:
        return f"station {self.station_id}"


@dataclass(frozen=True)
class SpaceWeatherQuery:
    """Space weather feed window; Kp feeds ignore days."""

    days: int = 7

    def describe(self) -> str:
        return f"last {self.days}d"
