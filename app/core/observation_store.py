"""
Observation store gateway.

Deduplicates by natural key and answers the recency / bounding-box /
latest-per-station queries the rest of the service needs. Writes are
at-most-once per (domain, natural_key): when two writers race, the loser
gets the winner's row back and its own record is discarded.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.core.api_errors import StoreConflict
from app.core.models import HazardObservation
from app.core.observations import (
    HazardDomain,
    ObservationRecord,
    SeismicRecord,
    WATER_DOMAINS,
    WaterLevelRecord,
    as_utc,
    record_type_for,
)
from app.core.risk_classifier import (
    DANGEROUS_MAGNITUDE,
    FloodSeverity,
    classify,
    flood_severity,
)

logger = logging.getLogger(__name__)

# Attribute keys promoted to real columns
_COLUMN_ATTRIBUTES = ("station_id", "latitude", "longitude", "magnitude")


class ObservationStore(ABC):
    """Store interface the collection core depends on."""

    @abstractmethod
    def exists(self, domain: HazardDomain, natural_key: str) -> bool:
        """True when a record with this natural key is already stored."""

    @abstractmethod
    def save_if_absent(self, record: ObservationRecord) -> Tuple[ObservationRecord, bool]:
        """
        Persist a record unless its natural key is taken.

        Returns:
            (canonical record, True if this call inserted it)
        """

    def save(self, record: ObservationRecord) -> ObservationRecord:
        """Stored record, or the existing one if a race was lost."""
        stored, _ = self.save_if_absent(record)
        return stored

    @abstractmethod
    def get(self, domain: HazardDomain, natural_key: str) -> Optional[ObservationRecord]:
        """Record by natural key."""

    @abstractmethod
    def find_recent_since(
        self, domain: HazardDomain, since: datetime, min_magnitude: Optional[float] = None
    ) -> List[ObservationRecord]:
        """Records observed at or after `since`, newest first."""

    @abstractmethod
    def find_in_bounding_box(
        self,
        domain: HazardDomain,
        min_lat: float,
        max_lat: float,
        min_lon: float,
        max_lon: float,
        since: Optional[datetime] = None,
    ) -> List[ObservationRecord]:
        """Records whose coordinates fall inside the box, newest first."""

    @abstractmethod
    def find_latest_per_station(
        self, domains: Sequence[HazardDomain] = WATER_DOMAINS
    ) -> List[WaterLevelRecord]:
        """Newest reading of every station in the given water domains."""

    @abstractmethod
    def find_latest_for_station(
        self, domain: HazardDomain, station_id: str
    ) -> Optional[WaterLevelRecord]:
        """Newest reading for one station."""

    @abstractmethod
    def find_station_history(
        self, domain: HazardDomain, station_id: str, start: datetime, end: datetime
    ) -> List[WaterLevelRecord]:
        """Readings for one station inside [start, end], newest first."""

    def find_currently_flooding(
        self, domains: Sequence[HazardDomain] = WATER_DOMAINS
    ) -> List[WaterLevelRecord]:
        """Stations whose newest reading classifies above NORMAL."""
        return [
            record
            for record in self.find_latest_per_station(domains)
            if flood_severity(record) > FloodSeverity.NORMAL
        ]

    def find_dangerous_since(self, since: datetime) -> List[SeismicRecord]:
        """Quakes at or above the dangerous magnitude since a time."""
        return self.find_recent_since(
            HazardDomain.SEISMIC, since, min_magnitude=DANGEROUS_MAGNITUDE
        )

    def find_tsunami_risk_since(self, since: datetime) -> List[SeismicRecord]:
        """Quakes with an upstream tsunami flag or a high tsunami risk score."""
        return [
            record
            for record in self.find_recent_since(HazardDomain.SEISMIC, since)
            if classify(record).tsunami_risk
        ]

    def find_stations_in_bounding_box(
        self,
        min_lat: float,
        max_lat: float,
        min_lon: float,
        max_lon: float,
        domains: Sequence[HazardDomain] = WATER_DOMAINS,
    ) -> List[WaterLevelRecord]:
        """Newest reading per station, limited to stations inside the box."""
        return [
            record
            for record in self.find_latest_per_station(domains)
            if _in_box(record, min_lat, max_lat, min_lon, max_lon)
        ]


def _in_box(record, min_lat, max_lat, min_lon, max_lon) -> bool:
    lat = getattr(record, "latitude", None)
    lon = getattr(record, "longitude", None)
    if lat is None or lon is None:
        return False
    return min_lat <= lat <= max_lat and min_lon <= lon <= max_lon


def _naive_utc(value: datetime) -> datetime:
    return as_utc(value).replace(tzinfo=None)


def record_to_row(record: ObservationRecord) -> HazardObservation:
    """Map a record onto the envelope table."""
    attributes = record.attributes()
    return HazardObservation(
        natural_key=record.natural_key,
        domain=record.domain.value,
        provider=record.provider,
        observed_at=_naive_utc(record.observed_at),
        collected_at=_naive_utc(record.collected_at),
        station_id=attributes.get("station_id"),
        latitude=attributes.get("latitude"),
        longitude=attributes.get("longitude"),
        magnitude=attributes.get("magnitude"),
        attributes={
            key: value for key, value in attributes.items()
            if key not in _COLUMN_ATTRIBUTES
        },
        raw_payload=record.raw_payload,
    )


def row_to_record(row: HazardObservation) -> ObservationRecord:
    """Rebuild the immutable record from a stored row."""
    domain = HazardDomain(row.domain)
    record_cls = record_type_for(domain)
    values = dict(row.attributes or {})
    for key in _COLUMN_ATTRIBUTES:
        if key in record_cls.__dataclass_fields__:
            values[key] = getattr(row, key)
    values = {k: v for k, v in values.items() if k in record_cls.__dataclass_fields__}
    return record_cls(
        natural_key=row.natural_key,
        domain=domain,
        provider=row.provider,
        observed_at=row.observed_at.replace(tzinfo=timezone.utc),
        collected_at=row.collected_at.replace(tzinfo=timezone.utc),
        raw_payload=row.raw_payload or "",
        **values,
    )


class SqlObservationStore(ObservationStore):
    """
    SQLAlchemy-backed store.

    Each call opens its own short-lived session so concurrent station
    fetches never share one.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _session(self) -> Session:
        return self.session_factory()

    def exists(self, domain: HazardDomain, natural_key: str) -> bool:
        with self._session() as db:
            found = db.query(HazardObservation.id).filter(
                HazardObservation.domain == HazardDomain(domain).value,
                HazardObservation.natural_key == natural_key,
            ).first()
            return found is not None

    def _insert(self, record: ObservationRecord) -> ObservationRecord:
        """
        Insert one row.

        Raises:
            StoreConflict: The natural key is already stored
        """
        with self._session() as db:
            db.add(record_to_row(record))
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise StoreConflict(record.natural_key, source=record.domain.value) from e
        return record

    def save_if_absent(self, record: ObservationRecord) -> Tuple[ObservationRecord, bool]:
        try:
            return self._insert(record), True
        except StoreConflict:
            existing = self.get(record.domain, record.natural_key)
            if existing is None:
                # Conflict on a row we cannot read back; surface it
                raise
            logger.debug(
                f"Lost insert race for {record.domain.value}/{record.natural_key}; "
                f"keeping existing record"
            )
            return existing, False

    def get(self, domain: HazardDomain, natural_key: str) -> Optional[ObservationRecord]:
        with self._session() as db:
            row = db.query(HazardObservation).filter(
                HazardObservation.domain == HazardDomain(domain).value,
                HazardObservation.natural_key == natural_key,
            ).first()
            return row_to_record(row) if row else None

    def find_recent_since(
        self, domain: HazardDomain, since: datetime, min_magnitude: Optional[float] = None
    ) -> List[ObservationRecord]:
        with self._session() as db:
            query = db.query(HazardObservation).filter(
                HazardObservation.domain == HazardDomain(domain).value,
                HazardObservation.observed_at >= _naive_utc(since),
            )
            if min_magnitude is not None:
                query = query.filter(HazardObservation.magnitude >= min_magnitude)
            rows = query.order_by(HazardObservation.observed_at.desc()).all()
            return [row_to_record(row) for row in rows]

    def find_in_bounding_box(
        self,
        domain: HazardDomain,
        min_lat: float,
        max_lat: float,
        min_lon: float,
        max_lon: float,
        since: Optional[datetime] = None,
    ) -> List[ObservationRecord]:
        with self._session() as db:
            query = db.query(HazardObservation).filter(
                HazardObservation.domain == HazardDomain(domain).value,
                HazardObservation.latitude.between(min_lat, max_lat),
                HazardObservation.longitude.between(min_lon, max_lon),
            )
            if since is not None:
                query = query.filter(HazardObservation.observed_at >= _naive_utc(since))
            rows = query.order_by(HazardObservation.observed_at.desc()).all()
            return [row_to_record(row) for row in rows]

    def find_latest_per_station(
        self, domains: Sequence[HazardDomain] = WATER_DOMAINS
    ) -> List[WaterLevelRecord]:
        domain_values = [HazardDomain(d).value for d in domains]
        with self._session() as db:
            latest = db.query(
                HazardObservation.domain.label("domain"),
                HazardObservation.station_id.label("station_id"),
                func.max(HazardObservation.observed_at).label("observed_at"),
            ).filter(
                HazardObservation.domain.in_(domain_values),
                HazardObservation.station_id.isnot(None),
            ).group_by(
                HazardObservation.domain, HazardObservation.station_id
            ).subquery()

            rows = db.query(HazardObservation).join(
                latest,
                and_(
                    HazardObservation.domain == latest.c.domain,
                    HazardObservation.station_id == latest.c.station_id,
                    HazardObservation.observed_at == latest.c.observed_at,
                ),
            ).order_by(HazardObservation.station_id, HazardObservation.id.desc()).all()

            return list(_first_per_station(row_to_record(row) for row in rows))

    def find_latest_for_station(
        self, domain: HazardDomain, station_id: str
    ) -> Optional[WaterLevelRecord]:
        with self._session() as db:
            row = db.query(HazardObservation).filter(
                HazardObservation.domain == HazardDomain(domain).value,
                HazardObservation.station_id == station_id,
            ).order_by(
                HazardObservation.observed_at.desc(), HazardObservation.id.desc()
            ).first()
            return row_to_record(row) if row else None

    def find_station_history(
        self, domain: HazardDomain, station_id: str, start: datetime, end: datetime
    ) -> List[WaterLevelRecord]:
        with self._session() as db:
            rows = db.query(HazardObservation).filter(
                HazardObservation.domain == HazardDomain(domain).value,
                HazardObservation.station_id == station_id,
                HazardObservation.observed_at.between(_naive_utc(start), _naive_utc(end)),
            ).order_by(HazardObservation.observed_at.desc()).all()
            return [row_to_record(row) for row in rows]


def _first_per_station(records: Iterable[ObservationRecord]) -> Iterable[ObservationRecord]:
    # Two rows can share the newest timestamp; keep the first (highest id)
    seen = set()
    for record in records:
        key = (record.domain, record.station_id)
        if key in seen:
            continue
        seen.add(key)
        yield record
