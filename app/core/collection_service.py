"""
Hazard collection service.

Entry point for manual and scheduled collection:

    receipt = service.collect("river", {"station_id": "01646500"})  # returns at once
    summary = await service.run("seismic", {"variant": "significant"})

collect() only dispatches; the run itself executes in the background and
never raises. Its outcome is logged and recorded as a CollectionRun row.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.core.alert_router import AlertRouter, ChannelNames, QueryVariant
from app.core.collection_pipeline import CollectionPipeline, PipelineStats
from app.core.fan_out import FanOutCoordinator
from app.core.models import CollectionRun, RunStatus
from app.core.observation_store import ObservationStore, SqlObservationStore
from app.core.observations import (
    EarthquakeQuery,
    HazardDomain,
    SpaceWeatherQuery,
    Station,
    StationQuery,
    utcnow,
)
from app.core.publisher import EventPublisher, build_publisher
from app.core.resilience import CircuitBreakerRegistry, ResilientSource, RetryPolicy
from app.core.source_adapter import SourceAdapter
from app.sources.noaa_tides import NOAATidesAdapter, TIDE_STATIONS
from app.sources.noaa_tides.metadata import TIDE_STATION_NAMES
from app.sources.space_weather import CMEAdapter, KpIndexAdapter
from app.sources.usgs_earthquake import USGSEarthquakeAdapter
from app.sources.usgs_water import RIVER_SITES, USGSWaterAdapter
from app.sources.usgs_water.metadata import RIVER_SITE_NAMES

logger = logging.getLogger(__name__)

SPACE_WEATHER_METRICS = ("kp", "cme")


@dataclass
class DispatchReceipt:
    """Returned by collect(): the run was dispatched, not completed."""

    run_id: str
    domain: str
    params: Dict[str, Any]
    status: str = "dispatched"


@dataclass
class RunSummary:
    run_id: str
    domain: str
    trigger: str
    status: RunStatus
    stats: PipelineStats
    started_at: datetime
    completed_at: datetime
    error: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "domain": self.domain,
            "trigger": self.trigger,
            "status": self.status.value,
            "params": self.params,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "error": self.error,
            **self.stats.to_dict(),
        }


def _float_param(params: Dict[str, Any], name: str) -> Optional[float]:
    value = params.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}")


def _int_param(params: Dict[str, Any], name: str) -> Optional[int]:
    value = params.get(name)
    if value is None:
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if parsed < 1:
        raise ValueError(f"{name} must be positive")
    return parsed


class HazardCollectionService:
    """
    Wires adapters, resilience, fan-out, dedupe and routing into runs.

    Every component is handed in explicitly; see build_collection_service().
    """

    def __init__(
        self,
        settings,
        store: ObservationStore,
        session_factory: sessionmaker,
        adapters: List[SourceAdapter],
        breakers: CircuitBreakerRegistry,
        retry_policy: RetryPolicy,
        router: AlertRouter,
        publisher: EventPublisher,
    ):
        self.settings = settings
        self.store = store
        self.session_factory = session_factory
        self.adapters = {adapter.SOURCE_NAME: adapter for adapter in adapters}
        self.breakers = breakers
        self.publisher = publisher
        self.pipeline = CollectionPipeline(store, router)
        self.sources: Dict[str, ResilientSource] = {
            name: ResilientSource(adapter, breakers.get(name), retry_policy, store)
            for name, adapter in self.adapters.items()
        }
        self._tasks: Set[asyncio.Task] = set()

        self._runners: Dict[HazardDomain, Callable[[Dict[str, Any], PipelineStats], Awaitable[None]]] = {
            HazardDomain.SEISMIC: self._collect_seismic,
            HazardDomain.TIDE: self._collect_tides,
            HazardDomain.RIVER: self._collect_rivers,
            HazardDomain.SPACE_WEATHER: self._collect_space_weather,
        }

    # -------------------------------------------------------------------------
    # Parameters
    # -------------------------------------------------------------------------

    def normalize_params(self, domain: HazardDomain, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Validate trigger parameters for a domain.

        Raises:
            ValueError: Unknown or malformed parameters
        """
        params = {k: v for k, v in (params or {}).items() if v is not None}
        domain = HazardDomain(domain)

        if domain == HazardDomain.SEISMIC:
            allowed = {"variant", "hours", "min_magnitude", "latitude", "longitude", "radius_degrees"}
        elif domain in (HazardDomain.TIDE, HazardDomain.RIVER):
            allowed = {"station_id"}
        else:
            allowed = {"metric", "days"}

        unknown = set(params) - allowed
        if unknown:
            raise ValueError(f"Unknown parameters for {domain.value}: {sorted(unknown)}")

        if domain == HazardDomain.SEISMIC:
            self.earthquake_query(params)
        elif domain == HazardDomain.SPACE_WEATHER:
            if params.get("metric") not in (None, *SPACE_WEATHER_METRICS):
                raise ValueError(f"metric must be one of {SPACE_WEATHER_METRICS}")
            _int_param(params, "days")
        return params

    def earthquake_query(self, params: Dict[str, Any]) -> Tuple[EarthquakeQuery, QueryVariant]:
        variant = QueryVariant(params.get("variant", QueryVariant.RECENT.value))
        latitude = _float_param(params, "latitude")
        longitude = _float_param(params, "longitude")
        radius = _float_param(params, "radius_degrees")

        location = (latitude, longitude, radius)
        if any(v is not None for v in location) or variant == QueryVariant.LOCATION:
            if any(v is None for v in location):
                raise ValueError("location queries need latitude, longitude and radius_degrees")
            if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
                raise ValueError("latitude/longitude out of range")
            if radius <= 0:
                raise ValueError("radius_degrees must be positive")
            variant = QueryVariant.LOCATION

        s = self.settings
        if variant == QueryVariant.SIGNIFICANT:
            hours, min_magnitude = s.significant_lookback_hours, s.significant_min_magnitude
        else:
            hours, min_magnitude = s.earthquake_lookback_hours, s.earthquake_min_magnitude

        hours = _int_param(params, "hours") or hours
        requested = _float_param(params, "min_magnitude")
        if requested is not None:
            if not 0 <= requested <= 10:
                raise ValueError("min_magnitude must be within [0, 10]")
            min_magnitude = requested

        query = EarthquakeQuery(
            hours=hours,
            min_magnitude=min_magnitude,
            latitude=latitude,
            longitude=longitude,
            radius_degrees=radius,
            significant=variant == QueryVariant.SIGNIFICANT,
        )
        return query, variant

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def collect(
        self,
        domain: str,
        params: Optional[Dict[str, Any]] = None,
        trigger: str = "manual",
    ) -> DispatchReceipt:
        """
        Dispatch a collection run and return immediately.

        Must be called from a running event loop.

        Raises:
            ValueError: Unknown domain or invalid parameters
        """
        domain = HazardDomain(domain)
        params = self.normalize_params(domain, params)
        run_id = str(uuid.uuid4())

        task = asyncio.get_running_loop().create_task(
            self.run(domain, params, trigger=trigger, run_id=run_id)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(f"Dispatched {domain.value} collection run {run_id} ({trigger})")
        return DispatchReceipt(run_id=run_id, domain=domain.value, params=params)

    async def run(
        self,
        domain: HazardDomain,
        params: Optional[Dict[str, Any]] = None,
        trigger: str = "manual",
        run_id: Optional[str] = None,
    ) -> RunSummary:
        """Execute one collection run to completion. Never raises."""
        run_id = run_id or str(uuid.uuid4())
        params = dict(params or {})
        stats = PipelineStats()
        started_at = utcnow()
        error = None
        domain_name = getattr(domain, "value", str(domain))

        logger.info(f"Starting {domain_name} collection run {run_id} ({trigger})")
        try:
            domain = HazardDomain(domain)
            self._record_start(run_id, domain, trigger, params, started_at)
            await self._runners[domain](self.normalize_params(domain, params), stats)
            status = RunStatus.PARTIAL if stats.degraded_scopes else RunStatus.SUCCESS
        except Exception as e:
            status = RunStatus.FAILED
            error = str(e)
            logger.error(f"Collection run {run_id} ({domain_name}) failed: {e}", exc_info=True)

        summary = RunSummary(
            run_id=run_id,
            domain=domain_name,
            trigger=trigger,
            status=status,
            stats=stats,
            started_at=started_at,
            completed_at=utcnow(),
            error=error,
            params=params,
        )
        self._record_finish(summary)

        logger.info(
            f"Finished {domain_name} run {run_id}: status={status.value}, "
            f"fetched={stats.fetched}, new={stats.new}, duplicate={stats.duplicate}, "
            f"published={stats.published}, fallback={stats.fallback_scopes}, "
            f"empty={stats.empty_scopes}"
        )
        return summary

    # -------------------------------------------------------------------------
    # Domain runners
    # -------------------------------------------------------------------------

    async def _collect_seismic(self, params: Dict[str, Any], stats: PipelineStats) -> None:
        query, variant = self.earthquake_query(params)
        outcome = await self.sources[USGSEarthquakeAdapter.SOURCE_NAME].fetch(query)
        self.pipeline.process(outcome, stats, variant)

    async def _collect_tides(self, params: Dict[str, Any], stats: PipelineStats) -> None:
        await self._collect_stations(
            self.sources[NOAATidesAdapter.SOURCE_NAME],
            self._roster(params, TIDE_STATIONS, TIDE_STATION_NAMES),
            self.settings.tide_dispatch_delay_seconds,
            stats,
        )

    async def _collect_rivers(self, params: Dict[str, Any], stats: PipelineStats) -> None:
        await self._collect_stations(
            self.sources[USGSWaterAdapter.SOURCE_NAME],
            self._roster(params, RIVER_SITES, RIVER_SITE_NAMES),
            self.settings.river_dispatch_delay_seconds,
            stats,
        )

    def _roster(self, params: Dict[str, Any], roster: List[Station], names: Dict[str, str]) -> List[Station]:
        station_id = params.get("station_id")
        if station_id:
            return [Station(str(station_id), names.get(str(station_id), str(station_id)))]
        return roster

    async def _collect_stations(
        self,
        source: ResilientSource,
        stations: List[Station],
        dispatch_delay: float,
        stats: PipelineStats,
    ) -> None:
        coordinator = FanOutCoordinator(
            max_concurrency=self.settings.fan_out_max_concurrency,
            dispatch_delay=dispatch_delay,
        )
        logger.info(f"[{source.source_name}] Fanning out over {len(stations)} stations")

        async for result in coordinator.stream(
            stations, lambda station: source.fetch(StationQuery(station.station_id))
        ):
            # One station's store failure must not cancel the rest of the roster
            try:
                self.pipeline.process(result.outcome, stats)
            except Exception as e:
                stats.failed_scopes += 1
                logger.error(
                    f"[{source.source_name}] Processing {result.outcome.scope} failed: {e}",
                    exc_info=True,
                )

    async def _collect_space_weather(self, params: Dict[str, Any], stats: PipelineStats) -> None:
        metric = params.get("metric")
        metrics = [metric] if metric else list(SPACE_WEATHER_METRICS)
        query = SpaceWeatherQuery(days=_int_param(params, "days") or self.settings.cme_lookback_days)

        for name in metrics:
            source_name = KpIndexAdapter.SOURCE_NAME if name == "kp" else CMEAdapter.SOURCE_NAME
            outcome = await self.sources[source_name].fetch(query)
            self.pipeline.process(outcome, stats)

    # -------------------------------------------------------------------------
    # Run bookkeeping
    # -------------------------------------------------------------------------

    def _record_start(
        self,
        run_id: str,
        domain: HazardDomain,
        trigger: str,
        params: Dict[str, Any],
        started_at: datetime,
    ) -> None:
        with self.session_factory() as db:
            db.add(CollectionRun(
                run_id=run_id,
                domain=domain.value,
                trigger=trigger,
                params=params,
                status=RunStatus.RUNNING,
                started_at=started_at.replace(tzinfo=None),
            ))
            db.commit()

    def _record_finish(self, summary: RunSummary) -> None:
        stats = summary.stats
        try:
            with self.session_factory() as db:
                run = db.query(CollectionRun).filter(CollectionRun.run_id == summary.run_id).first()
                if run is None:
                    return
                run.status = summary.status
                run.completed_at = summary.completed_at.replace(tzinfo=None)
                run.records_fetched = stats.fetched
                run.records_new = stats.new
                run.records_duplicate = stats.duplicate
                run.events_published = stats.published
                run.fallback_scopes = stats.degraded_scopes
                run.error_message = summary.error
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Could not record outcome of run {summary.run_id}: {e}")

    # -------------------------------------------------------------------------
    # Status / lifecycle
    # -------------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def breaker_status(self) -> List[Dict[str, Any]]:
        return self.breakers.statuses()

    async def wait_for_runs(self) -> None:
        """Wait until every dispatched run has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        await self.wait_for_runs()
        for adapter in self.adapters.values():
            await adapter.close()
        await self.publisher.close()
        logger.info("Collection service stopped")


def build_collection_service(
    settings,
    session_factory: sessionmaker,
    publisher: Optional[EventPublisher] = None,
    transport=None,
) -> HazardCollectionService:
    """
    Compose the service from settings.

    Args:
        settings: Settings instance, built once at startup
        session_factory: SQLAlchemy session factory for the store and run records
        publisher: Outbound channel (default chosen from settings)
        transport: Optional httpx transport shared by every adapter (tests)
    """
    publisher = publisher or build_publisher(settings)
    adapters = [
        USGSEarthquakeAdapter.from_settings(settings, transport=transport),
        NOAATidesAdapter.from_settings(settings, transport=transport),
        USGSWaterAdapter.from_settings(settings, transport=transport),
        KpIndexAdapter.from_settings(settings, transport=transport),
        CMEAdapter.from_settings(settings, transport=transport),
    ]
    return HazardCollectionService(
        settings=settings,
        store=SqlObservationStore(session_factory),
        session_factory=session_factory,
        adapters=adapters,
        breakers=CircuitBreakerRegistry.from_settings(settings),
        retry_policy=RetryPolicy.from_settings(settings),
        router=AlertRouter(publisher, ChannelNames.from_settings(settings)),
        publisher=publisher,
    )
