"""
Hazard collection endpoints.

POST /api/v1/hazards/collect/{domain}              dispatch a collection run (202)
GET  /api/v1/hazards/earthquakes/recent            stored quakes since N hours ago
GET  /api/v1/hazards/earthquakes/bbox              stored quakes inside a bounding box
GET  /api/v1/hazards/earthquakes/dangerous         M5.0+ or tsunami-risk quakes
GET  /api/v1/hazards/water-levels/flooding         stations currently above a flood stage
GET  /api/v1/hazards/water-levels/nearby           latest reading per station near a point
GET  /api/v1/hazards/water-levels/{station_id}/... latest reading / history for a station
GET  /api/v1/hazards/circuit-breakers              breaker state per source
GET  /api/v1/hazards/runs                          recent collection runs
GET  /api/v1/hazards/stream/{channel}              SSE stream of an outbound channel
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.event_bus import EventBus
from app.core.models import CollectionRun
from app.core.observations import HazardDomain, ObservationRecord, WATER_DOMAINS, utcnow
from app.core.risk_classifier import classify

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/hazards", tags=["hazards"])


# ========== Request Models ==========

class CollectRequest(BaseModel):
    """Optional parameters for a manual collection run."""
    variant: Optional[str] = Field(
        None,
        description="Seismic only: 'recent' or 'significant'",
        examples=["significant"],
    )
    hours: Optional[int] = Field(None, ge=1, le=24 * 30, description="Seismic lookback window")
    min_magnitude: Optional[float] = Field(None, ge=0, le=10)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    radius_degrees: Optional[float] = Field(None, gt=0, le=180)
    station_id: Optional[str] = Field(
        None,
        description="Tide/river only: collect a single station instead of the roster",
        examples=["8518750"],
    )
    metric: Optional[str] = Field(None, description="Space weather only: 'kp' or 'cme'")
    days: Optional[int] = Field(None, ge=1, le=30, description="Space weather CME window")


# ========== Dependencies ==========

def get_collection_service(request: Request):
    """Collection service built at startup (see app.main lifespan)."""
    service = getattr(request.app.state, "collection_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Collection service not ready")
    return service


def _serialize(records: List[ObservationRecord]) -> List[Dict[str, Any]]:
    return [{**r.to_dict(), **classify(r).to_dict()} for r in records]


# ========== Endpoints ==========

@router.post("/collect/{domain}", status_code=202)
async def collect(
    domain: HazardDomain,
    request: Optional[CollectRequest] = None,
    service=Depends(get_collection_service),
):
    """
    Dispatch a collection run for a hazard domain.

    Returns as soon as the run is dispatched; follow progress via /runs.
    """
    params = request.model_dump(exclude_none=True) if request else {}
    try:
        receipt = service.collect(domain, params, trigger="manual")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "status": receipt.status,
        "run_id": receipt.run_id,
        "domain": receipt.domain,
        "params": receipt.params,
        "message": f"{receipt.domain} collection dispatched",
    }


@router.get("/earthquakes/recent")
async def recent_earthquakes(
    hours: int = Query(24, ge=1, le=24 * 30),
    min_magnitude: Optional[float] = Query(None, ge=0, le=10),
    service=Depends(get_collection_service),
):
    since = utcnow() - timedelta(hours=hours)
    records = service.store.find_recent_since(HazardDomain.SEISMIC, since, min_magnitude=min_magnitude)
    return {"count": len(records), "earthquakes": _serialize(records)}


@router.get("/earthquakes/bbox")
async def earthquakes_in_bounding_box(
    min_lat: float = Query(..., ge=-90, le=90),
    max_lat: float = Query(..., ge=-90, le=90),
    min_lon: float = Query(..., ge=-180, le=180),
    max_lon: float = Query(..., ge=-180, le=180),
    hours: Optional[int] = Query(None, ge=1, le=24 * 365),
    service=Depends(get_collection_service),
):
    if min_lat > max_lat or min_lon > max_lon:
        raise HTTPException(status_code=400, detail="min bounds must not exceed max bounds")
    since = utcnow() - timedelta(hours=hours) if hours else None
    records = service.store.find_in_bounding_box(
        HazardDomain.SEISMIC, min_lat, max_lat, min_lon, max_lon, since=since
    )
    return {"count": len(records), "earthquakes": _serialize(records)}


@router.get("/earthquakes/dangerous")
async def dangerous_earthquakes(
    hours: int = Query(24, ge=1, le=24 * 30),
    tsunami_only: bool = Query(False, description="Only quakes with tsunami risk"),
    service=Depends(get_collection_service),
):
    since = utcnow() - timedelta(hours=hours)
    if tsunami_only:
        records = service.store.find_tsunami_risk_since(since)
    else:
        records = service.store.find_dangerous_since(since)
    return {"count": len(records), "earthquakes": _serialize(records)}


@router.get("/water-levels/flooding")
async def flooding_stations(service=Depends(get_collection_service)):
    records = service.store.find_currently_flooding()
    return {"count": len(records), "stations": _serialize(records)}


@router.get("/water-levels/nearby")
async def nearby_stations(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_degrees: float = Query(1.0, gt=0, le=45),
    service=Depends(get_collection_service),
):
    records = service.store.find_stations_in_bounding_box(
        latitude - radius_degrees,
        latitude + radius_degrees,
        longitude - radius_degrees,
        longitude + radius_degrees,
    )
    return {"count": len(records), "stations": _serialize(records)}


@router.get("/water-levels/{station_id}/latest")
async def station_latest(station_id: str, service=Depends(get_collection_service)):
    candidates = [
        record
        for record in (service.store.find_latest_for_station(d, station_id) for d in WATER_DOMAINS)
        if record is not None
    ]
    if not candidates:
        raise HTTPException(status_code=404, detail=f"No readings for station {station_id}")
    latest = max(candidates, key=lambda r: r.observed_at)
    return _serialize([latest])[0]


@router.get("/water-levels/{station_id}/history")
async def station_history(
    station_id: str,
    hours: int = Query(24, ge=1, le=24 * 90),
    service=Depends(get_collection_service),
):
    end = utcnow()
    start = end - timedelta(hours=hours)
    records: List[ObservationRecord] = []
    for domain in WATER_DOMAINS:
        records.extend(service.store.find_station_history(domain, station_id, start, end))
    records.sort(key=lambda r: r.observed_at, reverse=True)
    return {"station_id": station_id, "count": len(records), "readings": _serialize(records)}


@router.get("/circuit-breakers")
async def circuit_breakers(service=Depends(get_collection_service)):
    return {"breakers": service.breaker_status(), "runs_in_flight": service.in_flight}


@router.get("/runs")
async def list_runs(
    limit: int = Query(20, ge=1, le=200),
    domain: Optional[HazardDomain] = Query(None),
    db: Session = Depends(get_db),
):
    """Most recent collection runs, newest first."""
    query = db.query(CollectionRun)
    if domain:
        query = query.filter(CollectionRun.domain == domain.value)
    runs = query.order_by(CollectionRun.started_at.desc(), CollectionRun.id.desc()).limit(limit).all()

    return [
        {
            "run_id": r.run_id,
            "domain": r.domain,
            "trigger": r.trigger,
            "status": r.status.value if hasattr(r.status, "value") else r.status,
            "params": r.params,
            "started_at": r.started_at.isoformat() if r.started_at else None,
            "completed_at": r.completed_at.isoformat() if r.completed_at else None,
            "records_fetched": r.records_fetched,
            "records_new": r.records_new,
            "records_duplicate": r.records_duplicate,
            "events_published": r.events_published,
            "fallback_scopes": r.fallback_scopes,
            "error_message": r.error_message,
        }
        for r in runs
    ]


@router.get("/channels")
async def channels():
    """Outbound channels with live subscribers and publish counts."""
    return {
        "subscribers": EventBus.active_channels,
        "published": EventBus.published_counts,
    }


@router.get("/stream/{channel}")
async def stream_channel(channel: str):
    """
    SSE stream of one outbound channel.

    Usage:
        const es = new EventSource('/api/v1/hazards/stream/raw.flood.alert');
        es.addEventListener('flood.alert', e => { ... });
    """
    return StreamingResponse(
        EventBus.subscribe_stream(channel),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "Connection": "keep-alive",
        },
    )
