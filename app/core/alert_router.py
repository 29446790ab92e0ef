"""
Alert routing.

Maps a classified record to the outbound channels it belongs on. Every
rule is evaluated on its own, so one record can land on several channels:

    record                                   -> domain data channel
    seismic, dangerous (M >= 5.0)            -> seismic alert channel
    seismic, significant query               -> seismic alert channel ("significant")
    seismic, tsunami flag or risk score >=50 -> tsunami warning channel
    tide/river, flooding                     -> flood alert channel

Records are already persisted when they get here; a routing failure only
loses the notification.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from app.core.observations import (
    ObservationRecord,
    SeismicRecord,
    SpaceWeatherRecord,
    WaterLevelRecord,
    partition_key_for,
)
from app.core.publisher import EventPublisher
from app.core.risk_classifier import SIGNIFICANT_MAGNITUDE, Classification

logger = logging.getLogger(__name__)


class QueryVariant(str, Enum):
    """Which seismic query produced the record."""
    RECENT = "recent"
    SIGNIFICANT = "significant"
    LOCATION = "location"


class EventType:
    EARTHQUAKE_DATA = "earthquake.data"
    EARTHQUAKE_ALERT = "earthquake.alert"
    EARTHQUAKE_SIGNIFICANT = "earthquake.significant"
    EARTHQUAKE_LOCATION = "earthquake.location"
    TSUNAMI_WARNING = "tsunami.warning"
    WATER_LEVEL_DATA = "waterlevel.data"
    FLOOD_ALERT = "flood.alert"
    KP_INDEX = "space_weather.kp"
    CME = "space_weather.cme"


@dataclass(frozen=True)
class ChannelNames:
    """Outbound channel names."""

    earthquake_data: str = "raw.earthquake.data"
    earthquake_alert: str = "raw.earthquake.alert"
    tsunami_warning: str = "raw.tsunami.warning"
    water_level_data: str = "raw.waterlevel.data"
    flood_alert: str = "raw.flood.alert"
    kp_index: str = "raw.space-weather.kp"
    cme: str = "raw.space-weather.cme"

    @classmethod
    def from_settings(cls, settings) -> "ChannelNames":
        return cls(
            earthquake_data=settings.channel_earthquake_data,
            earthquake_alert=settings.channel_earthquake_alert,
            tsunami_warning=settings.channel_tsunami_warning,
            water_level_data=settings.channel_water_level_data,
            flood_alert=settings.channel_flood_alert,
            kp_index=settings.channel_kp_index,
            cme=settings.channel_cme,
        )


@dataclass(frozen=True)
class Route:
    channel: str
    event_type: str
    level: int = logging.DEBUG


def route(
    record: ObservationRecord,
    classification: Classification,
    channels: ChannelNames,
    variant: QueryVariant = QueryVariant.RECENT,
) -> List[Route]:
    """Channels a record goes to, data channel first."""
    routes: List[Route] = []

    if isinstance(record, SeismicRecord):
        data_type = (
            EventType.EARTHQUAKE_LOCATION
            if variant == QueryVariant.LOCATION
            else EventType.EARTHQUAKE_DATA
        )
        routes.append(Route(channels.earthquake_data, data_type))

        # A manual significant query may lower min_magnitude; only M6.0+ is tagged
        significant = (
            variant == QueryVariant.SIGNIFICANT
            and record.magnitude is not None
            and record.magnitude >= SIGNIFICANT_MAGNITUDE
        )
        if significant:
            routes.append(
                Route(channels.earthquake_alert, EventType.EARTHQUAKE_SIGNIFICANT, logging.WARNING)
            )
        elif classification.dangerous:
            routes.append(
                Route(channels.earthquake_alert, EventType.EARTHQUAKE_ALERT, logging.WARNING)
            )

        if classification.tsunami_risk:
            routes.append(
                Route(channels.tsunami_warning, EventType.TSUNAMI_WARNING, logging.ERROR)
            )

    elif isinstance(record, WaterLevelRecord):
        routes.append(Route(channels.water_level_data, EventType.WATER_LEVEL_DATA))
        if classification.flooding:
            routes.append(Route(channels.flood_alert, EventType.FLOOD_ALERT, logging.WARNING))

    elif isinstance(record, SpaceWeatherRecord):
        if record.metric_type == "cme":
            routes.append(Route(channels.cme, EventType.CME))
        else:
            routes.append(Route(channels.kp_index, EventType.KP_INDEX))

    return routes


def build_event(
    record: ObservationRecord, classification: Classification, event_type: str
) -> Dict[str, Any]:
    """JSON-ready event envelope: record fields plus derived fields."""
    event = {"event_type": event_type}
    event.update(record.to_dict())
    event.update(classification.to_dict())
    return event


def _describe(record: ObservationRecord, classification: Classification) -> str:
    if isinstance(record, SeismicRecord):
        return (
            f"M{record.magnitude} {record.place or record.natural_key} "
            f"(depth {record.depth_km} km, tsunami score {classification.tsunami_risk_score})"
        )
    if isinstance(record, WaterLevelRecord):
        severity = classification.flood_severity.name if classification.flood_severity is not None else "NORMAL"
        return (
            f"{record.station_name or record.station_id} at "
            f"{record.water_level_feet} ft ({severity})"
        )
    return record.natural_key


class AlertRouter:
    """Routes classified records onto an EventPublisher."""

    def __init__(self, publisher: EventPublisher, channels: ChannelNames = ChannelNames()):
        self.publisher = publisher
        self.channels = channels

    def dispatch(
        self,
        record: ObservationRecord,
        classification: Classification,
        variant: QueryVariant = QueryVariant.RECENT,
    ) -> List[Route]:
        """Publish the record to every matching channel; returns the routes taken."""
        routes = route(record, classification, self.channels, variant)
        key = partition_key_for(record)

        for target in routes:
            if target.level > logging.DEBUG:
                logger.log(
                    target.level,
                    f"{target.event_type}: {_describe(record, classification)} -> {target.channel}",
                )
            self.publisher.send(target.channel, key, build_event(record, classification, target.event_type))

        return routes
