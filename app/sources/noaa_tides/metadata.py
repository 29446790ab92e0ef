"""
NOAA CO-OPS coastal water level stations monitored by the collector.

Reference: https://tidesandcurrents.noaa.gov/stations.html
"""
from typing import Dict, List

from app.core.observations import Station

PRODUCT = "water_level"
DATUM = "MLLW"  # Mean Lower Low Water
UNITS = "metric"
TIME_ZONE = "gmt"
LOCATION_TYPE = "ocean"

FEET_PER_METER = 3.28084


TIDE_STATIONS: List[Station] = [
    Station("8518750", "The Battery, NY"),
    Station("8454000", "Providence, RI"),
    Station("8575512", "Annapolis, MD"),
    Station("8638610", "Wilmington, NC"),
    Station("8658120", "Charleston, SC"),
    Station("8720218", "Mayport, FL"),
    Station("8726520", "Miami Beach, FL"),
    Station("8729108", "Panama City Beach, FL"),
    Station("8761724", "Grand Isle, LA"),
    Station("8770570", "Sabine Pass North, TX"),
    Station("9414290", "San Francisco, CA"),
    Station("9447130", "Seattle, WA"),
    Station("1612340", "Honolulu, HI"),
    Station("9751364", "San Juan, PR"),
]

TIDE_STATION_NAMES: Dict[str, str] = {s.station_id: s.name for s in TIDE_STATIONS}
