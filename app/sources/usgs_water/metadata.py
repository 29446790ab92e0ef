"""
USGS NWIS river gauge sites monitored by the collector.

Parameter codes:
- 00065: Gage height, feet
- 00060: Discharge, cubic feet per second

Reference: https://help.waterdata.usgs.gov/codes-and-parameters/parameters
"""
from typing import Dict, List

from app.core.observations import Station

GAGE_HEIGHT = "00065"
DISCHARGE = "00060"
PARAMETER_CODES = f"{GAGE_HEIGHT},{DISCHARGE}"

LOCATION_TYPE = "river"

METERS_PER_FOOT = 0.3048

# NWIS marks missing/ice-affected readings with this value
NO_DATA_VALUE = -999999.0


RIVER_SITES: List[Station] = [
    Station("01646500", "Potomac River at Little Falls, DC"),
    Station("02035000", "James River at Richmond, VA"),
    Station("02089500", "Neuse River at Kinston, NC"),
    Station("02169500", "Congaree River at Columbia, SC"),
    Station("02228000", "Altamaha River at Doctortown, GA"),
    Station("07374000", "Mississippi River at Baton Rouge, LA"),
    Station("08074000", "Buffalo Bayou at Houston, TX"),
    Station("09380000", "Colorado River at Lee's Ferry, AZ"),
    Station("11447650", "Sacramento River at Freeport, CA"),
    Station("12113390", "Cedar River at Renton, WA"),
    Station("01463500", "Delaware River at Trenton, NJ"),
    Station("01589000", "Jones Falls at Sorrento, Baltimore, MD"),
    Station("03234500", "Scioto River at Columbus, OH"),
]

RIVER_SITE_NAMES: Dict[str, str] = {s.station_id: s.name for s in RIVER_SITES}
