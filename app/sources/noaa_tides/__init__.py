"""
NOAA CO-OPS (Center for Operational Oceanographic Products and Services)
data source adapter.

Provides the latest coastal water level for a fixed roster of tide
stations.

Official API:
- Tides & Currents Data API: https://api.tidesandcurrents.noaa.gov/api/prod/

Data License: Public Domain (U.S. Government Work)
Rate Limits: none published; requests are spaced by the fan-out dispatch delay
"""

from app.sources.noaa_tides.client import NOAATidesAdapter
from app.sources.noaa_tides.metadata import TIDE_STATIONS

__all__ = ["NOAATidesAdapter", "TIDE_STATIONS"]
