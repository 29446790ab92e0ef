"""
USGS National Water Information System (NWIS) data source adapter.

Provides the latest gage height and discharge for a fixed roster of
river monitoring sites.

Official API:
- Instantaneous Values Service: https://waterservices.usgs.gov/docs/instantaneous-values/

Data License: Public Domain (U.S. Government Work)
Rate Limits: none published; requests are spaced by the fan-out dispatch delay
"""

from app.sources.usgs_water.client import USGSWaterAdapter
from app.sources.usgs_water.metadata import RIVER_SITES

__all__ = ["USGSWaterAdapter", "RIVER_SITES"]
