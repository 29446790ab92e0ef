"""
USGS Earthquake Hazards Program data source adapter.

Queries the FDSN event web service for recent, significant and
location-bounded earthquakes.

Official API:
- FDSN Event Web Service: https://earthquake.usgs.gov/fdsnws/event/1/

Data License: Public Domain (U.S. Government Work)
Rate Limits: none published; no API key required
"""

from app.sources.usgs_earthquake.client import USGSEarthquakeAdapter, extract_region

__all__ = ["USGSEarthquakeAdapter", "extract_region"]
