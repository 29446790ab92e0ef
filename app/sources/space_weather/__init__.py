"""
Space weather data source adapters.

- NOAA Space Weather Prediction Center planetary K-index
- NASA DONKI (Space Weather Database Of Notifications, Knowledge,
  Information) coronal mass ejections

Official APIs:
- SWPC JSON products: https://services.swpc.noaa.gov/json/
- DONKI: https://api.nasa.gov/ (DEMO_KEY works with low rate limits)

Data License: Public Domain (U.S. Government Work)
"""

from app.sources.space_weather.client import CMEAdapter, KpIndexAdapter

__all__ = ["CMEAdapter", "KpIndexAdapter"]
