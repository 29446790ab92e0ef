"""
Unit tests for the upstream source adapters.

Each adapter is exercised against httpx.MockTransport with payloads shaped
like the real provider responses: request building, element extraction,
field mapping, dropping of unparseable elements and whole-body failures.

No network required.
"""
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx

from app.core.api_errors import NetworkError, ParseError
from app.core.observations import (
    EarthquakeQuery,
    HazardDomain,
    SpaceWeatherQuery,
    StationQuery,
)
from app.sources.noaa_tides import NOAATidesAdapter, TIDE_STATIONS
from app.sources.space_weather import CMEAdapter, KpIndexAdapter
from app.sources.space_weather.client import parse_time
from app.sources.usgs_earthquake import USGSEarthquakeAdapter, extract_region
from app.sources.usgs_earthquake.client import longitude_ranges
from app.sources.usgs_water import RIVER_SITES, USGSWaterAdapter

from factories import make_quake

FIXED_NOW = datetime(2024, 5, 10, 12, 0, 0, tzinfo=timezone.utc)


class CapturingTransport:
    """Builds an httpx.MockTransport that records requests and replies with a payload."""

    def __init__(self, payload=None, status_code=200, text=None):
        self.payload = payload
        self.status_code = status_code
        self.text = text
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    @property
    def params(self):
        return dict(self.requests[-1].url.params)


# =============================================================================
# USGS earthquakes
# =============================================================================


class TestUSGSEarthquakeAdapter:

    def _adapter(self, capture):
        return USGSEarthquakeAdapter(transport=capture.transport, clock=lambda: FIXED_NOW)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recent_query_parameters(self, usgs_geojson):
        capture = CapturingTransport(usgs_geojson)
        adapter = self._adapter(capture)

        await adapter.fetch(EarthquakeQuery(hours=24, min_magnitude=4.5))
        await adapter.close()

        request = capture.requests[-1]
        assert request.url.path == "/fdsnws/event/1/query"
        assert capture.params == {
            "format": "geojson",
            "starttime": "2024-05-09T12:00:00",
            "minmagnitude": "4.5",
            "orderby": "time",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_location_query_converts_degrees_to_km(self, usgs_geojson):
        capture = CapturingTransport(usgs_geojson)
        adapter = self._adapter(capture)

        await adapter.fetch(
            EarthquakeQuery(min_magnitude=2.5, latitude=35.7, longitude=-117.5, radius_degrees=2.0)
        )
        await adapter.close()

        params = capture.params
        assert params["latitude"] == "35.7"
        assert params["longitude"] == "-117.5"
        assert params["maxradiuskm"] == "222.0"
        assert params["starttime"] == "2024-04-10T12:00:00"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_features_are_mapped_and_bad_feature_dropped(self, usgs_geojson):
        adapter = self._adapter(CapturingTransport(usgs_geojson))

        records = list(await adapter.fetch(EarthquakeQuery()))
        await adapter.close()

        assert [r.natural_key for r in records] == ["us7000m1a2", "ci40123456"]
        quake = records[0]
        assert quake.domain == HazardDomain.SEISMIC
        assert quake.provider == "usgs_earthquake"
        assert quake.magnitude == 6.2
        assert quake.depth_km == 20.0
        assert (quake.latitude, quake.longitude) == (23.6, 121.6)
        assert quake.observed_at == datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
        assert quake.tsunami_warning is True
        assert quake.region == "Taiwan"
        assert quake.max_intensity == "6.4"
        assert quake.significance == 591
        assert '"id":"us7000m1a2"' in quake.raw_payload

        assert records[1].tsunami_warning is False
        assert records[1].region == "Central California"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_body_without_features_is_parse_error(self):
        adapter = self._adapter(CapturingTransport({"type": "FeatureCollection"}))
        with pytest.raises(ParseError):
            await adapter.fetch(EarthquakeQuery())
        await adapter.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_error_is_network_error(self):
        adapter = self._adapter(CapturingTransport(status_code=503, text="unavailable"))
        with pytest.raises(NetworkError) as exc_info:
            await adapter.fetch(EarthquakeQuery())
        await adapter.close()
        assert exc_info.value.status_code == 503

    @pytest.mark.unit
    def test_cached_recent_uses_fallback_window(self):
        adapter = USGSEarthquakeAdapter(fallback_hours=24, clock=lambda: FIXED_NOW)
        store = MagicMock()
        store.find_recent_since.return_value = []

        adapter.load_cached(store, EarthquakeQuery(min_magnitude=6.0))

        store.find_recent_since.assert_called_once_with(
            HazardDomain.SEISMIC, datetime(2024, 5, 9, 12, 0, tzinfo=timezone.utc), min_magnitude=6.0
        )

    @pytest.mark.unit
    def test_cached_location_uses_bounding_box(self):
        adapter = USGSEarthquakeAdapter(clock=lambda: FIXED_NOW)
        store = MagicMock()
        store.find_in_bounding_box.return_value = []

        adapter.load_cached(
            store, EarthquakeQuery(min_magnitude=3.0, latitude=10.0, longitude=20.0, radius_degrees=1.5)
        )

        args, kwargs = store.find_in_bounding_box.call_args
        assert args == (HazardDomain.SEISMIC, 8.5, 11.5, 18.5, 21.5)

    @pytest.mark.unit
    def test_cached_location_wraps_the_antimeridian(self, store):
        adapter = USGSEarthquakeAdapter(clock=lambda: FIXED_NOW)
        store.save(make_quake("us_fiji_east", latitude=-17.5, longitude=178.5))
        store.save(make_quake("us_tonga_west", latitude=-16.8, longitude=-179.5))
        store.save(make_quake("us_vanuatu", latitude=-16.0, longitude=168.0))

        records = adapter.load_cached(
            store, EarthquakeQuery(min_magnitude=3.0, latitude=-17.0, longitude=179.0, radius_degrees=2.0)
        )

        assert {r.natural_key for r in records} == {"us_fiji_east", "us_tonga_west"}

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "longitude,radius,expected",
        [
            (20.0, 1.5, [(18.5, 21.5)]),
            (179.0, 2.0, [(177.0, 180.0), (-180.0, -179.0)]),
            (-179.5, 1.0, [(179.5, 180.0), (-180.0, -178.5)]),
            (0.0, 180.0, [(-180.0, 180.0)]),
        ],
    )
    def test_longitude_ranges(self, longitude, radius, expected):
        assert longitude_ranges(longitude, radius) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "place,expected",
        [
            ("10 km SSW of Ridgecrest, CA", "CA"),
            ("South Sandwich Islands region", "South Sandwich Islands region"),
            ("", "Unknown"),
            (None, "Unknown"),
        ],
    )
    def test_extract_region(self, place, expected):
        assert extract_region(place) == expected


# =============================================================================
# NOAA tides
# =============================================================================


class TestNOAATidesAdapter:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_latest_reading(self, noaa_tide_payload):
        capture = CapturingTransport(noaa_tide_payload)
        adapter = NOAATidesAdapter(
            transport=capture.transport,
            flood_stages={"8518750": {"minor": 5.0}},
        )

        records = list(await adapter.fetch(StationQuery("8518750")))
        await adapter.close()

        assert capture.params["station"] == "8518750"
        assert capture.params["product"] == "water_level"
        assert capture.params["datum"] == "MLLW"
        assert capture.params["date"] == "latest"
        assert capture.requests[-1].url.path.endswith("/datagetter")

        assert len(records) == 1
        reading = records[0]
        assert reading.domain == HazardDomain.TIDE
        assert reading.station_id == "8518750"
        assert reading.station_name == "The Battery"
        assert reading.natural_key == "noaa_tides:8518750:2024-05-10T11:54:00+00:00"
        assert reading.water_level_meters == 1.524
        assert reading.water_level_feet == pytest.approx(5.0, abs=0.001)
        assert reading.location_type == "ocean"
        assert reading.minor_flood_stage_feet == 5.0
        assert reading.major_flood_stage_feet is None
        assert reading.latitude == pytest.approx(40.7006)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_body_is_parse_error(self):
        capture = CapturingTransport({"error": {"message": "No data was found."}})
        adapter = NOAATidesAdapter(transport=capture.transport)

        with pytest.raises(ParseError) as exc_info:
            await adapter.fetch(StationQuery("0000000"))
        await adapter.close()

        assert "No data was found" in str(exc_info.value)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_point_is_dropped(self, noaa_tide_payload):
        noaa_tide_payload["data"].insert(0, {"t": "2024-05-10 11:48", "v": ""})
        adapter = NOAATidesAdapter(transport=CapturingTransport(noaa_tide_payload).transport)

        records = list(await adapter.fetch(StationQuery("8518750")))
        await adapter.close()

        assert len(records) == 1

    @pytest.mark.unit
    def test_cached_returns_latest_for_station(self):
        adapter = NOAATidesAdapter()
        store = MagicMock()
        store.find_latest_for_station.return_value = None

        assert adapter.load_cached(store, StationQuery("8518750")) == []
        store.find_latest_for_station.assert_called_once_with(HazardDomain.TIDE, "8518750")

    @pytest.mark.unit
    def test_station_roster(self):
        assert len(TIDE_STATIONS) == 14
        assert len({s.station_id for s in TIDE_STATIONS}) == 14


# =============================================================================
# USGS water
# =============================================================================


class TestUSGSWaterAdapter:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gage_height_and_discharge_merge(self, usgs_water_payload):
        capture = CapturingTransport(usgs_water_payload)
        adapter = USGSWaterAdapter(
            transport=capture.transport,
            flood_stages={"01646500": {"action": 10.0, "minor": 12.0}},
        )

        records = list(await adapter.fetch(StationQuery("01646500")))
        await adapter.close()

        assert capture.params == {
            "format": "json",
            "sites": "01646500",
            "parameterCd": "00065,00060",
            "siteStatus": "active",
        }
        assert len(records) == 1
        reading = records[0]
        assert reading.domain == HazardDomain.RIVER
        assert reading.station_id == "01646500"
        assert reading.gage_height_feet == 12.31
        assert reading.water_level_feet == 12.31
        assert reading.water_level_meters == pytest.approx(3.752, abs=0.001)
        assert reading.discharge_cfs == 41200.0
        assert reading.quality_code == "P"
        assert reading.observed_at == datetime(2024, 5, 10, 11, 45, tzinfo=timezone.utc)
        assert reading.natural_key == "usgs_water:01646500:2024-05-10T07:45:00-04:00"
        assert reading.action_stage_feet == 10.0
        assert reading.minor_flood_stage_feet == 12.0
        assert reading.location_type == "river"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_data_sentinel_is_skipped(self, usgs_water_payload):
        gage = usgs_water_payload["value"]["timeSeries"][1]
        gage["values"][0]["value"][0]["value"] = "-999999"
        adapter = USGSWaterAdapter(transport=CapturingTransport(usgs_water_payload).transport)

        records = list(await adapter.fetch(StationQuery("01646500")))
        await adapter.close()

        assert records[0].gage_height_feet is None
        assert records[0].water_level_feet is None
        assert records[0].discharge_cfs == 41200.0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_site_without_values_is_dropped(self, usgs_water_payload):
        for series in usgs_water_payload["value"]["timeSeries"]:
            series["values"] = [{"value": []}]
        adapter = USGSWaterAdapter(transport=CapturingTransport(usgs_water_payload).transport)

        records = list(await adapter.fetch(StationQuery("01646500")))
        await adapter.close()

        assert records == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_time_series_is_parse_error(self):
        adapter = USGSWaterAdapter(transport=CapturingTransport({"value": {}}).transport)
        with pytest.raises(ParseError):
            await adapter.fetch(StationQuery("01646500"))
        await adapter.close()

    @pytest.mark.unit
    def test_site_roster(self):
        assert len(RIVER_SITES) == 13
        assert all(len(s.station_id) >= 8 for s in RIVER_SITES)


# =============================================================================
# Space weather
# =============================================================================


class TestKpIndexAdapter:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_kp_samples(self, kp_payload):
        capture = CapturingTransport(kp_payload)
        adapter = KpIndexAdapter(transport=capture.transport)

        records = list(await adapter.fetch(SpaceWeatherQuery()))
        await adapter.close()

        assert str(capture.requests[-1].url).startswith(
            "https://services.swpc.noaa.gov/json/planetary_k_index_1m.json"
        )
        # third sample has no time_tag and is dropped
        assert [r.natural_key for r in records] == ["kp:2024-05-10T17:00:00", "kp:2024-05-10T17:01:00"]
        assert records[0].index_value == 8.0
        assert records[1].index_value == 8.67
        assert records[1].estimated_kp == 8.67
        assert records[0].observed_at == datetime(2024, 5, 10, 17, 0, tzinfo=timezone.utc)
        assert records[0].metric_type == "kp_index"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_array_body_is_parse_error(self):
        adapter = KpIndexAdapter(transport=CapturingTransport({"error": "x"}).transport)
        with pytest.raises(ParseError):
            await adapter.fetch(SpaceWeatherQuery())
        await adapter.close()


class TestCMEAdapter:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cme_events(self, cme_payload):
        capture = CapturingTransport(cme_payload)
        adapter = CMEAdapter(api_key="test-key", transport=capture.transport, clock=lambda: FIXED_NOW)

        records = list(await adapter.fetch(SpaceWeatherQuery(days=7)))
        await adapter.close()

        assert capture.requests[-1].url.path == "/DONKI/CME"
        assert capture.params == {
            "startDate": "2024-05-03",
            "endDate": "2024-05-10",
            "api_key": "test-key",
        }
        cme = records[0]
        assert cme.natural_key == "2024-05-08T05:36:00-CME-001"
        assert cme.metric_type == "cme"
        assert cme.speed_km_s == 1061.0
        assert cme.cme_type == "O"
        assert cme.source_location == "S17W40"
        assert cme.observed_at == datetime(2024, 5, 8, 5, 36, tzinfo=timezone.utc)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cme_without_analyses(self, cme_payload):
        cme_payload[0]["cmeAnalyses"] = None
        adapter = CMEAdapter(transport=CapturingTransport(cme_payload).transport)

        records = list(await adapter.fetch(SpaceWeatherQuery()))
        await adapter.close()

        assert records[0].speed_km_s is None
        assert records[0].cme_type is None


class TestParseTime:

    @pytest.mark.unit
    def test_zulu_suffix(self):
        assert parse_time("2024-05-08T05:36Z") == datetime(2024, 5, 8, 5, 36, tzinfo=timezone.utc)

    @pytest.mark.unit
    def test_naive_is_utc(self):
        assert parse_time("2024-05-10T17:00:00").tzinfo is not None
