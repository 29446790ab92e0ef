"""
Pytest configuration and shared fixtures.
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings, reset_settings
from app.core.event_bus import EventBus
from app.core.models import Base
from app.core.observation_store import SqlObservationStore


@pytest.fixture(scope="function")
def clean_env(monkeypatch):
    """
    Clean environment for testing.

    Removes all app-related env vars to ensure clean state.
    """
    env_vars = [
        "DATABASE_URL",
        "LOG_LEVEL",
        "NASA_API_KEY",
        "RUN_INTEGRATION_TESTS",
        "RETRY_MAX_ATTEMPTS",
        "RETRY_BACKOFF_FACTOR",
        "BREAKER_FAILURE_THRESHOLD",
        "FAN_OUT_MAX_CONCURRENCY",
        "FLOOD_STAGES",
        "WEBHOOK_URL",
        "WEBHOOK_SECRET",
        "SCHEDULER_ENABLED",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)

    # Reset settings singleton
    reset_settings()

    yield

    # Reset again after test
    reset_settings()


@pytest.fixture
def settings(clean_env):
    """Settings without .env, fast retries and no dispatch delays."""
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        tide_dispatch_delay_seconds=0.0,
        river_dispatch_delay_seconds=0.0,
        scheduler_enabled=False,
    )


@pytest.fixture(scope="function")
def engine():
    """
    In-memory SQLite database shared by every session of one test.

    Fresh database for each test.
    """
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def test_db(session_factory):
    """A single session on the test database."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def store(session_factory):
    return SqlObservationStore(session_factory)


@pytest.fixture(autouse=True)
def reset_event_bus():
    EventBus.reset()
    yield
    EventBus.reset()


# =============================================================================
# Upstream payloads (no network required)
# =============================================================================


@pytest.fixture
def usgs_geojson():
    """
    Sample FDSN event response.

    Simulates https://earthquake.usgs.gov/fdsnws/event/1/query?format=geojson
    The third feature is missing its time and must be dropped.
    """
    return {
        "type": "FeatureCollection",
        "metadata": {"count": 3},
        "features": [
            {
                "type": "Feature",
                "id": "us7000m1a2",
                "properties": {
                    "mag": 6.2,
                    "magType": "mww",
                    "place": "45 km S of Hualien City, Taiwan",
                    "time": 1715342400000,
                    "tsunami": 1,
                    "alert": "yellow",
                    "sig": 591,
                    "felt": 12,
                    "mmi": 6.4,
                    "net": "us",
                    "url": "https://earthquake.usgs.gov/earthquakes/eventpage/us7000m1a2",
                },
                "geometry": {"type": "Point", "coordinates": [121.6, 23.6, 20.0]},
            },
            {
                "type": "Feature",
                "id": "ci40123456",
                "properties": {
                    "mag": 4.6,
                    "magType": "ml",
                    "place": "Central California",
                    "time": 1715338800000,
                    "tsunami": 0,
                    "sig": 326,
                    "net": "ci",
                },
                "geometry": {"type": "Point", "coordinates": [-120.5, 36.1, 8.2]},
            },
            {
                "type": "Feature",
                "id": "nc73999999",
                "properties": {"mag": 4.7, "place": "Northern California"},
                "geometry": {"type": "Point", "coordinates": [-122.8, 38.8, 2.0]},
            },
        ],
    }


@pytest.fixture
def noaa_tide_payload():
    """Sample CO-OPS datagetter response for The Battery, NY."""
    return {
        "metadata": {
            "id": "8518750",
            "name": "The Battery",
            "lat": "40.7006",
            "lon": "-74.0142",
        },
        "data": [
            {"t": "2024-05-10 11:54", "v": "1.524", "s": "0.003", "f": "1,0,0,0", "q": "p"},
        ],
    }


@pytest.fixture
def usgs_water_payload():
    """Sample NWIS instantaneous values response for the Potomac at Little Falls."""

    def series(code, name, value, when):
        return {
            "sourceInfo": {
                "siteName": "POTOMAC RIVER NEAR WASH, DC LITTLE FALLS PUMP STA",
                "siteCode": [{"value": "01646500", "network": "NWIS", "agencyCode": "USGS"}],
                "geoLocation": {
                    "geogLocation": {"srs": "EPSG:4326", "latitude": 38.94977778, "longitude": -77.12763889}
                },
            },
            "variable": {
                "variableCode": [{"value": code, "network": "NWIS"}],
                "variableName": name,
            },
            "values": [
                {"value": [{"value": value, "qualifiers": ["P"], "dateTime": when}]}
            ],
        }

    return {
        "value": {
            "timeSeries": [
                series("00060", "Streamflow, ft&#179;/s", "41200", "2024-05-10T07:45:00.000-04:00"),
                series("00065", "Gage height, ft", "12.31", "2024-05-10T07:45:00.000-04:00"),
            ]
        }
    }


@pytest.fixture
def kp_payload():
    return [
        {"time_tag": "2024-05-10T17:00:00", "kp_index": 8, "estimated_kp": 8.33, "Kp": 8.0},
        {"time_tag": "2024-05-10T17:01:00", "kp_index": 8, "estimated_Kp": 8.67},
        {"kp_index": 8},
    ]


@pytest.fixture
def cme_payload():
    return [
        {
            "activityID": "2024-05-08T05:36:00-CME-001",
            "catalog": "M2M_CATALOG",
            "startTime": "2024-05-08T05:36Z",
            "sourceLocation": "S17W40",
            "cmeAnalyses": [
                {"speed": 1061.0, "type": "O", "isMostAccurate": True},
                {"speed": 900.0, "type": "C", "isMostAccurate": False},
            ],
        }
    ]
