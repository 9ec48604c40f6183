"""
Pytest fixtures for GeoRisk backend tests.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

# Set test environment variables before importing settings
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "false")

from core.config import GeoRiskPolicy  # noqa: E402
from schemas.geo import (  # noqa: E402
    AsnLookupResult,
    GeoLocation,
    GeoLookupResult,
    LookupStatus,
    SecurityAlert,
)

TOKYO = GeoLocation(
    country_code="JP",
    country_name="Japan",
    city="Tokyo",
    latitude=35.6762,
    longitude=139.6503,
)
NEW_YORK = GeoLocation(
    country_code="US",
    country_name="United States",
    city="New York",
    latitude=40.7128,
    longitude=-74.0060,
)
BOSTON = GeoLocation(
    country_code="US",
    country_name="United States",
    city="Boston",
    latitude=42.3601,
    longitude=-71.0589,
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeGeoProvider:
    """Geolocation provider answering from a dict of ip -> result."""

    def __init__(self, results: Optional[dict[str, GeoLookupResult]] = None):
        self.results = results or {}
        self.calls: list[str] = []
        self.closed = False

    async def lookup(self, ip: str) -> GeoLookupResult:
        self.calls.append(ip)
        return self.results.get(ip, GeoLookupResult.no_data())

    async def close(self) -> None:
        self.closed = True


class FakeAsnLookup:
    """ASN lookup answering from a dict of ip -> result."""

    def __init__(self, results: Optional[dict[str, AsnLookupResult]] = None):
        self.results = results or {}
        self.calls: list[str] = []

    async def lookup_asn(self, ip: str) -> AsnLookupResult:
        self.calls.append(ip)
        return self.results.get(ip, AsnLookupResult(status=LookupStatus.NO_DATA))


class RecordingAlertSink:
    """Alert sink that keeps every alert it receives."""

    def __init__(self):
        self.alerts: list[SecurityAlert] = []

    async def send_alert(self, alert: SecurityAlert) -> None:
        self.alerts.append(alert)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def policy() -> GeoRiskPolicy:
    """Policy with a small VPN denylist and one high-risk country."""
    return GeoRiskPolicy(
        known_vpn_asns=frozenset({"AS9009", "AS16276"}),
        high_risk_countries=frozenset({"KP"}),
        known_datacenter_ranges=("45.32.0.0/16",),
        environment="test",
    )


@pytest.fixture
def alert_sink() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def geo_provider() -> FakeGeoProvider:
    return FakeGeoProvider()


@pytest.fixture
def asn_lookup() -> FakeAsnLookup:
    return FakeAsnLookup()


@pytest.fixture
def tokyo() -> GeoLocation:
    return TOKYO


@pytest.fixture
def new_york() -> GeoLocation:
    return NEW_YORK


@pytest.fixture
def boston() -> GeoLocation:
    return BOSTON
