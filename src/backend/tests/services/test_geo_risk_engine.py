"""
Tests for the geolocation risk engine.

Tests verification end to end with fake lookups:
- Input validation and error degradation
- Unknown-location short-circuit
- ASN enrichment
- History updates and the impossible-travel scenario
- The reputation-backed VPN check
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.config import Settings
from core.exceptions import AsnLookupFailedError, GeoConfigurationError, MalformedAddressError
from schemas.geo import AsnLookupResult, GeoLocation, GeoLookupResult, LookupStatus, RiskLevel
from services.asn_reputation import AsnReputationService
from services.cache_service import CacheService
from services.geo_lookup import CachingAsnLookup, IPInfoGeoLocationProvider
from services.geo_risk_engine import GeoRiskEngine, build_geo_risk_engine
from services.location_history import LocationHistoryStore
from services.risk_rules import GeoRiskRules
from services.vpn_detector import VpnDetector

TOKYO_IP = "203.0.113.10"
NEW_YORK_IP = "198.51.100.20"
VPN_IP = "45.32.1.1"


@pytest.fixture
def cache(clock) -> CacheService:
    return CacheService(clock=clock)


@pytest.fixture
def store(cache) -> LocationHistoryStore:
    return LocationHistoryStore(cache, ttl=timedelta(hours=24))


@pytest.fixture
def engine(policy, geo_provider, asn_lookup, store, alert_sink, clock, cache, tokyo, new_york) -> GeoRiskEngine:
    geo_provider.results = {
        TOKYO_IP: GeoLookupResult.found(tokyo),
        NEW_YORK_IP: GeoLookupResult.found(new_york),
    }
    return GeoRiskEngine(
        policy=policy,
        provider=geo_provider,
        store=store,
        rules=GeoRiskRules(policy, alert_sink=alert_sink, clock=clock),
        asn_lookup=asn_lookup,
        reputation=AsnReputationService(cache),
        clock=clock,
    )


class TestVerifyInputValidation:
    """Tests for blank input handling."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ip,user_id", [("", "user-1"), ("  ", "user-1"), (TOKYO_IP, ""), (None, "user-1")])
    async def test_blank_input_is_high(self, engine, geo_provider, store, ip, user_id):
        """Test that blank input is rejected without touching history."""
        result = await engine.verify(ip, user_id)

        assert result.risk_level == RiskLevel.HIGH
        assert result.alerts == ["Invalid input provided for verification."]
        assert geo_provider.calls == []


class TestVerifyUnknownLocation:
    """Tests for the unknown-location path."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "lookup",
        [GeoLookupResult.no_data(), GeoLookupResult.malformed("bad ip")],
    )
    async def test_unresolved_address_is_medium(self, engine, geo_provider, store, lookup):
        """Test that NO_DATA and MALFORMED both degrade to MEDIUM."""
        geo_provider.results["192.0.2.1"] = lookup

        result = await engine.verify("192.0.2.1", "user-1")

        assert result.risk_level == RiskLevel.MEDIUM
        assert result.alerts == ["Unable to determine location from IP address."]
        assert len(await store.get_or_create("user-1")) == 0

    @pytest.mark.asyncio
    async def test_unknown_location_skips_other_rules(self, engine, geo_provider, policy):
        """Test that the sentinel country never triggers the country rule."""
        geo_provider.results["192.0.2.1"] = GeoLookupResult.found(GeoLocation.unknown())

        result = await engine.verify("192.0.2.1", "user-1")

        assert result.risk_level == RiskLevel.MEDIUM
        assert len(result.alerts) == 1

    @pytest.mark.asyncio
    async def test_lookup_timeout_is_medium(self, engine, geo_provider, policy, store):
        """Test that a hung provider is treated as unknown, not as a hang."""

        async def slow_lookup(ip):
            await asyncio.sleep(10)

        geo_provider.lookup = slow_lookup
        engine.policy = policy.model_copy(update={"lookup_timeout_seconds": 0.01})

        result = await engine.verify(TOKYO_IP, "user-1")

        assert result.risk_level == RiskLevel.MEDIUM
        assert result.alerts == ["Unable to determine location from IP address."]


class TestVerifyErrors:
    """Tests for failure degradation."""

    @pytest.mark.asyncio
    async def test_lookup_failure_is_high(self, engine, geo_provider, store):
        """Test that a broken geolocation subsystem yields HIGH."""
        geo_provider.results["192.0.2.1"] = GeoLookupResult.failed("database corrupt")

        result = await engine.verify("192.0.2.1", "user-1")

        assert result.risk_level == RiskLevel.HIGH
        assert result.alerts == ["Internal error during location verification."]
        assert len(await store.get_or_create("user-1")) == 0

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_high(self, engine, geo_provider):
        """Test that unexpected errors are converted, never propagated."""
        geo_provider.lookup = AsyncMock(side_effect=RuntimeError("boom"))

        result = await engine.verify(TOKYO_IP, "user-1")

        assert result.risk_level == RiskLevel.HIGH
        assert "Internal error during location verification." in result.alerts

    @pytest.mark.asyncio
    async def test_history_write_failure_not_propagated(self, engine, store):
        """Test that a failed history write does not change the verdict."""
        store.put = AsyncMock(return_value=False)

        result = await engine.verify(TOKYO_IP, "user-1")

        assert result.risk_level == RiskLevel.LOW
        assert result.alerts == []
        store.put.assert_awaited_once()


class TestVerifyEnrichment:
    """Tests for supplementary ASN lookups."""

    @pytest.mark.asyncio
    async def test_missing_asn_is_enriched(self, engine, asn_lookup):
        """Test that an enriched VPN ASN triggers the VPN rule."""
        asn_lookup.results[TOKYO_IP] = AsnLookupResult(status=LookupStatus.FOUND, asn=9009)

        result = await engine.verify(TOKYO_IP, "user-1")

        assert result.metadata["asn"] == "AS9009"
        assert result.risk_level == RiskLevel.MEDIUM
        assert result.alerts == ["Potential VPN/Proxy detected based on ASN: AS9009"]

    @pytest.mark.asyncio
    async def test_existing_asn_not_looked_up(self, engine, geo_provider, asn_lookup, tokyo):
        geo_provider.results[TOKYO_IP] = GeoLookupResult.found(tokyo.with_asn("AS2516"))

        result = await engine.verify(TOKYO_IP, "user-1")

        assert asn_lookup.calls == []
        assert result.metadata["asn"] == "AS2516"

    @pytest.mark.asyncio
    async def test_enrichment_failure_ignored(self, engine, asn_lookup):
        """Test that ASN lookup errors leave the location untouched."""
        asn_lookup.lookup_asn = AsyncMock(side_effect=ConnectionError("asn down"))

        result = await engine.verify(TOKYO_IP, "user-1")

        assert result.risk_level == RiskLevel.LOW
        assert result.metadata["asn"] is None

    @pytest.mark.asyncio
    async def test_enrichment_failed_status_ignored(self, engine, asn_lookup):
        asn_lookup.results[TOKYO_IP] = AsnLookupResult(status=LookupStatus.FAILED)

        result = await engine.verify(TOKYO_IP, "user-1")

        assert result.risk_level == RiskLevel.LOW


class TestVerifyHistory:
    """Tests for history updates and impossible travel."""

    @pytest.mark.asyncio
    async def test_first_login_is_low_and_recorded(self, engine, store, tokyo):
        result = await engine.verify(TOKYO_IP, "user-1")

        assert result.risk_level == RiskLevel.LOW
        assert result.alerts == []
        assert result.metadata["country_code"] == "JP"
        history = await store.get_or_create("user-1")
        assert history.last_location == tokyo

    @pytest.mark.asyncio
    async def test_tokyo_then_new_york_ten_minutes_later(self, engine, store, alert_sink, clock):
        """Test the end-to-end impossible-travel scenario."""
        first = await engine.verify(TOKYO_IP, "user-1")
        clock.advance(minutes=10)
        second = await engine.verify(NEW_YORK_IP, "user-1")

        assert first.risk_level == RiskLevel.LOW
        assert second.risk_level == RiskLevel.HIGH
        assert len(second.alerts) == 1
        assert second.alerts[0].startswith("Impossible travel detected")
        assert second.metadata["distance_km"] == pytest.approx(10850, abs=30)
        assert second.metadata["speed_kmh"] == pytest.approx(65100, rel=0.01)
        assert len(alert_sink.alerts) == 1
        assert len(await store.get_or_create("user-1")) == 2

    @pytest.mark.asyncio
    async def test_users_do_not_share_history(self, engine, clock):
        await engine.verify(TOKYO_IP, "user-1")
        clock.advance(minutes=10)

        result = await engine.verify(NEW_YORK_IP, "user-2")

        assert result.risk_level == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_high_risk_country_and_vpn(self, engine, geo_provider):
        """Test that two MEDIUM rules stay MEDIUM with two alerts."""
        geo_provider.results["192.0.2.7"] = GeoLookupResult.found(
            GeoLocation(country_code="KP", asn="AS16276", latitude=39.0392, longitude=125.7625)
        )

        result = await engine.verify("192.0.2.7", "user-1")

        assert result.risk_level == RiskLevel.MEDIUM
        assert result.alerts == [
            "Potential VPN/Proxy detected based on ASN: AS16276",
            "Connection from high-risk country: KP",
        ]


class TestIsVpnConnection:
    """Tests for the reputation-backed VPN check."""

    @pytest.mark.asyncio
    async def test_blank_ip_raises_value_error(self, engine):
        with pytest.raises(ValueError):
            await engine.is_vpn_connection(" ")

    @pytest.mark.asyncio
    async def test_malformed_address(self, engine, asn_lookup):
        asn_lookup.results["not-an-ip"] = AsnLookupResult(status=LookupStatus.MALFORMED)

        with pytest.raises(MalformedAddressError):
            await engine.is_vpn_connection("not-an-ip")

    @pytest.mark.asyncio
    async def test_lookup_failure(self, engine, asn_lookup):
        asn_lookup.results[TOKYO_IP] = AsnLookupResult(status=LookupStatus.FAILED)

        with pytest.raises(AsnLookupFailedError):
            await engine.is_vpn_connection(TOKYO_IP)

    @pytest.mark.asyncio
    async def test_lookup_timeout(self, engine, asn_lookup, policy):
        """Test that a hung ASN lookup surfaces as a lookup failure."""

        async def slow_lookup(ip):
            await asyncio.sleep(10)

        asn_lookup.lookup_asn = slow_lookup
        engine.policy = policy.model_copy(update={"lookup_timeout_seconds": 0.01})

        with pytest.raises(AsnLookupFailedError):
            await engine.is_vpn_connection(TOKYO_IP)

    @pytest.mark.asyncio
    async def test_no_data_uses_detector_only(self, engine):
        """Test that an address without ASN data is judged by its ranges alone."""
        assert await engine.is_vpn_connection(TOKYO_IP) is False

    @pytest.mark.asyncio
    async def test_vpn_asn_in_datacenter_range(self, engine, asn_lookup):
        """Test that two agreeing factors flag the address."""
        asn_lookup.results[VPN_IP] = AsnLookupResult(status=LookupStatus.FOUND, asn="AS9009")

        assert await engine.is_vpn_connection(VPN_IP) is True

    @pytest.mark.asyncio
    async def test_records_reputation(self, engine, asn_lookup):
        """Test that every check is recorded against the ASN."""
        asn_lookup.results[VPN_IP] = AsnLookupResult(status=LookupStatus.FOUND, asn="AS9009")
        asn_lookup.results[TOKYO_IP] = AsnLookupResult(status=LookupStatus.FOUND, asn="AS2516")

        await engine.is_vpn_connection(VPN_IP)
        await engine.is_vpn_connection(TOKYO_IP)

        assert await engine.reputation.get_reputation_score("AS9009") == 0.0
        assert await engine.reputation.get_reputation_score("AS2516") == 1.0

    @pytest.mark.asyncio
    async def test_low_reputation_flags_address(self, engine, asn_lookup):
        """Test that a poorly rated ASN is flagged even without detector factors."""
        asn_lookup.results[TOKYO_IP] = AsnLookupResult(status=LookupStatus.FOUND, asn="AS64500")
        for _ in range(5):
            await engine.reputation.record_activity("AS64500", was_vpn=True)

        assert await engine.is_vpn_connection(TOKYO_IP) is True

    @pytest.mark.asyncio
    async def test_custom_detector(self, engine, asn_lookup):
        detector = MagicMock(spec=VpnDetector)
        detector.is_likely_vpn = AsyncMock(return_value=True)
        engine.vpn_detector = detector
        asn_lookup.results[TOKYO_IP] = AsnLookupResult(status=LookupStatus.FOUND, asn="AS2516")

        assert await engine.is_vpn_connection(TOKYO_IP) is True
        detector.is_likely_vpn.assert_awaited_once_with(TOKYO_IP, "AS2516")


class TestEngineLifecycle:
    """Tests for construction and cleanup."""

    @pytest.mark.asyncio
    async def test_close_releases_provider(self, engine, geo_provider):
        await engine.close()

        assert geo_provider.closed is True

    def test_provider_used_as_asn_lookup(self, policy, geo_provider, store, alert_sink):
        """Test that a provider that can look up ASNs is reused for enrichment."""
        geo_provider.lookup_asn = AsyncMock()

        engine = GeoRiskEngine(policy, geo_provider, store, GeoRiskRules(policy, alert_sink))

        assert engine.asn_lookup is geo_provider

    def test_build_from_settings(self):
        """Test assembling an engine from settings."""
        app_settings = Settings(IPINFO_TOKEN="test-token", GEO_TIME_WINDOW_HOURS=12)

        engine = build_geo_risk_engine(app_settings)

        assert isinstance(engine.provider, IPInfoGeoLocationProvider)
        assert engine.store.ttl == timedelta(hours=12)
        assert engine.policy.time_window_hours == 12

    @pytest.mark.asyncio
    async def test_build_caches_asn_lookups(self):
        """Test that the assembled engine caches supplementary ASN lookups."""
        app_settings = Settings(IPINFO_TOKEN="test-token", ASN_CACHE_TTL_HOURS=6)

        engine = build_geo_risk_engine(app_settings)

        assert isinstance(engine.asn_lookup, CachingAsnLookup)
        assert engine.asn_lookup.delegate is engine.provider
        assert engine.asn_lookup.ttl == timedelta(hours=6)
        assert engine.asn_lookup.cache is engine.store.cache

        await engine.close()

    def test_build_without_provider_fails(self):
        app_settings = Settings(GEOIP_CITY_DB_PATH=None, IPINFO_TOKEN=None)

        with pytest.raises(GeoConfigurationError):
            build_geo_risk_engine(app_settings)
