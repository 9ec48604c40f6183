"""
Login geolocation risk engine.

For each authentication attempt the engine resolves where the request came
from, compares it with the user's recent locations and returns a risk level
with human-readable alerts. It never decides allow/deny; callers combine the
signal with their own policy (step-up MFA, session flags, review queues).

Degradation rules:
- Unknown location (no data, malformed address, lookup timeout) -> MEDIUM
- Geolocation subsystem failure or any unexpected error -> HIGH
- Supplementary ASN, history and alert failures are logged and ignored
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from core.config import GeoRiskPolicy, Settings, settings
from core.exceptions import (
    AsnLookupFailedError,
    GeoLookupUnavailableError,
    MalformedAddressError,
)
from schemas.geo import (
    GeoLocation,
    LookupStatus,
    RiskLevel,
    VerificationResult,
)
from services.alert_service import LoggingAlertSink
from services.asn_reputation import AsnReputationProvider, AsnReputationService
from services.cache_service import CacheService, utc_now
from services.geo_lookup import (
    AsnLookup,
    CachingAsnLookup,
    GeoLocationProvider,
    build_geo_location_provider,
)
from services.location_history import LocationHistoryStore
from services.risk_rules import GeoRiskRules
from services.vpn_detector import VpnDetector

logger = structlog.get_logger(__name__)

INVALID_INPUT_ALERT = "Invalid input provided for verification."
INTERNAL_ERROR_ALERT = "Internal error during location verification."


class GeoRiskEngine:
    """Orchestrates lookup, history and rules for a single verification."""

    def __init__(
        self,
        policy: GeoRiskPolicy,
        provider: GeoLocationProvider,
        store: LocationHistoryStore,
        rules: GeoRiskRules,
        asn_lookup: Optional[AsnLookup] = None,
        vpn_detector: Optional[VpnDetector] = None,
        reputation: Optional[AsnReputationProvider] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.policy = policy
        self.provider = provider
        self.store = store
        self.rules = rules
        if asn_lookup is None and isinstance(provider, AsnLookup):
            asn_lookup = provider
        self.asn_lookup = asn_lookup
        self.vpn_detector = vpn_detector or VpnDetector.from_policy(policy)
        self.reputation = reputation
        self._clock = clock

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify(self, ip: str, user_id: str) -> VerificationResult:
        """
        Assess the risk of a login from ``ip`` by ``user_id``.

        Never raises: every failure is folded into the returned result.
        """
        result = VerificationResult()

        if not ip or not ip.strip() or not user_id or not user_id.strip():
            logger.warning("invalid_verification_input", has_ip=bool(ip), has_user_id=bool(user_id))
            result.escalate(RiskLevel.HIGH)
            result.add_alert(INVALID_INPUT_ALERT)
            return result

        ip = ip.strip()
        try:
            await self._evaluate(ip, user_id, result)
        except Exception as e:
            logger.exception(
                "location_verification_failed",
                ip=ip[:8],
                user_id=user_id,
                error=str(e),
            )
            result.escalate(RiskLevel.HIGH)
            result.add_alert(INTERNAL_ERROR_ALERT)

        return result

    async def _evaluate(self, ip: str, user_id: str, result: VerificationResult) -> None:
        location = await self._resolve_location(ip)
        location = await self._enrich_asn(ip, location)
        result.metadata["country_code"] = location.country_code
        result.metadata["asn"] = location.asn

        history = await self.store.get_or_create(user_id)

        if self.rules.check_unknown_location(result, location, history, user_id):
            return

        await self.rules.check_impossible_travel(result, location, history, user_id)
        self.rules.check_vpn_risk(result, location, history, user_id)
        self.rules.check_country_risk(result, location, history, user_id)

        history.add_location(location, self._clock())
        if not await self.store.put(user_id, history):
            logger.warning("location_history_not_saved", user_id=user_id)

        logger.info(
            "location_verified",
            user_id=user_id,
            country_code=location.country_code,
            risk_level=result.risk_level.value,
            alerts=len(result.alerts),
        )

    async def _resolve_location(self, ip: str) -> GeoLocation:
        """Look the address up, mapping every non-failure miss to the unknown sentinel."""
        try:
            lookup = await asyncio.wait_for(
                self.provider.lookup(ip),
                timeout=self.policy.lookup_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("geo_lookup_timeout", ip=ip[:8], timeout=self.policy.lookup_timeout_seconds)
            return GeoLocation.unknown()

        if lookup.status is LookupStatus.FAILED:
            raise GeoLookupUnavailableError(lookup.detail or "geolocation lookup failed")
        if lookup.status is LookupStatus.FOUND and lookup.location is not None:
            return lookup.location

        logger.info("geo_lookup_no_location", ip=ip[:8], status=lookup.status.value)
        return GeoLocation.unknown()

    async def _enrich_asn(self, ip: str, location: GeoLocation) -> GeoLocation:
        if location.asn or location.is_unknown or self.asn_lookup is None:
            return location

        try:
            lookup = await asyncio.wait_for(
                self.asn_lookup.lookup_asn(ip),
                timeout=self.policy.lookup_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("asn_enrichment_timeout", ip=ip[:8])
            return location
        except Exception as e:
            logger.warning("asn_enrichment_failed", ip=ip[:8], error=str(e))
            return location

        if lookup.status is LookupStatus.FOUND and lookup.asn:
            return location.with_asn(lookup.asn)

        logger.debug("asn_enrichment_no_data", ip=ip[:8], status=lookup.status.value)
        return location

    # =========================================================================
    # Deep VPN check
    # =========================================================================

    async def is_vpn_connection(self, ip: str) -> bool:
        """
        Multi-factor VPN check backed by ASN reputation.

        Not part of ``verify``; callers opt in where the extra lookups are
        worth it.

        Raises:
            ValueError: ``ip`` is blank
            MalformedAddressError: ``ip`` is not an IP address
            AsnLookupFailedError: the ASN lookup failed or timed out
        """
        if not ip or not ip.strip():
            raise ValueError("IP address must not be blank")
        ip = ip.strip()

        if self.asn_lookup is None:
            raise AsnLookupFailedError("No ASN lookup configured")

        try:
            lookup = await asyncio.wait_for(
                self.asn_lookup.lookup_asn(ip),
                timeout=self.policy.lookup_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise AsnLookupFailedError(f"ASN lookup timed out for {ip[:8]}") from e

        if lookup.status is LookupStatus.MALFORMED:
            raise MalformedAddressError(lookup.detail or "invalid IP address format")
        if lookup.status is LookupStatus.FAILED:
            raise AsnLookupFailedError(lookup.detail or "ASN lookup failed")

        asn = lookup.asn if lookup.status is LookupStatus.FOUND else None
        is_vpn = await self.vpn_detector.is_likely_vpn(ip, asn)
        if asn is None or self.reputation is None:
            return is_vpn

        await self.reputation.record_activity(asn, is_vpn)
        score = await self.reputation.get_reputation_score(asn)
        logger.debug("asn_reputation_checked", asn=asn, score=score, is_vpn=is_vpn)
        return is_vpn or score < self.policy.vpn_reputation_threshold

    async def close(self) -> None:
        """Release provider resources (database readers, HTTP clients)."""
        closed = set()
        for resource in (self.provider, self.asn_lookup):
            if resource is None or id(resource) in closed:
                continue
            closed.add(id(resource))
            close = getattr(resource, "close", None)
            if close is not None:
                await close()


# =============================================================================
# Factory
# =============================================================================

_engine: GeoRiskEngine | None = None


def build_geo_risk_engine(app_settings: Settings) -> GeoRiskEngine:
    """Assemble an engine and its collaborators from settings."""
    policy = GeoRiskPolicy.from_settings(app_settings)
    cache = CacheService(max_entries=policy.history_cache_max_entries)
    provider = build_geo_location_provider(app_settings)
    asn_lookup = None
    if isinstance(provider, AsnLookup):
        asn_lookup = CachingAsnLookup(provider, cache, ttl=timedelta(hours=policy.asn_cache_ttl_hours))

    return GeoRiskEngine(
        policy=policy,
        provider=provider,
        asn_lookup=asn_lookup,
        store=LocationHistoryStore(
            cache,
            ttl=timedelta(hours=policy.time_window_hours),
            max_entries=policy.history_max_entries,
        ),
        rules=GeoRiskRules(policy, alert_sink=LoggingAlertSink()),
        vpn_detector=VpnDetector.from_policy(policy),
        reputation=AsnReputationService(cache, ttl=timedelta(hours=policy.asn_reputation_ttl_hours)),
    )


def get_geo_risk_engine() -> GeoRiskEngine:
    """Get the global engine instance."""
    global _engine
    if _engine is None:
        _engine = build_geo_risk_engine(settings)
    return _engine


async def close_geo_risk_engine() -> None:
    """Close and forget the global engine."""
    global _engine
    if _engine is not None:
        await _engine.close()
        _engine = None
