"""
Geolocation risk rules.

Each rule inspects the current location (and, for impossible travel, the
user's history) and may escalate the verification result. Rules only ever
raise the risk level, so the order in which they run cannot lower a verdict.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from core.config import GeoRiskPolicy
from schemas.geo import (
    UNKNOWN_COUNTRY_CODE,
    UNKNOWN_VALUE,
    AlertSeverity,
    GeoLocation,
    RiskLevel,
    SecurityAlert,
    VerificationResult,
)
from services.alert_service import SecurityAlertSink
from services.cache_service import utc_now
from services.geo_math import DistanceSpeedCalculator
from services.location_history import LocationHistory

logger = structlog.get_logger(__name__)

UNKNOWN_LOCATION_ALERT = "Unable to determine location from IP address."
IMPOSSIBLE_TRAVEL_TITLE = "Impossible travel detected"


class GeoRiskRules:
    """
    The four location rules sharing one policy snapshot.

    All checks take ``(result, current_location, history, user_id)``.
    """

    def __init__(
        self,
        policy: GeoRiskPolicy,
        alert_sink: SecurityAlertSink,
        calculator: Optional[DistanceSpeedCalculator] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.policy = policy
        self.alert_sink = alert_sink
        self.calculator = calculator or DistanceSpeedCalculator(policy.impossible_speed_kmh)
        self._clock = clock

    def check_unknown_location(
        self,
        result: VerificationResult,
        current_location: Optional[GeoLocation],
        history: LocationHistory,
        user_id: str,
    ) -> bool:
        """Return True when the location is unknown and the remaining rules must be skipped."""
        if current_location is not None and not current_location.is_unknown:
            return False

        result.escalate(RiskLevel.MEDIUM)
        result.add_alert(UNKNOWN_LOCATION_ALERT)
        logger.info("unknown_login_location", user_id=user_id)
        return True

    async def check_impossible_travel(
        self,
        result: VerificationResult,
        current_location: GeoLocation,
        history: LocationHistory,
        user_id: str,
    ) -> None:
        """
        Compare the current location against the last verified one.

        Skipped without data (no history, missing coordinates) and when the
        elapsed time is too short to be meaningful or older than the window.
        """
        last_location = history.last_location
        last_timestamp = history.last_timestamp
        if last_location is None or last_timestamp is None:
            return
        if not (last_location.has_coordinates and current_location.has_coordinates):
            logger.debug("impossible_travel_skipped", user_id=user_id, reason="missing_coordinates")
            return

        elapsed = self._clock() - last_timestamp
        if elapsed <= timedelta(seconds=self.policy.min_travel_interval_seconds):
            logger.debug("impossible_travel_skipped", user_id=user_id, reason="interval_too_short")
            return
        if elapsed > timedelta(hours=self.policy.time_window_hours):
            logger.debug("impossible_travel_skipped", user_id=user_id, reason="outside_time_window")
            return

        distance_km = self.calculator.distance(
            last_location.latitude,
            last_location.longitude,
            current_location.latitude,
            current_location.longitude,
        )
        speed_kmh = self.calculator.speed(distance_km, elapsed)
        result.metadata["distance_km"] = round(distance_km, 2)
        result.metadata["speed_kmh"] = round(speed_kmh, 2)

        if not self.calculator.is_impossible(speed_kmh):
            if distance_km > self.policy.suspicious_distance_km:
                result.metadata["suspicious_distance"] = True
            return

        result.escalate(RiskLevel.HIGH)
        result.add_alert(f"Impossible travel detected ({speed_kmh:.0f} km/h)")
        logger.warning(
            "impossible_travel_detected",
            user_id=user_id,
            distance_km=round(distance_km, 2),
            speed_kmh=round(speed_kmh, 2),
        )

        alert = SecurityAlert(
            user_id=user_id,
            title=IMPOSSIBLE_TRAVEL_TITLE,
            attributes={
                "distanceKm": f"{distance_km:.2f}",
                "speedKmH": f"{speed_kmh:.2f}",
                "timeDiffSeconds": str(int(elapsed.total_seconds())),
                "fromCity": last_location.city or UNKNOWN_VALUE,
                "fromCountry": last_location.country_code or UNKNOWN_COUNTRY_CODE,
                "toCity": current_location.city or UNKNOWN_VALUE,
                "toCountry": current_location.country_code or UNKNOWN_COUNTRY_CODE,
            },
            severity=AlertSeverity.HIGH,
            timestamp=self._clock(),
            environment=self.policy.environment,
        )
        try:
            await self.alert_sink.send_alert(alert)
        except Exception as e:
            logger.error("security_alert_delivery_failed", user_id=user_id, error=str(e))

    def check_vpn_risk(
        self,
        result: VerificationResult,
        current_location: GeoLocation,
        history: LocationHistory,
        user_id: str,
    ) -> None:
        asn = current_location.asn
        if asn and asn in self.policy.known_vpn_asns:
            result.escalate(self.policy.vpn_risk_level)
            result.add_alert(f"Potential VPN/Proxy detected based on ASN: {asn}")
            logger.info("vpn_asn_detected", user_id=user_id, asn=asn)

    def check_country_risk(
        self,
        result: VerificationResult,
        current_location: GeoLocation,
        history: LocationHistory,
        user_id: str,
    ) -> None:
        country_code = current_location.country_code
        if country_code and country_code in self.policy.high_risk_countries:
            result.escalate(self.policy.country_risk_level)
            result.add_alert(f"Connection from high-risk country: {country_code}")
            logger.info("high_risk_country_detected", user_id=user_id, country_code=country_code)
