"""Schemas module initialization."""

from schemas.geo import (
    AlertSeverity,
    AsnLookupResult,
    AsnReputationEntry,
    GeoLocation,
    GeoLookupResult,
    LocationEntry,
    LookupStatus,
    RiskLevel,
    SecurityAlert,
    VerificationResult,
)

__all__ = [
    "AlertSeverity",
    "AsnLookupResult",
    "AsnReputationEntry",
    "GeoLocation",
    "GeoLookupResult",
    "LocationEntry",
    "LookupStatus",
    "RiskLevel",
    "SecurityAlert",
    "VerificationResult",
]
