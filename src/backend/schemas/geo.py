"""
Geolocation risk Pydantic schemas.

Value objects shared by the lookup adapters, the risk rules and the
verification engine.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ISO 3166-1 alpha-2 user-assigned code used for "no country"
UNKNOWN_COUNTRY_CODE = "XX"
UNKNOWN_VALUE = "Unknown"


class RiskLevel(str, Enum):
    """Ordered risk verdict for a single login attempt."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def severity(self) -> int:
        """Rank used for ordering; string values do not sort by severity."""
        return _RISK_ORDER.index(self)


_RISK_ORDER = (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH)


def escalate(current: RiskLevel, proposed: RiskLevel) -> RiskLevel:
    """Return the more severe of two levels."""
    return proposed if proposed.severity > current.severity else current


def normalize_asn(value: object) -> Optional[str]:
    """Accept ``15169``, ``as15169`` or ``AS15169``; return ``AS15169``."""
    if value is None:
        return None
    text = str(value).strip().upper()
    if not text:
        return None
    if text.isdigit():
        return f"AS{text}"
    return text


class AlertSeverity(str, Enum):
    """Severity attached to security alert events."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class LookupStatus(str, Enum):
    """Outcome of an upstream geolocation or ASN lookup."""

    FOUND = "found"
    NO_DATA = "no_data"  # Valid address, nothing in the database
    MALFORMED = "malformed"  # Not a parseable IP address
    FAILED = "failed"  # Lookup subsystem broken or unreachable


class GeoLocation(BaseModel):
    """Resolved location of an IP address. Immutable."""

    model_config = ConfigDict(frozen=True)

    country_code: Optional[str] = None
    country_name: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    time_zone: Optional[str] = None
    subdivision_name: Optional[str] = None
    subdivision_code: Optional[str] = None
    asn: Optional[str] = None

    @field_validator("country_code")
    @classmethod
    def normalize_country_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip().upper()

    @field_validator("asn", mode="before")
    @classmethod
    def validate_asn(cls, v: object) -> Optional[str]:
        return normalize_asn(v)

    @model_validator(mode="after")
    def check_coordinates_paired(self) -> "GeoLocation":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must both be present or both be absent")
        return self

    @classmethod
    def unknown(cls) -> "GeoLocation":
        """Sentinel for an address that could not be resolved."""
        return cls(country_code=UNKNOWN_COUNTRY_CODE, country_name=UNKNOWN_VALUE)

    @property
    def is_unknown(self) -> bool:
        return self.country_code == UNKNOWN_COUNTRY_CODE

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def with_asn(self, asn: str) -> "GeoLocation":
        """Return a copy enriched with a supplementary ASN lookup."""
        # model_copy skips validation, so route through the constructor
        return GeoLocation(**{**self.model_dump(), "asn": asn})


class LocationEntry(BaseModel):
    """A verified location and when it was seen."""

    model_config = ConfigDict(frozen=True)

    location: GeoLocation
    timestamp: datetime


class GeoLookupResult(BaseModel):
    """Tagged result returned by geolocation providers."""

    status: LookupStatus
    location: Optional[GeoLocation] = None
    detail: Optional[str] = None

    @classmethod
    def found(cls, location: GeoLocation) -> "GeoLookupResult":
        return cls(status=LookupStatus.FOUND, location=location)

    @classmethod
    def no_data(cls, detail: Optional[str] = None) -> "GeoLookupResult":
        return cls(status=LookupStatus.NO_DATA, detail=detail)

    @classmethod
    def malformed(cls, detail: Optional[str] = None) -> "GeoLookupResult":
        return cls(status=LookupStatus.MALFORMED, detail=detail)

    @classmethod
    def failed(cls, detail: Optional[str] = None) -> "GeoLookupResult":
        return cls(status=LookupStatus.FAILED, detail=detail)


class AsnLookupResult(BaseModel):
    """Tagged result returned by supplementary ASN lookups."""

    status: LookupStatus
    asn: Optional[str] = None
    detail: Optional[str] = None

    @field_validator("asn", mode="before")
    @classmethod
    def validate_asn(cls, v: object) -> Optional[str]:
        return normalize_asn(v)


class VerificationResult(BaseModel):
    """Risk verdict for one verification. Returned to the caller, never persisted."""

    risk_level: RiskLevel = RiskLevel.LOW
    alerts: list[str] = Field(default_factory=list)
    metadata: dict = Field(default_factory=dict)

    def escalate(self, level: RiskLevel) -> RiskLevel:
        """Raise the risk level to at least ``level``; never lowers it."""
        self.risk_level = escalate(self.risk_level, level)
        return self.risk_level

    def add_alert(self, message: str) -> None:
        self.alerts.append(message)


class SecurityAlert(BaseModel):
    """Structured alert event handed to the alert sink."""

    user_id: str
    title: str
    attributes: dict[str, str] = Field(default_factory=dict)
    severity: AlertSeverity = AlertSeverity.HIGH
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    environment: str = "production"


class AsnReputationEntry(BaseModel):
    """Observed VPN / non-VPN activity for an ASN."""

    model_config = ConfigDict(frozen=True)

    asn: str
    suspicious_count: int = Field(0, ge=0)
    legitimate_count: int = Field(0, ge=0)
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total(self) -> int:
        return self.suspicious_count + self.legitimate_count

    @property
    def reputation_score(self) -> float:
        """Share of legitimate observations; 0.5 when nothing has been seen."""
        if self.total == 0:
            return 0.5
        return self.legitimate_count / self.total
