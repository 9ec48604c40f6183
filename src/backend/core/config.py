"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables (or a local .env file)
once at process start and treated as read-only afterwards.
"""

import ipaddress
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from schemas.geo import RiskLevel, normalize_asn

# Common VPN, hosting and transit providers observed behind anonymised logins
DEFAULT_KNOWN_VPN_ASNS = ",".join(
    [
        "AS9009",  # M247
        "AS12876",  # ONLINE S.A.S.
        "AS16276",  # OVH SAS
        "AS14061",  # DigitalOcean
        "AS45102",  # Alibaba
        "AS20473",  # Choopa / Vultr
        "AS51167",  # Contabo GmbH
        "AS24940",  # Hetzner Online GmbH
        "AS14618",  # Amazon
        "AS16509",  # Amazon AWS
        "AS8075",  # Microsoft
        "AS396982",  # Google Cloud
        "AS13335",  # Cloudflare
        "AS45090",  # Tencent Cloud
        "AS37963",  # Alibaba Cloud
        "AS132203",  # Tencent
        "AS133752",  # Leaseweb APAC
        "AS6939",  # Hurricane Electric
        "AS174",  # Cogent Communications
        "AS55967",  # Baidu Netcom
    ]
)

# Sample cloud ranges - in production, load a full list from the provider feeds
DEFAULT_DATACENTER_RANGES = ",".join(
    [
        # AWS
        "3.0.0.0/8",
        "52.0.0.0/8",
        # Google Cloud
        "35.0.0.0/8",
        # Azure
        "40.0.0.0/8",
        # DigitalOcean
        "104.131.0.0/16",
        "167.99.0.0/16",
        # Linode
        "45.33.0.0/16",
        # Vultr
        "45.32.0.0/16",
    ]
)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "GeoRisk"
    APP_ENV: str = "production"  # Stamped on every security alert
    DEBUG: bool = False

    # Impossible travel
    GEO_SUSPICIOUS_DISTANCE_KM: float = 200.0
    GEO_TIME_WINDOW_HOURS: int = 24  # Also the history cache TTL
    GEO_IMPOSSIBLE_SPEED_KMH: float = 1100.0  # Above commercial flight speed
    GEO_MIN_TRAVEL_INTERVAL_SECONDS: float = 1.0

    # VPN / ASN risk - stored as comma-separated strings to avoid pydantic-settings JSON parsing
    GEO_KNOWN_VPN_ASNS: str = DEFAULT_KNOWN_VPN_ASNS
    GEO_VPN_REPUTATION_THRESHOLD: float = 0.3
    GEO_VPN_RISK_LEVEL: RiskLevel = RiskLevel.MEDIUM
    GEO_KNOWN_VPN_IP_RANGES: str = ""
    GEO_KNOWN_DATACENTER_RANGES: str = DEFAULT_DATACENTER_RANGES
    GEO_VPN_MIN_SUSPICIOUS_FACTORS: int = 2
    GEO_VPN_REVERSE_DNS_ENABLED: bool = False

    # Country risk
    GEO_HIGH_RISK_COUNTRIES: str = ""
    GEO_COUNTRY_RISK_LEVEL: RiskLevel = RiskLevel.MEDIUM

    # History cache
    GEO_HISTORY_MAX_ENTRIES: int = 20
    GEO_HISTORY_CACHE_MAX_ENTRIES: int = 100_000

    # Upstream lookups
    GEO_LOOKUP_TIMEOUT_SECONDS: float = 2.0
    GEOIP_CITY_DB_PATH: str | None = None
    GEOIP_ASN_DB_PATH: str | None = None
    IPINFO_TOKEN: str | None = None

    # ASN reputation
    ASN_REPUTATION_TTL_HOURS: int = 168

    # Supplementary ASN lookups (only successful results are cached)
    ASN_CACHE_TTL_HOURS: int = 24

    @field_validator("GEO_KNOWN_VPN_ASNS")
    @classmethod
    def validate_known_vpn_asns(cls, v: str) -> str:
        """The VPN denylist must never be configured empty."""
        if not _split_csv(v):
            raise ValueError("GEO_KNOWN_VPN_ASNS must list at least one ASN")
        return v

    @field_validator("GEO_VPN_REPUTATION_THRESHOLD")
    @classmethod
    def validate_reputation_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("GEO_VPN_REPUTATION_THRESHOLD must be between 0.0 and 1.0")
        return v

    @field_validator("GEO_VPN_RISK_LEVEL", "GEO_COUNTRY_RISK_LEVEL")
    @classmethod
    def validate_rule_risk_level(cls, v: RiskLevel, info: Any) -> RiskLevel:
        """A matching rule must raise the risk to at least MEDIUM."""
        if v == RiskLevel.LOW:
            raise ValueError(f"{info.field_name} must be medium or high")
        return v

    @field_validator(
        "GEO_TIME_WINDOW_HOURS",
        "GEO_HISTORY_MAX_ENTRIES",
        "GEO_HISTORY_CACHE_MAX_ENTRIES",
        "GEO_VPN_MIN_SUSPICIOUS_FACTORS",
        "ASN_REPUTATION_TTL_HOURS",
        "ASN_CACHE_TTL_HOURS",
    )
    @classmethod
    def validate_positive(cls, v: int, info: Any) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @field_validator("GEO_KNOWN_VPN_IP_RANGES", "GEO_KNOWN_DATACENTER_RANGES")
    @classmethod
    def validate_networks(cls, v: str, info: Any) -> str:
        for cidr in _split_csv(v):
            try:
                ipaddress.ip_network(cidr, strict=False)
            except ValueError as e:
                raise ValueError(f"{info.field_name} contains an invalid network: {cidr}") from e
        return v

    @property
    def known_vpn_asns(self) -> frozenset[str]:
        """Known VPN ASNs, normalised to upper-case ``AS<number>``."""
        return frozenset(normalize_asn(asn) for asn in _split_csv(self.GEO_KNOWN_VPN_ASNS))

    @property
    def high_risk_countries(self) -> frozenset[str]:
        return frozenset(code.upper() for code in _split_csv(self.GEO_HIGH_RISK_COUNTRIES))

    @property
    def known_vpn_ip_ranges(self) -> list[str]:
        return _split_csv(self.GEO_KNOWN_VPN_IP_RANGES)

    @property
    def known_datacenter_ranges(self) -> list[str]:
        return _split_csv(self.GEO_KNOWN_DATACENTER_RANGES)


class GeoRiskPolicy(BaseModel):
    """
    Immutable snapshot of the risk configuration.

    Built once from Settings and shared by every verification, so concurrent
    readers never observe a partially updated rule set.
    """

    model_config = ConfigDict(frozen=True)

    known_vpn_asns: frozenset[str]
    high_risk_countries: frozenset[str] = frozenset()
    suspicious_distance_km: float = 200.0
    time_window_hours: int = 24
    impossible_speed_kmh: float = 1100.0
    min_travel_interval_seconds: float = 1.0
    vpn_reputation_threshold: float = 0.3
    vpn_risk_level: RiskLevel = RiskLevel.MEDIUM
    country_risk_level: RiskLevel = RiskLevel.MEDIUM
    history_max_entries: int = 20
    history_cache_max_entries: int = 100_000
    lookup_timeout_seconds: float = 2.0
    known_vpn_ip_ranges: tuple[str, ...] = ()
    known_datacenter_ranges: tuple[str, ...] = ()
    vpn_min_suspicious_factors: int = 2
    vpn_reverse_dns_enabled: bool = False
    asn_reputation_ttl_hours: int = 168
    asn_cache_ttl_hours: int = 24
    environment: str = "production"

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeoRiskPolicy":
        """Derive the policy from loaded settings."""
        return cls(
            known_vpn_asns=settings.known_vpn_asns,
            high_risk_countries=settings.high_risk_countries,
            suspicious_distance_km=settings.GEO_SUSPICIOUS_DISTANCE_KM,
            time_window_hours=settings.GEO_TIME_WINDOW_HOURS,
            impossible_speed_kmh=settings.GEO_IMPOSSIBLE_SPEED_KMH,
            min_travel_interval_seconds=settings.GEO_MIN_TRAVEL_INTERVAL_SECONDS,
            vpn_reputation_threshold=settings.GEO_VPN_REPUTATION_THRESHOLD,
            vpn_risk_level=settings.GEO_VPN_RISK_LEVEL,
            country_risk_level=settings.GEO_COUNTRY_RISK_LEVEL,
            history_max_entries=settings.GEO_HISTORY_MAX_ENTRIES,
            history_cache_max_entries=settings.GEO_HISTORY_CACHE_MAX_ENTRIES,
            lookup_timeout_seconds=settings.GEO_LOOKUP_TIMEOUT_SECONDS,
            known_vpn_ip_ranges=tuple(settings.known_vpn_ip_ranges),
            known_datacenter_ranges=tuple(settings.known_datacenter_ranges),
            vpn_min_suspicious_factors=settings.GEO_VPN_MIN_SUSPICIOUS_FACTORS,
            vpn_reverse_dns_enabled=settings.GEO_VPN_REVERSE_DNS_ENABLED,
            asn_reputation_ttl_hours=settings.ASN_REPUTATION_TTL_HOURS,
            asn_cache_ttl_hours=settings.ASN_CACHE_TTL_HOURS,
            environment=settings.APP_ENV,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
