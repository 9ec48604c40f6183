"""
IP geolocation and ASN lookup adapters.

Providers never raise for expected outcomes. Every lookup returns a tagged
result so the risk engine can tell apart:
- FOUND: the address resolved to a location / ASN
- NO_DATA: a valid address the database knows nothing about
- MALFORMED: not a parseable IP address
- FAILED: the lookup subsystem itself is broken or unreachable

Adapters:
- MaxMind GeoIP2 local databases (City + ASN)
- IPInfo.io HTTP API (fallback when no local database is deployed)
- A caching wrapper for supplementary ASN lookups
"""

import asyncio
import ipaddress
from datetime import timedelta
from typing import Optional, Protocol, runtime_checkable

import geoip2.database
import geoip2.errors
import httpx
import structlog
from maxminddb import InvalidDatabaseError

from core.config import Settings
from core.exceptions import GeoConfigurationError
from schemas.geo import AsnLookupResult, GeoLocation, GeoLookupResult, LookupStatus
from services.cache_service import CacheService

logger = structlog.get_logger(__name__)


def _redact(ip: str) -> str:
    return ip[:8]


def parse_ip(ip: str) -> Optional[str]:
    """Return the canonical form of ``ip`` or None if it is not an IP address."""
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except (ValueError, AttributeError):
        return None


# =============================================================================
# Provider Protocols (Interfaces)
# =============================================================================


@runtime_checkable
class GeoLocationProvider(Protocol):
    """Resolves an IP address to a location."""

    async def lookup(self, ip: str) -> GeoLookupResult: ...


@runtime_checkable
class AsnLookup(Protocol):
    """Supplementary ASN lookup used to enrich locations without ASN data."""

    async def lookup_asn(self, ip: str) -> AsnLookupResult: ...


# =============================================================================
# MaxMind GeoIP2
# =============================================================================


class MaxMindGeoLocationProvider:
    """
    Geolocation backed by MaxMind GeoIP2 / GeoLite2 database files.

    Readers are opened once; a database that fails to load leaves its lookups
    reporting FAILED rather than silently returning "unknown".
    """

    def __init__(
        self,
        city_db_path: Optional[str] = None,
        asn_db_path: Optional[str] = None,
        city_reader: Optional[geoip2.database.Reader] = None,
        asn_reader: Optional[geoip2.database.Reader] = None,
    ):
        self._city_reader = city_reader or self._open_reader(city_db_path, "City")
        self._asn_reader = asn_reader or self._open_reader(asn_db_path, "ASN")

    @staticmethod
    def _open_reader(path: Optional[str], db_type: str) -> Optional[geoip2.database.Reader]:
        if not path:
            return None
        try:
            reader = geoip2.database.Reader(path)
            logger.info("geoip_database_loaded", db_type=db_type, path=path)
            return reader
        except (OSError, InvalidDatabaseError, ValueError) as e:
            logger.error("geoip_database_load_failed", db_type=db_type, path=path, error=str(e))
            return None

    @property
    def is_available(self) -> bool:
        return self._city_reader is not None

    async def lookup(self, ip: str) -> GeoLookupResult:
        address = parse_ip(ip)
        if address is None:
            logger.warning("invalid_ip_format", ip=_redact(str(ip)))
            return GeoLookupResult.malformed("invalid IP address format")

        if self._city_reader is None:
            logger.warning("geoip_city_database_unavailable", ip=_redact(address))
            return GeoLookupResult.failed("GeoIP City database unavailable")

        try:
            response = await asyncio.to_thread(self._city_reader.city, address)
        except geoip2.errors.AddressNotFoundError:
            logger.debug("ip_not_in_geoip_database", ip=_redact(address))
            return GeoLookupResult.no_data("address not found")
        except (geoip2.errors.GeoIP2Error, InvalidDatabaseError, OSError) as e:
            logger.error("geoip_city_lookup_failed", ip=_redact(address), error=str(e))
            return GeoLookupResult.failed(str(e))

        latitude = response.location.latitude
        longitude = response.location.longitude
        if latitude is None or longitude is None:
            latitude = longitude = None

        subdivision = response.subdivisions.most_specific
        location = GeoLocation(
            country_code=response.country.iso_code,
            country_name=response.country.name,
            city=response.city.name,
            postal_code=response.postal.code,
            latitude=latitude,
            longitude=longitude,
            time_zone=response.location.time_zone,
            subdivision_name=subdivision.name,
            subdivision_code=subdivision.iso_code,
        )
        if location.country_code is None:
            return GeoLookupResult.no_data("no country for address")
        return GeoLookupResult.found(location)

    async def lookup_asn(self, ip: str) -> AsnLookupResult:
        address = parse_ip(ip)
        if address is None:
            return AsnLookupResult(status=LookupStatus.MALFORMED, detail="invalid IP address format")

        if self._asn_reader is None:
            return AsnLookupResult(status=LookupStatus.FAILED, detail="GeoIP ASN database unavailable")

        try:
            response = await asyncio.to_thread(self._asn_reader.asn, address)
        except geoip2.errors.AddressNotFoundError:
            return AsnLookupResult(status=LookupStatus.NO_DATA)
        except (geoip2.errors.GeoIP2Error, InvalidDatabaseError, OSError) as e:
            logger.warning("geoip_asn_lookup_failed", ip=_redact(address), error=str(e))
            return AsnLookupResult(status=LookupStatus.FAILED, detail=str(e))

        if response.autonomous_system_number is None:
            return AsnLookupResult(status=LookupStatus.NO_DATA)
        return AsnLookupResult(status=LookupStatus.FOUND, asn=response.autonomous_system_number)

    async def close(self) -> None:
        for reader in (self._city_reader, self._asn_reader):
            if reader is not None:
                reader.close()
        self._city_reader = None
        self._asn_reader = None


# =============================================================================
# IPInfo.io
# =============================================================================


class IPInfoGeoLocationProvider:
    """
    Geolocation backed by the ipinfo.io API.

    Free tier: 50k requests/month. The ``org`` field carries the ASN as its
    first token (``"AS15169 Google LLC"``).
    """

    BASE_URL = "https://ipinfo.io"

    def __init__(
        self,
        token: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.token = token
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.BASE_URL, timeout=self.timeout)
        return self._client

    async def _fetch(self, address: str) -> tuple[LookupStatus, dict]:
        try:
            response = await self._get_client().get(
                f"{self.BASE_URL}/{address}/json",
                params={"token": self.token},
            )
        except httpx.HTTPError as e:
            logger.warning("ipinfo_query_failed", ip=_redact(address), error=str(e))
            return LookupStatus.FAILED, {}

        if response.status_code == 404:
            return LookupStatus.NO_DATA, {}
        if response.status_code != 200:
            logger.warning("ipinfo_unexpected_status", ip=_redact(address), status=response.status_code)
            return LookupStatus.FAILED, {}

        try:
            data = response.json()
        except ValueError as e:
            logger.warning("ipinfo_invalid_payload", ip=_redact(address), error=str(e))
            return LookupStatus.FAILED, {}

        if data.get("bogon"):
            return LookupStatus.NO_DATA, data
        return LookupStatus.FOUND, data

    @staticmethod
    def _parse_asn(org: Optional[str]) -> Optional[str]:
        if not org:
            return None
        token = org.split(" ", 1)[0].upper()
        return token if token.startswith("AS") and token[2:].isdigit() else None

    @staticmethod
    def _parse_loc(loc: Optional[str]) -> tuple[Optional[float], Optional[float]]:
        if not loc:
            return None, None
        try:
            lat, lon = (float(part) for part in loc.split(",", 1))
        except ValueError:
            return None, None
        return lat, lon

    async def lookup(self, ip: str) -> GeoLookupResult:
        address = parse_ip(ip)
        if address is None:
            logger.warning("invalid_ip_format", ip=_redact(str(ip)))
            return GeoLookupResult.malformed("invalid IP address format")

        status, data = await self._fetch(address)
        if status is LookupStatus.FAILED:
            return GeoLookupResult.failed("ipinfo lookup failed")
        if status is LookupStatus.NO_DATA or not data.get("country"):
            return GeoLookupResult.no_data()

        latitude, longitude = self._parse_loc(data.get("loc"))
        return GeoLookupResult.found(
            GeoLocation(
                country_code=data.get("country"),
                city=data.get("city"),
                postal_code=data.get("postal"),
                latitude=latitude,
                longitude=longitude,
                time_zone=data.get("timezone"),
                subdivision_name=data.get("region"),
                asn=self._parse_asn(data.get("org")),
            )
        )

    async def lookup_asn(self, ip: str) -> AsnLookupResult:
        address = parse_ip(ip)
        if address is None:
            return AsnLookupResult(status=LookupStatus.MALFORMED, detail="invalid IP address format")

        status, data = await self._fetch(address)
        if status is not LookupStatus.FOUND:
            return AsnLookupResult(status=status)

        asn = self._parse_asn(data.get("org"))
        if asn is None:
            return AsnLookupResult(status=LookupStatus.NO_DATA)
        return AsnLookupResult(status=LookupStatus.FOUND, asn=asn)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


# =============================================================================
# Cached ASN lookups
# =============================================================================


class CachingAsnLookup:
    """
    Caches successful ASN lookups in front of another ``AsnLookup``.

    Only FOUND results are stored. NO_DATA, MALFORMED and FAILED answers go
    straight back to the caller so a transient outage is retried next time.
    The wrapped lookup is not closed here; it belongs to whoever built it.
    """

    KEY_PREFIX = "asn:"

    def __init__(
        self,
        delegate: AsnLookup,
        cache: CacheService,
        ttl: timedelta = timedelta(hours=24),
    ):
        self.delegate = delegate
        self.cache = cache
        self.ttl = ttl

    def _key(self, address: str) -> str:
        return f"{self.KEY_PREFIX}{address}"

    async def lookup_asn(self, ip: str) -> AsnLookupResult:
        address = parse_ip(ip)
        if address is None:
            return await self.delegate.lookup_asn(ip)

        try:
            cached = await self.cache.cache_get(self._key(address))
        except Exception as e:
            logger.warning("asn_cache_read_failed", ip=_redact(address), error=str(e))
            cached = None
        if isinstance(cached, AsnLookupResult):
            logger.debug("asn_cache_hit", ip=_redact(address))
            return cached

        result = await self.delegate.lookup_asn(address)
        if result.status is LookupStatus.FOUND and result.asn:
            try:
                await self.cache.cache_set(self._key(address), result, self.ttl.total_seconds())
            except Exception as e:
                logger.warning("asn_cache_write_failed", ip=_redact(address), error=str(e))
        return result


def build_geo_location_provider(
    settings: Settings,
) -> MaxMindGeoLocationProvider | IPInfoGeoLocationProvider:
    """
    Select a provider from configuration.

    A local MaxMind database wins over the HTTP API. Having neither is a
    deployment error, not an "unknown location".
    """
    if settings.GEOIP_CITY_DB_PATH:
        return MaxMindGeoLocationProvider(
            city_db_path=settings.GEOIP_CITY_DB_PATH,
            asn_db_path=settings.GEOIP_ASN_DB_PATH,
        )
    if settings.IPINFO_TOKEN:
        return IPInfoGeoLocationProvider(
            token=settings.IPINFO_TOKEN,
            timeout=settings.GEO_LOOKUP_TIMEOUT_SECONDS,
        )
    raise GeoConfigurationError("Set GEOIP_CITY_DB_PATH or IPINFO_TOKEN to enable geolocation")
