"""
ASN reputation tracking.

Every deep VPN check records whether the address looked like a VPN. Over
time an ASN whose traffic is mostly anonymised drifts toward a score of 0.0
and a well-behaved one toward 1.0.
"""

from datetime import timedelta
from typing import Protocol, runtime_checkable

import structlog

from schemas.geo import AsnReputationEntry, normalize_asn
from services.cache_service import CacheService, utc_now

logger = structlog.get_logger(__name__)

NEUTRAL_REPUTATION = 0.5


@runtime_checkable
class AsnReputationProvider(Protocol):
    """Reputation store consulted by the VPN check."""

    async def record_activity(self, asn: str, was_vpn: bool) -> None: ...

    async def get_reputation_score(self, asn: str) -> float: ...


class AsnReputationService:
    """Cache-backed ASN reputation counters with a sliding TTL."""

    KEY_PREFIX = "reputation:asn:"

    def __init__(self, cache: CacheService, ttl: timedelta = timedelta(hours=168)):
        self.cache = cache
        self.ttl = ttl

    def _key(self, asn: str) -> str:
        return f"{self.KEY_PREFIX}{asn}"

    async def get_entry(self, asn: str) -> AsnReputationEntry | None:
        normalized = normalize_asn(asn)
        if normalized is None:
            return None
        entry = await self.cache.cache_get(self._key(normalized))
        return entry if isinstance(entry, AsnReputationEntry) else None

    async def record_activity(self, asn: str, was_vpn: bool) -> None:
        """Count one observation for ``asn`` and refresh its TTL."""
        normalized = normalize_asn(asn)
        if normalized is None:
            return

        try:
            current = await self.get_entry(normalized) or AsnReputationEntry(asn=normalized)
            updated = AsnReputationEntry(
                asn=normalized,
                suspicious_count=current.suspicious_count + (1 if was_vpn else 0),
                legitimate_count=current.legitimate_count + (0 if was_vpn else 1),
                last_updated=utc_now(),
            )
            await self.cache.cache_set(self._key(normalized), updated, self.ttl.total_seconds())
        except Exception as e:
            logger.error("asn_reputation_update_failed", asn=normalized, error=str(e))

    async def get_reputation_score(self, asn: str) -> float:
        """
        Legitimate share of observations for ``asn``.

        Unseen or blank ASNs and cache errors score a neutral 0.5.
        """
        try:
            entry = await self.get_entry(asn)
        except Exception as e:
            logger.error("asn_reputation_read_failed", asn=asn, error=str(e))
            return NEUTRAL_REPUTATION

        if entry is None:
            return NEUTRAL_REPUTATION
        return entry.reputation_score
