"""
Multi-factor VPN / proxy detection.

No single signal is trusted on its own. The detector counts independent
indicators and flags an address once enough of them agree:
1. Address inside a known VPN provider range
2. ASN on the known-VPN denylist
3. Address inside a datacenter / cloud range
4. Reverse DNS name mentioning vpn, proxy, tor, exit or node (optional)
"""

import asyncio
import ipaddress
import re
import socket
from typing import Iterable, Optional

import structlog

from core.config import GeoRiskPolicy
from schemas.geo import normalize_asn

logger = structlog.get_logger(__name__)

SUSPICIOUS_HOSTNAME = re.compile(r".*(vpn|proxy|tor|exit|node).*", re.IGNORECASE)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def _load_networks(ranges: Iterable[str]) -> list[IPNetwork]:
    return [ipaddress.ip_network(r, strict=False) for r in ranges]


class VpnDetector:
    """Counts suspicious factors for an address against a minimum."""

    def __init__(
        self,
        known_vpn_asns: Iterable[str] = (),
        vpn_ranges: Iterable[str] = (),
        datacenter_ranges: Iterable[str] = (),
        min_suspicious_factors: int = 2,
        reverse_dns_enabled: bool = False,
        dns_timeout_seconds: float = 2.0,
    ):
        self.known_vpn_asns = frozenset(filter(None, (normalize_asn(a) for a in known_vpn_asns)))
        self._vpn_ranges = _load_networks(vpn_ranges)
        self._datacenter_ranges = _load_networks(datacenter_ranges)
        self.min_suspicious_factors = min_suspicious_factors
        self.reverse_dns_enabled = reverse_dns_enabled
        self.dns_timeout_seconds = dns_timeout_seconds

    @classmethod
    def from_policy(cls, policy: GeoRiskPolicy) -> "VpnDetector":
        return cls(
            known_vpn_asns=policy.known_vpn_asns,
            vpn_ranges=policy.known_vpn_ip_ranges,
            datacenter_ranges=policy.known_datacenter_ranges,
            min_suspicious_factors=policy.vpn_min_suspicious_factors,
            reverse_dns_enabled=policy.vpn_reverse_dns_enabled,
            dns_timeout_seconds=policy.lookup_timeout_seconds,
        )

    @staticmethod
    def _in_ranges(ip: str, networks: list[IPNetwork]) -> bool:
        try:
            ip_obj = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return any(ip_obj.version == network.version and ip_obj in network for network in networks)

    def is_vpn_ip_range(self, ip: str) -> bool:
        return self._in_ranges(ip, self._vpn_ranges)

    def is_datacenter_ip(self, ip: str) -> bool:
        return self._in_ranges(ip, self._datacenter_ranges)

    def is_known_vpn_asn(self, asn: Optional[str]) -> bool:
        normalized = normalize_asn(asn)
        return normalized is not None and normalized in self.known_vpn_asns

    async def _reverse_dns(self, ip: str) -> Optional[str]:
        try:
            hostname, _, _ = await asyncio.wait_for(
                asyncio.to_thread(socket.gethostbyaddr, ip),
                timeout=self.dns_timeout_seconds,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug("reverse_dns_failed", ip=ip[:8], error=str(e))
            return None
        return hostname

    async def has_suspicious_hostname(self, ip: str) -> bool:
        if not self.reverse_dns_enabled:
            return False
        hostname = await self._reverse_dns(ip)
        return bool(hostname and SUSPICIOUS_HOSTNAME.match(hostname))

    async def count_factors(self, ip: str, asn: Optional[str]) -> list[str]:
        """Return the names of the indicators that fired for ``ip``."""
        factors = []
        if self.is_vpn_ip_range(ip):
            factors.append("vpn_ip_range")
        if self.is_known_vpn_asn(asn):
            factors.append("known_vpn_asn")
        if self.is_datacenter_ip(ip):
            factors.append("datacenter_ip")
        if await self.has_suspicious_hostname(ip):
            factors.append("suspicious_hostname")
        return factors

    async def is_likely_vpn(self, ip: str, asn: Optional[str]) -> bool:
        factors = await self.count_factors(ip, asn)
        is_vpn = len(factors) >= self.min_suspicious_factors
        logger.debug(
            "vpn_detection_result",
            ip=ip[:8],
            asn=asn,
            factors=factors,
            is_vpn=is_vpn,
        )
        return is_vpn
