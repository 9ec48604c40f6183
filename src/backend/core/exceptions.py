"""
Exceptions raised by the geolocation risk engine.

Expected lookup outcomes (no data, malformed address) are reported through
tagged results and never raised; these classes cover the remaining cases.
"""


class GeoRiskError(Exception):
    """Base exception for the geolocation risk engine."""

    pass


class GeoConfigurationError(GeoRiskError):
    """Raised when the engine cannot be assembled from the current settings."""

    pass


class GeoLookupUnavailableError(GeoRiskError):
    """Raised when the geolocation subsystem is broken rather than merely empty."""

    pass


class VpnCheckError(GeoRiskError):
    """Base exception for the reputation-backed VPN check."""

    pass


class AsnLookupFailedError(VpnCheckError):
    """Raised when the ASN lookup failed or timed out."""

    pass


class MalformedAddressError(VpnCheckError):
    """Raised when the address handed to the VPN check is not a valid IP."""

    pass
