"""Exception hierarchy shared across the exporter."""

from __future__ import annotations


class IpTrafficError(Exception):
    """Base class for all exporter errors."""


class ConfigError(IpTrafficError):
    """Invalid configuration detected at startup."""


class BackendError(IpTrafficError):
    """The external traffic backend could not be started or died."""


class AddressError(IpTrafficError, ValueError):
    """A textual address could not be normalized to a canonical IP."""
