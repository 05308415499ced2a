"""IP geolocation enrichment backed by a memory-mapped MaxMind database.

The city database is opened once with ``MODE_MMAP`` so resident memory only
grows with the pages touched by observed addresses. Results, including the
"Unknown" record for addresses not in the database, are cached per IP.

GeoLite2-City carries no ISP field; an optional GeoIP2-ISP or GeoLite2-ASN
database fills it in.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import geoip2.database
import geoip2.errors
import maxminddb
from maxminddb import MODE_MMAP

from iptraffic.cache import ReadThroughCache
from iptraffic.errors import ConfigError
from iptraffic.models import UNKNOWN, GeoRecord

logger = logging.getLogger(__name__)

DEFAULT_LOCALES: tuple[str, ...] = ("zh-CN", "en")

# Errors that mean "no answer for this IP" rather than a broken setup.
_LOOKUP_ERRORS = (
    geoip2.errors.AddressNotFoundError,
    maxminddb.InvalidDatabaseError,
    ValueError,
    TypeError,
)


def _open_reader(path: str | Path, locales: Sequence[str]) -> geoip2.database.Reader:
    try:
        return geoip2.database.Reader(str(path), locales=list(locales), mode=MODE_MMAP)
    except (OSError, ValueError, maxminddb.InvalidDatabaseError) as exc:
        raise ConfigError(f"cannot open GeoIP database {path}: {exc}") from exc


def _name(record: Any) -> str:
    """Localized name of a geoip2 record, or "Unknown"."""
    name = getattr(record, "name", None) if record is not None else None
    return name or UNKNOWN


class GeoEnrichmentCache:
    """Read-through cache of GeoRecord values keyed by remote IP."""

    def __init__(
        self,
        city_reader: Any = None,
        isp_reader: Any = None,
        cache: ReadThroughCache[str, GeoRecord] | None = None,
    ) -> None:
        self._city_reader = city_reader
        self._isp_reader = isp_reader
        self._isp_is_asn = False
        if isp_reader is not None:
            db_type = getattr(isp_reader.metadata(), "database_type", "")
            self._isp_is_asn = "ASN" in db_type
        self._cache: ReadThroughCache[str, GeoRecord] = (
            cache if cache is not None else ReadThroughCache()
        )

    @classmethod
    def open(
        cls,
        city_db: str | Path | None,
        isp_db: str | Path | None = None,
        locales: Sequence[str] = DEFAULT_LOCALES,
        max_entries: int | None = None,
    ) -> GeoEnrichmentCache:
        """Open the configured databases. Raises ConfigError on a bad path."""
        city_reader = _open_reader(city_db, locales) if city_db else None
        isp_reader = _open_reader(isp_db, locales) if isp_db else None
        if city_reader is not None:
            logger.info(
                "GeoIP database loaded: %s (%s)",
                city_db,
                city_reader.metadata().database_type,
            )
        else:
            logger.info("No GeoIP database configured — locations will be reported as Unknown")
        return cls(city_reader, isp_reader, ReadThroughCache(max_entries))

    @property
    def enabled(self) -> bool:
        return self._city_reader is not None or self._isp_reader is not None

    def lookup(self, remote_ip: str) -> GeoRecord:
        """Return the GeoRecord for ``remote_ip``; never raises."""
        if not self.enabled:
            return GeoRecord.unknown()
        return self._cache.get_or_fill(remote_ip, self._do_lookup)

    def close(self) -> None:
        for reader in (self._city_reader, self._isp_reader):
            if reader is not None:
                reader.close()

    def __len__(self) -> int:
        return len(self._cache)

    def _do_lookup(self, remote_ip: str) -> GeoRecord:
        country = province = city = UNKNOWN

        if self._city_reader is not None:
            try:
                response = self._city_reader.city(remote_ip)
            except _LOOKUP_ERRORS as exc:
                logger.debug("GeoIP lookup miss for %s: %s", remote_ip, exc)
            else:
                country = _name(response.country)
                subdivisions = list(response.subdivisions)
                province = _name(subdivisions[0]) if subdivisions else UNKNOWN
                city = _name(response.city)

        return GeoRecord(
            country=country,
            province=province,
            city=city,
            isp=self._lookup_isp(remote_ip),
        )

    def _lookup_isp(self, remote_ip: str) -> str:
        if self._isp_reader is None:
            return UNKNOWN
        try:
            if self._isp_is_asn:
                return self._isp_reader.asn(remote_ip).autonomous_system_organization or UNKNOWN
            return self._isp_reader.isp(remote_ip).isp or UNKNOWN
        except _LOOKUP_ERRORS as exc:
            logger.debug("ISP lookup miss for %s: %s", remote_ip, exc)
            return UNKNOWN
