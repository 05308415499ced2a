"""Tests for the geo enrichment cache, using stand-in database readers."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import geoip2.errors
import pytest

from iptraffic.errors import ConfigError
from iptraffic.geo import GeoEnrichmentCache
from iptraffic.models import GeoRecord


def _city_response(country=None, province=None, city=None):
    return SimpleNamespace(
        country=SimpleNamespace(name=country),
        subdivisions=[SimpleNamespace(name=province)] if province else [],
        city=SimpleNamespace(name=city),
    )


@pytest.fixture
def city_reader() -> MagicMock:
    reader = MagicMock()
    reader.city.return_value = _city_response("中国", "广东", "深圳")
    return reader


def test_no_database_reports_unknown():
    geo = GeoEnrichmentCache()
    assert not geo.enabled
    assert geo.lookup("93.184.216.34") is GeoRecord.unknown()
    assert len(geo) == 0


def test_open_without_paths_is_disabled():
    assert not GeoEnrichmentCache.open(None).enabled


def test_open_bad_path_is_config_error(tmp_path):
    with pytest.raises(ConfigError):
        GeoEnrichmentCache.open(tmp_path / "missing.mmdb")


def test_city_lookup(city_reader):
    geo = GeoEnrichmentCache(city_reader)
    record = geo.lookup("93.184.216.34")
    assert record == GeoRecord(country="中国", province="广东", city="深圳", isp="Unknown")


def test_missing_fields_are_unknown(city_reader):
    city_reader.city.return_value = _city_response("United States")
    record = GeoEnrichmentCache(city_reader).lookup("93.184.216.34")
    assert record.country == "United States"
    assert record.province == "Unknown"
    assert record.city == "Unknown"


def test_lookup_is_cached(city_reader):
    geo = GeoEnrichmentCache(city_reader)
    geo.lookup("93.184.216.34")
    geo.lookup("93.184.216.34")
    city_reader.city.assert_called_once_with("93.184.216.34")


def test_address_not_found_cached_as_unknown(city_reader):
    city_reader.city.side_effect = geoip2.errors.AddressNotFoundError("not found")
    geo = GeoEnrichmentCache(city_reader)
    assert geo.lookup("10.0.0.1").is_unknown
    assert geo.lookup("10.0.0.1").is_unknown
    city_reader.city.assert_called_once()


def test_asn_database_fills_isp(city_reader):
    asn_reader = MagicMock()
    asn_reader.metadata.return_value = SimpleNamespace(database_type="GeoLite2-ASN")
    asn_reader.asn.return_value = SimpleNamespace(autonomous_system_organization="EDGECAST")

    record = GeoEnrichmentCache(city_reader, asn_reader).lookup("93.184.216.34")
    assert record.isp == "EDGECAST"
    asn_reader.isp.assert_not_called()


def test_isp_database_fills_isp():
    isp_reader = MagicMock()
    isp_reader.metadata.return_value = SimpleNamespace(database_type="GeoIP2-ISP")
    isp_reader.isp.return_value = SimpleNamespace(isp="China Telecom")

    geo = GeoEnrichmentCache(isp_reader=isp_reader)
    assert geo.enabled
    assert geo.lookup("1.1.1.1") == GeoRecord(isp="China Telecom")


def test_close_closes_readers(city_reader):
    isp_reader = MagicMock()
    isp_reader.metadata.return_value = SimpleNamespace(database_type="GeoIP2-ISP")
    GeoEnrichmentCache(city_reader, isp_reader).close()
    city_reader.close.assert_called_once()
    isp_reader.close.assert_called_once()
