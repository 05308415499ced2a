"""Tests for /proc/net parsing and the freshness-budgeted resolver."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

from iptraffic.proc.conntable import (
    ConnectionTable,
    ConnectionTableResolver,
    parse_endpoint,
    parse_listing,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestParsing:
    def test_parse_endpoint_ipv4(self):
        assert parse_endpoint("0100007F:1F90") == ("127.0.0.1", 8080)

    def test_parse_endpoint_ipv6(self):
        assert parse_endpoint("00470626000000000000000011110000:01BB") == (
            "2606:4700::1111",
            443,
        )

    def test_parse_endpoint_malformed(self):
        assert parse_endpoint("nonsense") is None
        assert parse_endpoint("0100007F:ZZZZ") is None

    def test_tcp_listing(self, fixtures_dir: Path):
        entries = parse_listing((fixtures_dir / "proc_net_tcp").read_text())
        assert len(entries) == 4
        first = entries[1]
        assert first.local_addr == ("10.0.0.5", 54000)
        assert first.remote_addr == ("93.184.216.34", 443)
        assert first.inode == 98765
        assert first.state == "ESTABLISHED"
        assert entries[0].state == "LISTEN"
        assert entries[3].state == "TIME_WAIT"

    def test_tcp6_listing(self, fixtures_dir: Path):
        entries = parse_listing((fixtures_dir / "proc_net_tcp6").read_text())
        assert [e.remote_ip for e in entries] == ["192.168.1.1", "2606:4700::1111"]
        assert [e.inode for e in entries] == [22222, 33333]

    def test_udp_states(self):
        text = (
            "  sl  local_address rem_address   st tx_queue rx_queue tr tm->when retrnsmt   uid  timeout inode\n"
            "   0: 0500000A:0035 00000000:0000 07 00000000:00000000 00:00000000 00000000     0        0 111 2\n"
            "   1: 0500000A:D000 08080808:0035 01 00000000:00000000 00:00000000 00000000     0        0 222 2\n"
        )
        entries = parse_listing(text, "udp")
        assert [e.state for e in entries] == ["UNCONN", "ESTABLISHED"]
        assert parse_listing(text)[0].state == "CLOSE"

    def test_resolver_labels_udp_sources(self, fixtures_dir: Path, tmp_path: Path):
        udp = tmp_path / "udp"
        udp.write_text((fixtures_dir / "proc_net_tcp").read_text().replace(" 0A ", " 07 "))
        resolver = ConnectionTableResolver(sources=[udp])
        assert resolver.refresh().entries[0].state == "UNCONN"

    def test_header_only(self):
        assert parse_listing("  sl  local_address rem_address   st\n") == []


class TestConnectionTable:
    def test_first_row_wins(self, fixtures_dir: Path):
        table = ConnectionTable(parse_listing((fixtures_dir / "proc_net_tcp").read_text()))
        assert table.inode_for("93.184.216.34") == 98765

    def test_zero_inode_and_unconnected_rows_ignored(self, fixtures_dir: Path):
        table = ConnectionTable(parse_listing((fixtures_dir / "proc_net_tcp").read_text()))
        assert table.inode_for("9.9.9.9") is None
        assert table.inode_for("0.0.0.0") is None

    def test_unknown_ip(self):
        assert ConnectionTable().inode_for("1.1.1.1") is None


class TestResolver:
    def _resolver(self, fixtures_dir: Path, clock: FakeClock) -> ConnectionTableResolver:
        return ConnectionTableResolver(
            freshness=5.0,
            sources=[fixtures_dir / "proc_net_tcp", fixtures_dir / "proc_net_tcp6"],
            clock=clock,
        )

    def test_first_refresh_builds(self, fixtures_dir: Path):
        resolver = self._resolver(fixtures_dir, FakeClock())
        table = resolver.refresh()
        assert resolver.builds == 1
        assert table.inode_for("93.184.216.34") == 98765
        assert table.inode_for("2606:4700::1111") == 33333

    def test_fresh_table_is_reused(self, fixtures_dir: Path):
        clock = FakeClock()
        resolver = self._resolver(fixtures_dir, clock)
        with patch.object(resolver, "_read_listing", wraps=resolver._read_listing) as read:
            first = resolver.refresh()
            clock.advance(1.0)
            second = resolver.refresh()
        assert read.call_count == 1
        assert first is second

    def test_stale_table_rebuilt_once(self, fixtures_dir: Path):
        clock = FakeClock()
        resolver = self._resolver(fixtures_dir, clock)
        with patch.object(resolver, "_read_listing", wraps=resolver._read_listing) as read:
            resolver.refresh()
            clock.advance(5.0)
            resolver.refresh()
            resolver.refresh()
        assert read.call_count == 2
        assert resolver.builds == 2

    def test_third_call_after_budget_reads_once_more(self, fixtures_dir: Path):
        clock = FakeClock()
        resolver = self._resolver(fixtures_dir, clock)
        with patch.object(resolver, "_read_listing", wraps=resolver._read_listing) as read:
            resolver.refresh()
            clock.advance(1.0)
            resolver.refresh()
            assert read.call_count == 1
            clock.advance(5.0)
            resolver.refresh()
        assert read.call_count == 2

    def test_force_rebuilds(self, fixtures_dir: Path):
        resolver = self._resolver(fixtures_dir, FakeClock())
        resolver.refresh()
        resolver.refresh(force=True)
        assert resolver.builds == 2

    def test_unreadable_source_serves_stale_table(self, fixtures_dir: Path):
        clock = FakeClock()
        resolver = self._resolver(fixtures_dir, clock)
        original = resolver.refresh()
        clock.advance(10.0)

        with patch.object(resolver, "_read_listing", side_effect=OSError("denied")):
            served = resolver.refresh()

        assert served is original
        assert resolver.builds == 1

    def test_missing_sources_only_fail_when_all_missing(self, fixtures_dir: Path, tmp_path: Path):
        resolver = ConnectionTableResolver(
            sources=[tmp_path / "absent", fixtures_dir / "proc_net_tcp"],
            clock=FakeClock(),
        )
        assert resolver.refresh().inode_for("93.184.216.34") == 98765

        empty = ConnectionTableResolver(sources=[tmp_path / "absent"], clock=FakeClock())
        assert len(empty.refresh()) == 0
        assert empty.builds == 0
