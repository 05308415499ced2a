"""Kernel connection table — remote IP to socket inode, refreshed on a time budget."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

from iptraffic.addresses import normalize_ip
from iptraffic.errors import AddressError
from iptraffic.models import ConnectionEntry

logger = logging.getLogger(__name__)

DEFAULT_SOURCES: tuple[Path, ...] = (
    Path("/proc/net/tcp"),
    Path("/proc/net/tcp6"),
    Path("/proc/net/udp"),
    Path("/proc/net/udp6"),
)

DEFAULT_FRESHNESS = 5.0

# Only meaningful for TCP rows; UDP sockets reuse 01 and 07 for connected
# and unconnected.
_TCP_STATES = {
    "01": "ESTABLISHED",
    "02": "SYN_SENT",
    "03": "SYN_RECV",
    "04": "FIN_WAIT1",
    "05": "FIN_WAIT2",
    "06": "TIME_WAIT",
    "07": "CLOSE",
    "08": "CLOSE_WAIT",
    "09": "LAST_ACK",
    "0A": "LISTEN",
    "0B": "CLOSING",
}


def parse_endpoint(hex_endpoint: str) -> tuple[str, int] | None:
    """Parse a /proc/net address like ``0100007F:1F90`` into (ip, port)."""
    try:
        addr_hex, port_hex = hex_endpoint.rsplit(":", 1)
        return normalize_ip(addr_hex), int(port_hex, 16)
    except (ValueError, AddressError):
        return None


_UDP_STATES = {
    "01": "ESTABLISHED",
    "07": "UNCONN",
}


def parse_listing(text: str, protocol: str = "tcp") -> list[ConnectionEntry]:
    """Parse one /proc/net/{tcp,udp}[6] listing into entries."""
    states = _UDP_STATES if protocol == "udp" else _TCP_STATES
    entries: list[ConnectionEntry] = []
    for line in text.splitlines()[1:]:  # skip header
        parts = line.split()
        if len(parts) < 10:
            continue

        local = parse_endpoint(parts[1])
        remote = parse_endpoint(parts[2])
        if local is None or remote is None:
            logger.debug("Skipping unparseable connection row: %r", line)
            continue

        try:
            inode = int(parts[9])
        except ValueError:
            continue

        entries.append(
            ConnectionEntry(
                local_addr=local,
                remote_addr=remote,
                inode=inode,
                state=states.get(parts[3].upper(), "UNKNOWN"),
            )
        )
    return entries


class ConnectionTable:
    """Immutable snapshot of the kernel connection table."""

    def __init__(self, entries: Iterable[ConnectionEntry] = (), built_at: float = 0.0) -> None:
        self.entries: tuple[ConnectionEntry, ...] = tuple(entries)
        self.built_at = built_at
        self._by_remote: dict[str, int] = {}
        for entry in self.entries:
            if entry.inode == 0 or entry.remote_addr[1] == 0:
                continue
            # First row wins; rows are in listing order (tcp before udp)
            self._by_remote.setdefault(entry.remote_ip, entry.inode)

    def inode_for(self, remote_ip: str) -> int | None:
        """Return the socket inode of the first connection to ``remote_ip``."""
        return self._by_remote.get(remote_ip)

    def __len__(self) -> int:
        return len(self.entries)


class ConnectionTableResolver:
    """Serves a cached ConnectionTable, rebuilding it when older than ``freshness``.

    The table is replaced wholesale by a single reference swap, so readers
    holding the previous table keep a consistent view.
    """

    def __init__(
        self,
        freshness: float = DEFAULT_FRESHNESS,
        sources: Sequence[Path] = DEFAULT_SOURCES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.freshness = freshness
        self.sources = tuple(Path(s) for s in sources)
        self._clock = clock
        self._table = ConnectionTable()
        self._built_at: float | None = None
        self._refresh_lock = threading.Lock()
        self.builds = 0

    @property
    def table(self) -> ConnectionTable:
        return self._table

    @property
    def has_table(self) -> bool:
        """Whether a kernel listing has been read at least once."""
        return self._built_at is not None

    def refresh(self, force: bool = False) -> ConnectionTable:
        """Return the current table, re-reading the kernel listing if stale."""
        if not force and self._is_fresh():
            return self._table

        with self._refresh_lock:
            # Another thread may have rebuilt while we waited
            if not force and self._is_fresh():
                return self._table

            try:
                listings = self._read_listing()
            except OSError as exc:
                logger.warning(
                    "Cannot read connection table (%s) — serving stale table of %d row(s)",
                    exc,
                    len(self._table),
                )
                return self._table

            entries: list[ConnectionEntry] = []
            for protocol, text in listings:
                entries.extend(parse_listing(text, protocol))

            now = self._clock()
            self._table = ConnectionTable(entries, built_at=now)
            self._built_at = now
            self.builds += 1
            logger.debug("Connection table rebuilt: %d row(s)", len(entries))
            return self._table

    def _is_fresh(self) -> bool:
        return (
            self._built_at is not None
            and self._clock() - self._built_at < self.freshness
        )

    def _read_listing(self) -> list[tuple[str, str]]:
        """Read every source as (protocol, text). Raises OSError only if none could be read."""
        texts: list[tuple[str, str]] = []
        errors: list[str] = []
        for path in self.sources:
            try:
                texts.append((_protocol_of(path), path.read_text()))
            except FileNotFoundError:
                logger.debug("Connection source %s not present", path)
                errors.append(f"{path}: missing")
            except OSError as exc:
                errors.append(f"{path}: {exc}")
        if not texts:
            raise OSError("; ".join(errors) or "no connection sources configured")
        return texts


def _protocol_of(path: Path) -> str:
    return "udp" if path.name.startswith("udp") else "tcp"
