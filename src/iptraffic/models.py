"""Traffic data models — deltas, cumulative stats, connection rows, geo records."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field

UNKNOWN = "Unknown"


class BackendState(enum.Enum):
    """Lifecycle state of the backend driver."""

    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class TrafficDelta:
    """Traffic observed for one remote IP during one sampling window."""

    remote_ip: str
    tx_bytes: int = 0
    rx_bytes: int = 0
    tx_packets: int = 0
    rx_packets: int = 0

    @property
    def total_bytes(self) -> int:
        return self.tx_bytes + self.rx_bytes


@dataclass
class TrafficStats:
    """Cumulative counters for one remote IP. Values only ever grow."""

    tx_bytes: int = 0
    rx_bytes: int = 0
    tx_packets: int = 0
    rx_packets: int = 0

    def add(self, delta: TrafficDelta) -> None:
        self.tx_bytes += delta.tx_bytes
        self.rx_bytes += delta.rx_bytes
        self.tx_packets += delta.tx_packets
        self.rx_packets += delta.rx_packets

    @property
    def total_bytes(self) -> int:
        return self.tx_bytes + self.rx_bytes


@dataclass(frozen=True)
class ConnectionEntry:
    """One row of the kernel connection table."""

    local_addr: tuple[str, int]
    remote_addr: tuple[str, int]
    inode: int
    state: str = "ESTABLISHED"

    @property
    def remote_ip(self) -> str:
        return self.remote_addr[0]


@dataclass(frozen=True)
class GeoRecord:
    """Geographic origin of a remote IP."""

    country: str = UNKNOWN
    province: str = UNKNOWN
    city: str = UNKNOWN
    isp: str = UNKNOWN

    @classmethod
    def unknown(cls) -> GeoRecord:
        return _UNKNOWN_RECORD

    @property
    def is_unknown(self) -> bool:
        return self == _UNKNOWN_RECORD


_UNKNOWN_RECORD = GeoRecord()


@dataclass(frozen=True)
class WindowSummary:
    """One completed sampling window, as handed to the console reporter."""

    index: int
    deltas: tuple[TrafficDelta, ...]
    finished_at: float = field(default_factory=time.time)
