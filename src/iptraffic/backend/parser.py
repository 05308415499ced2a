"""Line parsers for the two backend output grammars.

Grammar A (iftop text mode) reports paired rate lines per host::

       1 10.0.0.5                                 =>     2.59Kb     2.59Kb     2.59Kb       664B
         93.184.216.34                            <=     1.33Kb     1.33Kb     1.33Kb       340B

Grammar B (bpftrace) prints per-hook maps once per tick::

    STATS_UPDATE
    @bytes[tracepoint:net:netif_receive_skb, 93.184.216.34]: 1000
    @packets[tracepoint:net:netif_receive_skb, 93.184.216.34]: 3
    STATS_END

Single-line functions are stateless. The window classes hold only the state
needed to pair lines (A) or merge one tick's readings (B).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol

from iptraffic.addresses import is_public_address, normalize_ip
from iptraffic.errors import AddressError
from iptraffic.models import TrafficDelta

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Window parser protocol
# ---------------------------------------------------------------------------


class WindowParser(Protocol):
    """Turns a line stream into per-window batches of deltas."""

    def feed(self, line: str) -> list[TrafficDelta] | None:
        """Consume one line; return the finished window's deltas at a boundary."""
        ...

    def flush(self) -> list[TrafficDelta]:
        """Return whatever is pending (used when the stream ends)."""
        ...


def _merge_into(pending: dict[str, TrafficDelta], delta: TrafficDelta) -> None:
    prev = pending.get(delta.remote_ip)
    if prev is None:
        pending[delta.remote_ip] = delta
        return
    pending[delta.remote_ip] = TrafficDelta(
        remote_ip=delta.remote_ip,
        tx_bytes=prev.tx_bytes + delta.tx_bytes,
        rx_bytes=prev.rx_bytes + delta.rx_bytes,
        tx_packets=prev.tx_packets + delta.tx_packets,
        rx_packets=prev.rx_packets + delta.rx_packets,
    )


# ---------------------------------------------------------------------------
# Grammar A: iftop
# ---------------------------------------------------------------------------

# Unit suffix → bytes multiplier. iftop reports bits unless run with -B.
_RATE_UNITS: list[tuple[str, float]] = [
    ("Gb", 1024.0**3 / 8),
    ("Mb", 1024.0**2 / 8),
    ("Kb", 1024.0 / 8),
    ("GB", 1024.0**3),
    ("MB", 1024.0**2),
    ("KB", 1024.0),
    ("b", 1.0 / 8),
    ("B", 1.0),
]


def parse_rate(token: str) -> float:
    """Convert an iftop rate token like ``2.59Kb`` to bytes per second."""
    token = token.strip()
    if not token or token == "0":
        return 0.0
    for suffix, multiplier in _RATE_UNITS:
        if token.endswith(suffix):
            return float(token[: -len(suffix)]) * multiplier
    # Bare number: iftop's default unit is bits
    return float(token) / 8


def is_window_end(line: str) -> bool:
    """iftop terminates each text-mode block with a row of '='."""
    stripped = line.strip()
    return len(stripped) >= 10 and set(stripped) == {"="}


def _split_host(host: str) -> str:
    """Drop a ``:port`` suffix from an iftop host column when present."""
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


class IftopParser:
    """Pairs iftop ``=>``/``<=`` lines into TrafficDelta values.

    A ``=>`` line carries the local host and the transmit rate; the ``<=``
    line immediately after carries the remote host and the receive rate.
    Rates are converted to bytes by multiplying with the window length.
    """

    def __init__(
        self,
        window_seconds: float,
        local_addresses: frozenset[str] = frozenset(),
    ) -> None:
        self.window_seconds = window_seconds
        self.local_addresses = local_addresses
        self._pending_tx: float | None = None

    def feed(self, line: str) -> TrafficDelta | None:
        if "=>" in line:
            self._pending_tx = self._parse_send_line(line)
            return None

        if "<=" in line:
            tx_rate = self._pending_tx
            self._pending_tx = None
            if tx_rate is None:
                return None
            return self._parse_receive_line(line, tx_rate)

        self._pending_tx = None
        return None

    def reset(self) -> None:
        self._pending_tx = None

    def _parse_send_line(self, line: str) -> float | None:
        left, right = line.split("=>", 1)
        left_tokens = left.split()
        rate_tokens = right.split()
        if not left_tokens or not rate_tokens:
            return None

        if self.local_addresses:
            try:
                local = normalize_ip(_split_host(left_tokens[-1]))
            except AddressError:
                logger.debug("Dropping iftop line with bad local address: %r", line)
                return None
            if local not in self.local_addresses:
                return None

        try:
            return parse_rate(rate_tokens[0])
        except ValueError:
            logger.debug("Dropping iftop line with bad rate: %r", line)
            return None

    def _parse_receive_line(self, line: str, tx_rate: float) -> TrafficDelta | None:
        left, right = line.split("<=", 1)
        left_tokens = left.split()
        if not left_tokens:
            return None

        try:
            remote_ip = normalize_ip(_split_host(left_tokens[-1]))
        except AddressError:
            logger.debug("Dropping iftop line with bad remote address: %r", line)
            return None

        rate_tokens = right.split()
        try:
            rx_rate = parse_rate(rate_tokens[0]) if rate_tokens else 0.0
        except ValueError:
            logger.debug("Dropping iftop line with bad rate: %r", line)
            return None

        return TrafficDelta(
            remote_ip=remote_ip,
            tx_bytes=int(tx_rate * self.window_seconds),
            rx_bytes=int(rx_rate * self.window_seconds),
        )


class IftopWindow:
    """Collects iftop pairs until the block terminator line."""

    def __init__(self, parser: IftopParser) -> None:
        self._parser = parser
        self._pending: dict[str, TrafficDelta] = {}

    def feed(self, line: str) -> list[TrafficDelta] | None:
        if is_window_end(line):
            return self.flush()
        delta = self._parser.feed(line)
        if delta is not None:
            _merge_into(self._pending, delta)
        return None

    def flush(self) -> list[TrafficDelta]:
        deltas = list(self._pending.values())
        self._pending.clear()
        self._parser.reset()
        return deltas


# ---------------------------------------------------------------------------
# Grammar B: bpftrace
# ---------------------------------------------------------------------------

TX_HOOK = "net_dev_start_xmit"
RX_HOOK = "netif_receive_skb"
RX_GRO_HOOK = "napi_gro_receive_entry"

RECEIVE_HOOKS = frozenset({RX_HOOK, RX_GRO_HOOK})
TRANSMIT_HOOKS = frozenset({TX_HOOK})

TICK_START = "STATS_UPDATE"
TICK_END = "STATS_END"

# @bytes[tracepoint:net:netif_receive_skb, 1.2.3.4]: 1000
_HOOK_LINE_RE = re.compile(
    r"^@(?P<kind>bytes|packets)\[(?P<probe>[^,\]]+),\s*(?P<addr>[^\]]+)\]:\s*(?P<value>\d+)$"
)
# Single-key maps from older scripts: @tx_bytes[1.2.3.4]: 1000
_LEGACY_LINE_RE = re.compile(
    r"^@(?P<dir>tx|rx)_(?P<kind>bytes|packets)\[(?P<addr>[^\],]+)\]:\s*(?P<value>\d+)$"
)


@dataclass(frozen=True)
class HookSample:
    """One per-tick reading from a traced kernel hook."""

    hook: str
    remote_ip: str
    kind: str  # "bytes" or "packets"
    value: int


def parse_bpftrace_line(line: str) -> HookSample | None:
    """Parse one bpftrace map line, or return None for anything else."""
    stripped = line.strip()
    if not stripped.startswith("@"):
        return None

    match = _HOOK_LINE_RE.match(stripped)
    if match is not None:
        hook = match.group("probe").strip().rsplit(":", 1)[-1]
        kind = match.group("kind")
    else:
        match = _LEGACY_LINE_RE.match(stripped)
        if match is None:
            logger.debug("Dropping unrecognized bpftrace line: %r", line)
            return None
        hook = TX_HOOK if match.group("dir") == "tx" else RX_HOOK
        kind = match.group("kind")

    try:
        remote_ip = normalize_ip(match.group("addr"))
    except AddressError:
        logger.debug("Dropping bpftrace line with bad address: %r", line)
        return None

    return HookSample(
        hook=hook,
        remote_ip=remote_ip,
        kind=kind,
        value=int(match.group("value")),
    )


class TickWindow:
    """Merges one bpftrace tick's hook readings into per-IP deltas.

    Each reading is cumulative for the tick, so a repeated
    ``(hook, ip, kind)`` replaces the earlier value. Receive bytes and
    packets are the sum of both receive hooks.
    """

    def __init__(self, public_only: bool = True) -> None:
        self.public_only = public_only
        self._readings: dict[tuple[str, str, str], int] = {}

    def feed(self, line: str) -> list[TrafficDelta] | None:
        stripped = line.strip()
        if stripped == TICK_START:
            self._readings.clear()
            return None
        if stripped == TICK_END:
            return self.flush()

        sample = parse_bpftrace_line(stripped)
        if sample is not None:
            self.add(sample)
        return None

    def add(self, sample: HookSample) -> None:
        if sample.hook not in RECEIVE_HOOKS and sample.hook not in TRANSMIT_HOOKS:
            logger.debug("Ignoring reading from untracked hook %s", sample.hook)
            return
        if self.public_only and not is_public_address(sample.remote_ip):
            return
        self._readings[(sample.hook, sample.remote_ip, sample.kind)] = sample.value

    def flush(self) -> list[TrafficDelta]:
        totals: dict[str, dict[str, int]] = {}
        for (hook, ip, kind), value in self._readings.items():
            direction = "tx" if hook in TRANSMIT_HOOKS else "rx"
            fields = totals.setdefault(ip, {})
            key = f"{direction}_{kind}"
            fields[key] = fields.get(key, 0) + value
        self._readings.clear()

        return [
            TrafficDelta(remote_ip=ip, **fields)
            for ip, fields in totals.items()
            if any(fields.values())
        ]
