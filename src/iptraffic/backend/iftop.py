"""Rate-window backend built on iftop's text mode."""

from __future__ import annotations

import logging
import shutil
import socket
from collections.abc import Iterator

import psutil

from iptraffic.backend.parser import IftopParser, IftopWindow
from iptraffic.backend.subprocess_ import SubprocessBackend
from iptraffic.errors import BackendError

logger = logging.getLogger(__name__)


def interface_addresses(interface: str) -> frozenset[str]:
    """Return the IPv4/IPv6 addresses bound to ``interface``."""
    addrs = psutil.net_if_addrs().get(interface)
    if addrs is None:
        raise BackendError(f"network interface {interface!r} not found")
    return frozenset(
        a.address.split("%", 1)[0]
        for a in addrs
        if a.family in (socket.AF_INET, socket.AF_INET6)
    )


class IftopBackend(SubprocessBackend):
    """Runs ``iftop -t -s <window>`` once per sampling window.

    Each run prints a single text block and exits cleanly; the next run is
    launched as soon as the previous one finishes. A non-zero exit while
    running is a backend failure.
    """

    name = "iftop"

    def __init__(self, interface: str, window_seconds: int = 2, executable: str = "iftop") -> None:
        super().__init__()
        self.interface = interface
        self.window_seconds = window_seconds
        self.executable = executable
        self.local_addresses: frozenset[str] = frozenset()

    def check(self) -> None:
        if shutil.which(self.executable) is None:
            raise BackendError(f"{self.executable} not found on PATH")
        self.local_addresses = interface_addresses(self.interface)
        if not self.local_addresses:
            raise BackendError(f"interface {self.interface!r} has no IP address")
        logger.info(
            "iftop backend on %s, local address(es): %s",
            self.interface,
            ", ".join(sorted(self.local_addresses)),
        )

    def command(self) -> list[str]:
        return [
            self.executable,
            "-i",
            self.interface,
            "-t",
            "-s",
            str(self.window_seconds),
            "-n",
            "-N",
        ]

    def new_parser(self) -> IftopWindow:
        return IftopWindow(IftopParser(self.window_seconds, self.local_addresses))

    def lines(self) -> Iterator[str]:
        proc = self._proc
        if proc is None:
            raise BackendError("iftop backend not started")

        while True:
            returncode = yield from self._stream(proc)
            if not self.is_running:
                return
            if returncode != 0:
                raise self._unexpected_exit(returncode)
            proc = self._launch()
            self._proc = proc
            if not self.is_running:
                # stop() raced with the relaunch
                proc.terminate()
                proc.wait()
                return
