"""TrafficBackend protocol — all backend implementations must satisfy this."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Protocol, runtime_checkable

from iptraffic.backend.parser import WindowParser


@runtime_checkable
class TrafficBackend(Protocol):
    """Protocol for external traffic-observing processes."""

    name: str

    def check(self) -> None:
        """Verify prerequisites (executable, interface). Raises BackendError."""
        ...

    def start(self) -> None:
        """Launch the external process. Raises BackendError."""
        ...

    def lines(self) -> Iterator[str]:
        """Yield output lines; raise BackendError if the process dies unexpectedly."""
        ...

    def new_parser(self) -> WindowParser:
        """Return a fresh window parser for this backend's grammar."""
        ...

    def stop(self) -> None:
        """Terminate the external process."""
        ...
