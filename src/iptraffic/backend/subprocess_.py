"""Shared plumbing for backends that wrap an external process."""

from __future__ import annotations

import logging
import subprocess
import threading
from collections import deque
from collections.abc import Iterator

from iptraffic.errors import BackendError

logger = logging.getLogger(__name__)

# Seconds to wait after SIGTERM before escalating to SIGKILL.
_TERMINATE_GRACE = 5

# Trailing output lines kept for error messages.
_TAIL_LINES = 10


class SubprocessBackend:
    """Launches a command and exposes its merged stdout/stderr as lines."""

    name = "subprocess"

    def __init__(self) -> None:
        self._proc: subprocess.Popen[str] | None = None
        self._running = threading.Event()
        self._tail: deque[str] = deque(maxlen=_TAIL_LINES)

    @property
    def is_running(self) -> bool:
        return self._running.is_set()

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    def command(self) -> list[str]:
        raise NotImplementedError

    def _launch(self) -> subprocess.Popen[str]:
        cmd = self.command()
        logger.debug("Launching %s: %s", self.name, " ".join(cmd))
        try:
            return subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise BackendError(f"cannot launch {self.name}: {exc}") from exc

    def start(self) -> None:
        self._tail.clear()
        self._proc = self._launch()
        self._running.set()
        logger.info("%s started (PID %d)", self.name, self._proc.pid)

    def _stream(self, proc: subprocess.Popen[str]) -> Iterator[str]:
        """Yield lines from ``proc`` until EOF; return its exit status via StopIteration."""
        assert proc.stdout is not None
        with proc.stdout:
            for line in proc.stdout:
                line = line.rstrip("\n")
                self._tail.append(line)
                yield line
        return proc.wait()

    def _unexpected_exit(self, returncode: int | None) -> BackendError:
        tail = " | ".join(line for line in self._tail if line.strip())
        return BackendError(
            f"{self.name} exited unexpectedly (status {returncode})"
            + (f": {tail}" if tail else "")
        )

    def stop(self) -> None:
        self._running.clear()
        proc = self._proc
        if proc is None:
            return
        if proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=_TERMINATE_GRACE)
            except subprocess.TimeoutExpired:
                logger.warning("%s ignored SIGTERM — killing", self.name)
                proc.kill()
                proc.wait()
        logger.info("%s stopped", self.name)
