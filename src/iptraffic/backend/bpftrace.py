"""Event-tick backend built on a long-running bpftrace script."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
from collections.abc import Iterator
from pathlib import Path

from iptraffic.backend.parser import TickWindow
from iptraffic.backend.subprocess_ import SubprocessBackend
from iptraffic.errors import BackendError

logger = logging.getLogger(__name__)

# Probes: one transmit hook and two receive hooks, since some drivers hand
# packets to GRO and never hit netif_receive_skb.
_SCRIPT_TEMPLATE = """\
BEGIN
{{
    printf("BPFTRACE_MONITOR_START\\n");
}}

tracepoint:net:netif_receive_skb,
tracepoint:net:napi_gro_receive_entry
{{
    $skb = (struct sk_buff *)args->skbaddr;
    $iph = (struct iphdr *)($skb->head + $skb->network_header);
    @bytes[probe, ntop($iph->saddr)] = sum(args->len);
    @packets[probe, ntop($iph->saddr)] = count();
}}

tracepoint:net:net_dev_start_xmit
{{
    $skb = (struct sk_buff *)args->skbaddr;
    $iph = (struct iphdr *)($skb->head + $skb->network_header);
    @bytes[probe, ntop($iph->daddr)] = sum(args->len);
    @packets[probe, ntop($iph->daddr)] = count();
}}

interval:s:{interval}
{{
    printf("STATS_UPDATE\\n");
    print(@bytes);
    print(@packets);
    printf("STATS_END\\n");
    clear(@bytes);
    clear(@packets);
}}
"""


def render_script(interval: int) -> str:
    """Return the embedded bpftrace program for a given tick interval."""
    return _SCRIPT_TEMPLATE.format(interval=interval)


class BpftraceBackend(SubprocessBackend):
    """Runs one bpftrace process for the lifetime of the exporter."""

    name = "bpftrace"

    def __init__(
        self,
        window_seconds: int = 2,
        script_path: str | Path | None = None,
        public_only: bool = True,
        executable: str = "bpftrace",
    ) -> None:
        super().__init__()
        self.window_seconds = window_seconds
        self.script_path = Path(script_path) if script_path else None
        self.public_only = public_only
        self.executable = executable
        self._script_file: Path | None = None

    def script(self) -> str:
        if self.script_path is not None:
            try:
                return self.script_path.read_text(encoding="utf-8")
            except OSError as exc:
                raise BackendError(f"cannot read bpftrace script {self.script_path}: {exc}") from exc
        return render_script(self.window_seconds)

    def check(self) -> None:
        if shutil.which(self.executable) is None:
            raise BackendError(f"{self.executable} not found on PATH")
        try:
            result = subprocess.run(
                [self.executable, "--version"],
                capture_output=True,
                text=True,
                timeout=5,
            )
        except (subprocess.TimeoutExpired, OSError) as exc:
            raise BackendError(f"{self.executable} --version failed: {exc}") from exc
        logger.info("bpftrace backend: %s", result.stdout.strip() or "version unknown")
        if self.script_path is not None and not self.script_path.is_file():
            raise BackendError(f"bpftrace script not found: {self.script_path}")

    def command(self) -> list[str]:
        if self._script_file is None:
            raise BackendError("bpftrace script not written")
        return [self.executable, "-B", "none", str(self._script_file)]

    def new_parser(self) -> TickWindow:
        return TickWindow(public_only=self.public_only)

    def start(self) -> None:
        script = self.script()
        try:
            fd, path = tempfile.mkstemp(prefix="iptraffic-", suffix=".bt")
        except OSError as exc:
            raise BackendError(f"cannot create bpftrace script file: {exc}") from exc
        self._script_file = Path(path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(script)
        except OSError as exc:
            self._remove_script()
            raise BackendError(f"cannot write bpftrace script {path}: {exc}") from exc
        try:
            super().start()
        except BackendError:
            self._remove_script()
            raise

    def lines(self) -> Iterator[str]:
        proc = self._proc
        if proc is None:
            raise BackendError("bpftrace backend not started")

        returncode = yield from self._stream(proc)
        if self.is_running:
            raise self._unexpected_exit(returncode)

    def stop(self) -> None:
        super().stop()
        self._remove_script()

    def _remove_script(self) -> None:
        if self._script_file is not None:
            self._script_file.unlink(missing_ok=True)
            self._script_file = None
