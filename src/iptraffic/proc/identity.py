"""Remote IP → owning local PID, resolved once per IP."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import psutil

from iptraffic.cache import ReadThroughCache
from iptraffic.proc.conntable import ConnectionTableResolver

logger = logging.getLogger(__name__)


class ProcessIdentityCache:
    """Maps a remote IP to the PID holding a socket connected to it.

    Results, including "no owner found", are cached for the lifetime of the
    cache and never re-resolved, even after the owning process exits.
    """

    def __init__(
        self,
        resolver: ConnectionTableResolver,
        proc_root: str | Path = "/proc",
        cache: ReadThroughCache[str, int | None] | None = None,
    ) -> None:
        self._resolver = resolver
        self._proc_root = Path(proc_root)
        self._cache: ReadThroughCache[str, int | None] = (
            cache if cache is not None else ReadThroughCache()
        )

    def resolve(self, remote_ip: str) -> int | None:
        """Return the owning PID for ``remote_ip``, or None if none was found.

        A lookup that fails for lack of /proc access is not cached, so the
        next call retries it.
        """
        try:
            return self._cache.get_or_fill(remote_ip, self._lookup)
        except OSError as exc:
            logger.warning("Cannot resolve owner of %s: %s", remote_ip, exc)
            return None

    def __len__(self) -> int:
        return len(self._cache)

    def _lookup(self, remote_ip: str) -> int | None:
        table = self._resolver.refresh()
        if not self._resolver.has_table:
            raise OSError("connection table unavailable")
        inode = table.inode_for(remote_ip)
        if inode is None:
            logger.debug("No socket found for %s", remote_ip)
            return None

        pid = self.find_pid_for_inode(inode)
        if pid is None:
            logger.debug("No process owns socket inode %d (%s)", inode, remote_ip)
        return pid

    def find_pid_for_inode(self, inode: int) -> int | None:
        """Scan process file descriptors for ``socket:[inode]``; lowest PID wins.

        Raises OSError if the process list itself cannot be read.
        """
        target = f"socket:[{inode}]"
        pids = sorted(psutil.pids())

        for pid in pids:
            fd_dir = self._proc_root / str(pid) / "fd"
            try:
                with os.scandir(fd_dir) as it:
                    for entry in it:
                        try:
                            if os.readlink(entry.path) == target:
                                return pid
                        except OSError:
                            continue
            except (FileNotFoundError, PermissionError, NotADirectoryError):
                # Process exited or belongs to another user
                continue
            except OSError as exc:
                logger.debug("Cannot scan %s: %s", fd_dir, exc)
                continue
        return None
