"""
Advisory lock on a `.ctdd` directory.

`init` and `post-response` rewrite `state.json` read-modify-write, so two
concurrent writers would drop a history entry. The lock is a JSON file created
with O_EXCL; a holder that died or is older than the stale threshold is
evicted.
"""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterator

from ctdd_coach.project_spec import utc_now


LOG = logging.getLogger(__name__)

LOCK_FILE = ".lock"
POLL_SECONDS = 0.1


@dataclass(frozen=True)
class LockHolder:
    token: str
    pid: int
    command: str
    created_epoch: float
    created_at: str

    @classmethod
    def for_current_process(cls, command: str) -> LockHolder:
        now = time.time()
        return cls(
            token=f"{os.getpid()}-{int(now * 1000)}",
            pid=os.getpid(),
            command=command,
            created_epoch=now,
            created_at=utc_now(),
        )

    @classmethod
    def read(cls, lock_path: Path) -> LockHolder | None:
        """The recorded holder, or None when the file is gone or unreadable."""
        try:
            raw = json.loads(lock_path.read_text(encoding="utf-8"))
            return cls(
                token=str(raw["token"]),
                pid=int(raw["pid"]),
                command=str(raw.get("command", "")),
                created_epoch=float(raw["created_epoch"]),
                created_at=str(raw.get("created_at", "")),
            )
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def is_alive(self) -> bool:
        if self.pid <= 0:
            return False
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True


def eviction_reason(holder: LockHolder | None, stale_seconds: float) -> str | None:
    if holder is None:
        return "unreadable lock file"
    if time.time() - holder.created_epoch > stale_seconds:
        return f"held for more than {stale_seconds:g}s"
    if not holder.is_alive():
        return f"holder pid {holder.pid} is gone"
    return None


def _try_create(lock_path: Path, holder: LockHolder) -> bool:
    try:
        fd = os.open(lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(asdict(holder), f, indent=2, sort_keys=True)
        f.write("\n")
    return True


@contextmanager
def ctdd_lock(
    ctdd_dir: Path,
    command: str,
    timeout_seconds: float,
    stale_seconds: float,
    force: bool = False,
) -> Iterator[LockHolder]:
    """
    Hold `<ctdd_dir>/.lock` for the duration of the block.

    Raises RuntimeError("lock_timeout: ...") when a live holder keeps the lock
    past `timeout_seconds`. `force` evicts any holder.
    """
    ctdd_dir.mkdir(parents=True, exist_ok=True)
    lock_path = ctdd_dir / LOCK_FILE
    me = LockHolder.for_current_process(command)
    deadline = time.monotonic() + timeout_seconds

    while not _try_create(lock_path, me):
        current = LockHolder.read(lock_path)
        reason = "forced" if force else eviction_reason(current, stale_seconds)
        if reason is not None:
            LOG.info("evicting lock %s: %s", lock_path, reason)
            lock_path.unlink(missing_ok=True)
            continue
        if time.monotonic() >= deadline:
            owner = f"pid={current.pid} command={current.command}" if current else "unknown"
            raise RuntimeError(f"lock_timeout: {lock_path} is held ({owner})")
        time.sleep(POLL_SECONDS)

    try:
        yield me
    finally:
        current = LockHolder.read(lock_path)
        if current is not None and current.token == me.token:
            lock_path.unlink(missing_ok=True)
