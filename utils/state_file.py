"""Inter-process locking for the signal config document and JSONL queue files.

Every locked path ``p`` is guarded by a sibling ``p.lock`` file so that the
notification log, the execution queue and an external executor draining it
never observe a half-written line.
"""

from __future__ import annotations

import json
import os
import time
from contextlib import contextmanager
from typing import Any, Iterator

if os.name == "nt":  # pragma: no cover - windows-only runtime path
    import msvcrt

    def _lock_nb(fd: int) -> None:
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)

    def _release(fd: int) -> None:
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _lock_nb(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _release(fd: int) -> None:
        fcntl.flock(fd, fcntl.LOCK_UN)


E_STATE_LOCKED = "E_STATE_LOCKED"


class StateFileLockError(RuntimeError):
    """Raised when the file lock cannot be acquired in time."""

    code = E_STATE_LOCKED


@contextmanager
def state_file_lock(
    target_path: str,
    *,
    timeout_seconds: float = 2.0,
    poll_seconds: float = 0.05,
) -> Iterator[None]:
    lock_path = f"{target_path}.lock"
    os.makedirs(os.path.dirname(lock_path) or ".", exist_ok=True)
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        if os.fstat(fd).st_size == 0:
            # msvcrt locks a byte range, so the file needs at least one byte.
            os.write(fd, b"0")
        deadline = time.monotonic() + max(0.05, float(timeout_seconds))
        while True:
            try:
                _lock_nb(fd)
                break
            except OSError as exc:
                if time.monotonic() >= deadline:
                    raise StateFileLockError(f"{E_STATE_LOCKED}: lock timeout path={target_path}") from exc
                time.sleep(max(0.01, float(poll_seconds)))
        try:
            yield
        finally:
            _release(fd)
    finally:
        os.close(fd)


def append_jsonl_locked(path: str, record: Any, **lock_kwargs: Any) -> None:
    with state_file_lock(path, **lock_kwargs):
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")


def read_jsonl_locked(path: str, **lock_kwargs: Any) -> list[Any]:
    if not os.path.exists(path):
        return []
    with state_file_lock(path, **lock_kwargs):
        with open(path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]


def read_json_locked(path: str, **lock_kwargs: Any) -> Any:
    """Read one JSON document; a UTF-8 BOM written by Windows editors is tolerated."""
    with state_file_lock(path, **lock_kwargs):
        with open(path, "r", encoding="utf-8-sig") as f:
            return json.load(f)
