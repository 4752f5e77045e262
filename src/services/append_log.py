"""Append-only JSON Lines logs with scoped exclusive access."""

import fcntl
import hashlib
import os
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

EMPTY_DIGEST = hashlib.sha256(b"").hexdigest()


def chain_digest(previous: str, line: str) -> str:
    """Fold one log line into a running digest."""
    return hashlib.sha256((previous + line).encode("utf-8")).hexdigest()


def digest_lines(lines: Iterable[str]) -> tuple[str, int]:
    """Digest and line count of a whole log."""
    digest = EMPTY_DIGEST
    count = 0
    for line in lines:
        digest = chain_digest(digest, line)
        count += 1
    return digest, count


class FileAppendLog:
    """One newline-delimited JSON file, guarded by a thread lock and an flock."""

    def __init__(self, path: Path):
        if path is None:
            raise ValueError("path is required")
        self.path = Path(path)
        self._lock_path = self.path.with_name(f".{self.path.name}.lock")
        self._thread_lock = threading.RLock()
        self._depth = 0

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Exclusive access for this process and others sharing the file system.

        Nested use by the owning thread only takes the flock once.
        """
        with self._thread_lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._lock_path, "a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def append(self, line: str) -> int:
        """Append one line. Returns the file size before the write, for truncate()."""
        if "\n" in line:
            raise ValueError("log lines must not contain newlines")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        offset = self.path.stat().st_size if self.path.exists() else 0
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
        return offset

    def truncate(self, offset: int) -> None:
        """Drop everything written after offset."""
        with open(self.path, "r+b") as f:
            f.truncate(offset)
            f.flush()
            os.fsync(f.fileno())

    def lines(self) -> list[str]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [line.rstrip("\n") for line in f if line.strip()]

    def rewrite(self, lines: Iterable[str]) -> None:
        """Atomically replace the file contents."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def digest(self) -> tuple[str, int]:
        return digest_lines(self.lines())


class MemoryAppendLog:
    """In-process log for the memory backend."""

    def __init__(self, name: str):
        self.path = None
        self.name = name
        self._lines: list[str] = []
        self._thread_lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._thread_lock:
            yield

    def append(self, line: str) -> int:
        if "\n" in line:
            raise ValueError("log lines must not contain newlines")
        self._lines.append(line)
        return len(self._lines) - 1

    def truncate(self, offset: int) -> None:
        del self._lines[offset:]

    def lines(self) -> list[str]:
        return list(self._lines)

    def rewrite(self, lines: Iterable[str]) -> None:
        self._lines = list(lines)

    def digest(self) -> tuple[str, int]:
        return digest_lines(self._lines)
