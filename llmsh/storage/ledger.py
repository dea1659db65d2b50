"""
Append-only token usage ledger.

The ledger is a single JSON document {"version": "1.0", "records": [...]}.
Every append rewrites the whole document, so writers are serialized through
an exclusive advisory lock on a sidecar file and the new snapshot replaces
the old one with an atomic rename.
"""

import errno
import fcntl
import json
import logging
import os
import tempfile
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, List

from llmsh.core.errors import StorageError
from .models import UsageRecord

logger = logging.getLogger(__name__)

LEDGER_VERSION = "1.0"

# Seconds to wait for another session to finish its append.
LOCK_TIMEOUT = 5.0
LOCK_POLL_INTERVAL = 0.02


class UsageLedger:
    """Persistent, append-only sequence of usage records."""

    def __init__(
        self,
        path: str,
        clock: Callable[[], datetime] = lambda: datetime.now().astimezone(),
        lock_timeout: float = LOCK_TIMEOUT,
    ):
        """Initialize the ledger.

        Args:
            path: Path to the JSON ledger file
            clock: Source of record timestamps (local, timezone-aware)
            lock_timeout: Seconds to wait for the write lock
        """
        self.path = Path(path).expanduser()
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._clock = clock
        self._lock_timeout = lock_timeout

    @contextmanager
    def _exclusive_lock(self) -> Iterator[None]:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR, 0o644)
        except OSError as e:
            raise StorageError(f"open ledger lock {self.lock_path}: {e}") from e

        try:
            deadline = time.monotonic() + self._lock_timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as e:
                    if e.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                        raise StorageError(f"lock ledger: {e}") from e
                    if time.monotonic() >= deadline:
                        raise StorageError(
                            f"timed out waiting for ledger lock {self.lock_path}"
                        ) from e
                    time.sleep(LOCK_POLL_INTERVAL)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _read(self) -> List[UsageRecord]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            raise StorageError(f"read ledger {self.path}: {e}") from e

        if not isinstance(document, dict):
            raise StorageError(f"read ledger {self.path}: not a JSON object")
        try:
            return [UsageRecord.from_dict(item) for item in document.get("records") or []]
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"read ledger {self.path}: bad record: {e}") from e

    def _write(self, records: List[UsageRecord]) -> None:
        document = {
            "version": LEDGER_VERSION,
            "records": [record.to_dict() for record in records],
        }
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=str(self.path.parent),
                prefix=self.path.name + ".",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_path = tmp.name
                json.dump(document, tmp, indent=2)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageError(f"write ledger {self.path}: {e}") from e

    def record_usage(
        self,
        method: str,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> UsageRecord:
        """Append a usage record stamped with a fresh id and the current time.

        Returns:
            The record that was appended

        Raises:
            ValueError: If method or token counts are invalid
            StorageError: If the ledger cannot be locked, read or written
        """
        record = UsageRecord(
            id=uuid.uuid4().hex,
            timestamp=self._clock(),
            method=method,
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_creation_tokens=cache_creation_tokens,
            cache_read_tokens=cache_read_tokens,
        )
        with self._exclusive_lock():
            records = self._read()
            records.append(record)
            self._write(records)
        logger.debug("Recorded %s usage: %d in / %d out", method, input_tokens, output_tokens)
        return record

    def load_records(self) -> List[UsageRecord]:
        """Load all records in append order.

        Returns an empty list when no ledger exists yet. Readers need no lock
        because writers swap in complete snapshots.

        Raises:
            StorageError: If the ledger is unreadable or corrupt
        """
        return self._read()

    def clear(self) -> bool:
        """Delete the ledger file. Returns True if a file was removed."""
        with self._exclusive_lock():
            try:
                self.path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StorageError(f"remove ledger {self.path}: {e}") from e
        return True
