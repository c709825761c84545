"""
Recorded unit state and the reconciliation lock.

``state.json`` maps unit key -> ``UnitRecord``.  It never holds token
values, only where each token lives and whether it has been used.

``state.lock`` is created with O_EXCL so that only one reconciliation can
plan and apply at a time.  Stale locks are not broken automatically; the
operator confirms no other run is active and calls ``force_unlock``.
"""

from __future__ import annotations

import getpass
import json
import logging
import os
import socket
import tempfile
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable

from provisioner.errors import ProvisionerError, StateLockError
from provisioner.models import UnitRecord, utcnow_iso

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"
LOCK_FILE = "state.lock"
STATE_VERSION = 1


class StateStore:
    """JSON-file store for unit records, safe to update from worker threads."""

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir).expanduser()
        self.path = self.state_dir / STATE_FILE
        self._mutex = threading.Lock()

    def load(self) -> dict[str, UnitRecord]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            raise ProvisionerError(f"cannot read state file {self.path}: {exc}") from exc
        units = raw.get("units", {})
        return {key: UnitRecord.from_dict(rec) for key, rec in units.items()}

    def _write(self, units: dict[str, UnitRecord]) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": STATE_VERSION,
            "updated_at": utcnow_iso(),
            "units": {key: rec.to_dict() for key, rec in sorted(units.items())},
        }
        fd, tmp = tempfile.mkstemp(dir=self.state_dir, prefix=".state-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
                f.write("\n")
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def save(self, units: dict[str, UnitRecord]) -> None:
        with self._mutex:
            self._write(units)

    def put(self, record: UnitRecord) -> None:
        """Write one record without disturbing any other key."""
        with self._mutex:
            units = self.load()
            record.updated_at = utcnow_iso()
            units[record.key] = record
            self._write(units)

    def remove(self, key: str) -> None:
        with self._mutex:
            units = self.load()
            if units.pop(key, None) is not None:
                self._write(units)


class StateLock:
    """Exclusive lock file guarding a reconciliation run."""

    def __init__(
        self,
        state_dir: str | Path,
        timeout: float = 300,
        retry_interval: float = 2.0,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.path = Path(state_dir).expanduser() / LOCK_FILE
        self.timeout = timeout
        self.retry_interval = retry_interval
        self._sleep = sleep
        self._clock = clock
        self.lock_id: str | None = None

    def info(self) -> dict | None:
        """Return the current holder's lock record, if any."""
        try:
            return json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError):
            return {"id": "unknown", "holder": "unreadable lock file"}

    def _try_create(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        lock_id = str(uuid.uuid4())
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        record = {
            "id": lock_id,
            "holder": f"{user}@{socket.gethostname()}:{os.getpid()}",
            "created_at": utcnow_iso(),
        }
        with os.fdopen(fd, "w") as f:
            json.dump(record, f)
        self.lock_id = lock_id
        return True

    def acquire(self) -> str:
        deadline = self._clock() + self.timeout
        while not self._try_create():
            if self._clock() >= deadline:
                holder = self.info() or {}
                raise StateLockError(
                    f"state is locked by {holder.get('holder', '?')} "
                    f"(lock id {holder.get('id', '?')}, since {holder.get('created_at', '?')})"
                )
            logger.info("State locked, retrying in %ss", self.retry_interval)
            self._sleep(self.retry_interval)
        logger.info("Acquired state lock %s", self.lock_id)
        return self.lock_id

    def release(self) -> None:
        if self.lock_id is None:
            return
        current = self.info()
        if current and current.get("id") == self.lock_id:
            self.path.unlink()
            logger.info("Released state lock %s", self.lock_id)
        else:
            logger.warning("State lock %s was no longer held at release", self.lock_id)
        self.lock_id = None

    def force_unlock(self, lock_id: str) -> None:
        """Remove a lock left behind by a dead run.  *lock_id* must match."""
        current = self.info()
        if current is None:
            raise StateLockError("state is not locked")
        if current.get("id") != lock_id:
            raise StateLockError(
                f"lock id mismatch: state is locked with {current.get('id')}, not {lock_id}"
            )
        self.path.unlink()
        logger.warning("Force-released state lock %s held by %s", lock_id, current.get("holder"))

    def __enter__(self) -> "StateLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
