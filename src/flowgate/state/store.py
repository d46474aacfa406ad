from __future__ import annotations

import copy
import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from flowgate.errors import InvalidStatePath, StateLockTimeout

logger = logging.getLogger(__name__)

PATH_SEGMENT = re.compile(r"^[A-Za-z0-9_\-]+$")
EVENT_HISTORY_LIMIT = 200
STALE_LOCK_SECONDS = 60.0


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

# Path prefix -> owner. The longest matching prefix wins.
OWNERSHIP: dict[str, str] = {
    "phase": "engine",
    "step.current": "engine",
    "step.index": "engine",
    "step.status": "active-step",
    "history": "engine",
}


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def atomic_write_text(path: Path, content: str) -> None:
    """Write via a sibling temp file and os.replace so readers never see partial content."""
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def split_path(path: str) -> list[str]:
    parts = path.split(".") if path else []
    if not parts or not all(PATH_SEGMENT.match(part) for part in parts):
        raise InvalidStatePath(f"Invalid state path: {path!r}")
    return parts


def owner_of(path: str) -> str:
    parts = split_path(path)
    for size in range(len(parts), 0, -1):
        prefix = ".".join(parts[:size])
        if prefix in OWNERSHIP:
            return OWNERSHIP[prefix]
    if parts[0] == "step":
        # Writing the whole step object touches engine fields.
        return "engine"
    return "component"


def get_path(document: dict[str, Any], path: str, default: Any = MISSING) -> Any:
    current: Any = document
    for part in split_path(path):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def set_path(document: dict[str, Any], path: str, value: Any) -> None:
    parts = split_path(path)
    current = document
    for index, part in enumerate(parts[:-1]):
        child = current.get(part)
        if child is None:
            child = {}
            current[part] = child
        elif not isinstance(child, dict):
            walked = ".".join(parts[: index + 1])
            raise InvalidStatePath(f"Cannot set {path!r}: {walked!r} is not an object.")
        current = child
    current[parts[-1]] = value


def delete_path(document: dict[str, Any], path: str) -> bool:
    parts = split_path(path)
    current: Any = document
    for part in parts[:-1]:
        if not isinstance(current, dict) or part not in current:
            return False
        current = current[part]
    if isinstance(current, dict) and parts[-1] in current:
        del current[parts[-1]]
        return True
    return False


class StateStore:
    """Hierarchical JSON document persisted to a single file.

    Reads never observe a half-written document: every write goes to a
    temporary file in the same directory and is moved into place with
    ``os.replace``. Writers are serialized with an exclusive lock file.
    """

    SCHEMA_VERSION = 1

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.path = path.resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout_seconds = lock_timeout_seconds
        self.corruption: str | None = None

    def _lock_is_stale(self) -> bool:
        """A lock left behind by a dead process, or one too old to be a live writer."""
        try:
            raw = self.lock_file.read_text(encoding="utf-8").strip()
            age = time.time() - self.lock_file.stat().st_mtime
        except FileNotFoundError:
            return False
        if age > max(STALE_LOCK_SECONDS, self.lock_timeout_seconds):
            return True
        if os.name != "posix" or not raw.isdigit():
            return False
        pid = int(raw)
        if pid <= 0 or pid == os.getpid():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def _break_stale_lock(self) -> bool:
        if not self._lock_is_stale():
            return False
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        logger.warning("Removed stale state lock %s", self.lock_file)
        return True

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._break_stale_lock():
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateLockTimeout(
                        f"Timed out waiting for state lock {self.lock_file}.",
                        recovery_actions=("retry", "diagnose"),
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self) -> Any:
        self.corruption = None
        if not self.path.exists():
            return None
        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except UnicodeDecodeError:
            self.corruption = "state file is not valid UTF-8"
            return None
        if not content:
            self.corruption = "state file is empty"
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            self.corruption = f"state file contains invalid JSON: {exc.msg}"
            logger.warning("Ignoring unreadable state file %s: %s", self.path, exc.msg)
            return None

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            data = raw_payload.get("data")
            if not isinstance(data, dict):
                self.corruption = "state data is not an object"
                data = {}
            try:
                revision = int(raw_payload.get("revision") or 1)
            except (TypeError, ValueError):
                revision = 1
            return {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision,
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": data,
            }

        if raw_payload is not None and not isinstance(raw_payload, dict):
            self.corruption = "state document is not an object"
            raw_payload = None
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": raw_payload or {},
        }

    def _write_envelope(self, envelope: dict[str, Any]) -> None:
        atomic_write_text(self.path, json.dumps(envelope, ensure_ascii=False, indent=2) + "\n")

    def get_envelope(self) -> dict[str, Any]:
        return self._normalize_envelope(self._read_raw())

    def snapshot(self) -> dict[str, Any]:
        return self.get_envelope()["data"]

    @property
    def revision(self) -> int:
        return int(self.get_envelope()["revision"])

    def exists(self) -> bool:
        return self.path.exists()

    def get(self, path: str, default: Any = MISSING) -> Any:
        value = get_path(self.snapshot(), path, MISSING)
        if value is MISSING:
            return default
        return copy.deepcopy(value)

    def has(self, path: str) -> bool:
        return get_path(self.snapshot(), path) is not MISSING

    def update(self, updater: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        """Apply ``updater`` to the document under the lock and persist the result."""
        with self._state_lock():
            current = self.get_envelope()
            data = current["data"]
            updater(data)
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": int(current["revision"]) + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            self._write_envelope(envelope)
            return copy.deepcopy(data)

    def set(self, path: str, value: Any) -> None:
        split_path(path)
        self.update(lambda data: set_path(data, path, copy.deepcopy(value)))

    def set_many(self, values: dict[str, Any]) -> None:
        for path in values:
            split_path(path)

        def _updater(data: dict[str, Any]) -> None:
            for path, value in values.items():
                set_path(data, path, copy.deepcopy(value))

        self.update(_updater)

    def delete(self, path: str) -> None:
        split_path(path)
        self.update(lambda data: delete_path(data, path))

    def replace(self, data: dict[str, Any]) -> None:
        def _updater(current: dict[str, Any]) -> None:
            current.clear()
            current.update(copy.deepcopy(data))

        self.update(_updater)

    def record_event(self, event: str, **payload: Any) -> None:
        record = {"event": event, "at": utcnow_iso(), **payload}
        logger.debug("flowgate event %s %s", event, payload)

        def _updater(data: dict[str, Any]) -> None:
            events = data.get("events")
            if not isinstance(events, list):
                events = []
            events.append(record)
            data["events"] = events[-EVENT_HISTORY_LIMIT:]

        self.update(_updater)

    def events(self, event: str | None = None) -> list[dict[str, Any]]:
        records = self.snapshot().get("events", [])
        if not isinstance(records, list):
            return []
        return [
            item
            for item in records
            if isinstance(item, dict) and (event is None or item.get("event") == event)
        ]
