"""Jar store: cached cookie jars with debounced, atomic JSON persistence."""

import datetime
import enum
import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path

from crumbjar._cookies import Cookie, Jar

logger = logging.getLogger("crumbjar")

DEFAULT_DATA_DIR = os.path.join(".data", "cookiejars")
DEFAULT_FLUSH_DELAY = 0.4  # seconds
DOCUMENT_VERSION = 1

_MAX_JAR_ID_LENGTH = 64
_UNSAFE_JAR_ID_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def sanitize_jar_id(jar_id) -> str:
    """Map a caller-supplied jar id onto a safe filename stem.

    Distinct raw ids that sanitize to the same string share one jar.
    """
    raw = str(jar_id) if jar_id else "default"
    cleaned = _UNSAFE_JAR_ID_CHARS.sub("_", raw)[:_MAX_JAR_ID_LENGTH]
    return cleaned or "default"


def jar_to_document(jar: Jar) -> dict:
    """Wrap a jar in the versioned on-disk document."""
    return {
        "version": DOCUMENT_VERSION,
        "savedAt": datetime.datetime.now(datetime.timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z"),
        "jar": {
            host: [c.to_dict() for c in cookies]
            for host, cookies in jar.items()
        },
    }


def jar_from_document(data) -> Jar:
    """Rebuild a jar from a versioned document or a legacy bare host map."""
    if not isinstance(data, dict):
        return {}
    hosts = data["jar"] if isinstance(data.get("jar"), dict) else data

    jar: Jar = {}
    for host, records in hosts.items():
        cookies = []
        if isinstance(records, list):
            for record in records:
                try:
                    cookies.append(Cookie.from_dict(record))
                except (KeyError, TypeError, ValueError) as e:
                    logger.debug(
                        "Skipping malformed cookie record under %s: %s",
                        host, e,
                    )
        jar[host] = cookies
    return jar


class FlushState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    FIRING = "firing"


class _JarEntry:
    """Cached jar plus its dirty flag, debounce timer and mutex."""

    __slots__ = (
        "jar_id",
        "jar",
        "dirty",
        "state",
        "timer",
        "generation",
        "evicted",
        "lock",
    )

    def __init__(self, jar_id: str, jar: Jar):
        self.jar_id = jar_id
        self.jar = jar
        self.dirty = False
        self.state = FlushState.IDLE
        self.timer: threading.Timer | None = None
        # Bumped on every schedule/cancel so a stale timer can tell it
        # has been superseded.
        self.generation = 0
        self.evicted = False
        self.lock = threading.RLock()


class JarStore:
    """Process-wide owner of cookie jars, one JSON file per jar id.

    Jars are loaded on first access and cached. Mutations are reported
    with mark_dirty() and written after ``flush_delay`` seconds, so a
    burst of Set-Cookie headers costs one write. Writes are atomic (temp
    file + rename) and serialized per jar with the entry's RLock, which
    callers should also hold while mutating a jar from several threads
    (see lock()).

    Storage failures never propagate from get_jar(), mark_dirty(),
    clear_jar() or drain(): a jar that cannot be read starts empty and a
    failed background write is retried on the next mutation.
    """

    def __init__(
        self,
        data_dir: str | os.PathLike = DEFAULT_DATA_DIR,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
    ):
        self._data_dir = Path(data_dir)
        self.flush_delay = flush_delay
        self._entries: dict[str, _JarEntry] = {}
        self._entries_lock = threading.Lock()
        self._load_locks: dict[str, threading.Lock] = {}
        self._lock_lock = threading.Lock()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def jar_path(self, jar_id) -> Path:
        return self._data_dir / f"{sanitize_jar_id(jar_id)}.json"

    def _get_load_lock(self, jar_id: str) -> threading.Lock:
        with self._lock_lock:
            if jar_id not in self._load_locks:
                self._load_locks[jar_id] = threading.Lock()
            return self._load_locks[jar_id]

    def _entry(self, jar_id: str) -> _JarEntry:
        entry = self._entries.get(jar_id)
        if entry is not None:
            return entry
        with self._get_load_lock(jar_id):
            entry = self._entries.get(jar_id)
            if entry is None:
                entry = _JarEntry(jar_id, self._read(jar_id))
                with self._entries_lock:
                    self._entries[jar_id] = entry
                logger.debug(
                    "Loaded cookie jar %s (%d hosts)", jar_id, len(entry.jar)
                )
            return entry

    def get_jar(self, jar_id) -> Jar:
        """Return the cached jar, loading it from disk on first access."""
        return self._entry(sanitize_jar_id(jar_id)).jar

    def lock(self, jar_id) -> threading.RLock:
        """Per-jar mutex guarding both mutation and persistence."""
        return self._entry(sanitize_jar_id(jar_id)).lock

    def is_current(self, jar_id, jar: Jar) -> bool:
        """True if ``jar`` is still the cached jar for ``jar_id``.

        False once the jar has been cleared, even if the id was loaded
        again since. Never loads from disk.
        """
        entry = self._entries.get(sanitize_jar_id(jar_id))
        return entry is not None and not entry.evicted and entry.jar is jar

    def cached_ids(self) -> list[str]:
        with self._entries_lock:
            return list(self._entries)

    def is_dirty(self, jar_id) -> bool:
        entry = self._entries.get(sanitize_jar_id(jar_id))
        return entry is not None and entry.dirty

    def flush_state(self, jar_id) -> FlushState | None:
        entry = self._entries.get(sanitize_jar_id(jar_id))
        return entry.state if entry is not None else None

    def mark_dirty(self, jar_id) -> None:
        """Schedule a debounced write. No-op for jars that are not cached."""
        entry = self._entries.get(sanitize_jar_id(jar_id))
        if entry is None:
            return
        with entry.lock:
            if entry.evicted:
                return
            entry.dirty = True
            if entry.state is FlushState.PENDING:
                return
            entry.generation += 1
            timer = threading.Timer(
                self.flush_delay,
                self._on_timer,
                args=(entry, entry.generation),
            )
            timer.daemon = True
            entry.timer = timer
            entry.state = FlushState.PENDING
            timer.start()

    def _on_timer(self, entry: _JarEntry, generation: int) -> None:
        with entry.lock:
            if entry.evicted or entry.generation != generation:
                return
            entry.timer = None
            entry.state = FlushState.FIRING
            try:
                if not entry.dirty:
                    return
                entry.dirty = False
                try:
                    self._write(entry)
                except Exception:
                    entry.dirty = True
                    logger.warning(
                        "Debounced write of cookie jar %s failed",
                        entry.jar_id,
                        exc_info=True,
                    )
            finally:
                entry.state = FlushState.IDLE

    def _cancel_timer(self, entry: _JarEntry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        entry.generation += 1
        entry.state = FlushState.IDLE

    def flush_jar(self, jar_id) -> None:
        """Write the jar now, cancelling any pending debounced write.

        Writes even when the jar is clean. No-op for jars that are not
        cached. Unlike the debounced path, write errors propagate.
        """
        entry = self._entries.get(sanitize_jar_id(jar_id))
        if entry is None:
            return
        with entry.lock:
            if entry.evicted:
                return
            self._cancel_timer(entry)
            entry.dirty = False
            self._write(entry)

    def clear_jar(self, jar_id) -> None:
        """Forget the jar and delete its file."""
        jid = sanitize_jar_id(jar_id)
        with self._entries_lock:
            entry = self._entries.pop(jid, None)
        if entry is not None:
            with entry.lock:
                self._cancel_timer(entry)
                entry.evicted = True
        with self._lock_lock:
            self._load_locks.pop(jid, None)
        try:
            self.jar_path(jid).unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to delete cookie jar %s: %s", jid, e)
        logger.debug("Cleared cookie jar %s", jid)

    def drain(self) -> int:
        """Write every dirty jar now. Call from the application's shutdown.

        Returns the number of jars written. Failures are logged, never
        raised, so shutdown is not blocked.
        """
        with self._entries_lock:
            entries = list(self._entries.values())
        written = 0
        for entry in entries:
            with entry.lock:
                self._cancel_timer(entry)
                if entry.evicted or not entry.dirty:
                    continue
                entry.dirty = False
                try:
                    self._write(entry)
                    written += 1
                except Exception:
                    logger.warning(
                        "Failed to write cookie jar %s during drain",
                        entry.jar_id,
                        exc_info=True,
                    )
        if written:
            logger.debug("Drained %d dirty cookie jars", written)
        return written

    def _read(self, jar_id: str) -> Jar:
        path = self.jar_path(jar_id)
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("Failed to load cookie jar %s: %s", jar_id, e)
            return {}
        return jar_from_document(data)

    def _write(self, entry: _JarEntry) -> None:
        """Atomic write: temp file + rename (same directory = atomic on POSIX)."""
        self._data_dir.mkdir(parents=True, exist_ok=True)
        path = self.jar_path(entry.jar_id)
        document = jar_to_document(entry.jar)
        fd, tmp_path = tempfile.mkstemp(
            dir=self._data_dir, prefix=f"{entry.jar_id}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_path, path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug("Wrote cookie jar %s", entry.jar_id)
