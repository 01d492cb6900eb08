"""
Persister backends for singleton locks.

A persister maps a lock name to three operations: create-if-absent, delete and
exists. The create must be atomic with respect to every other create sharing
the same store; that uniqueness constraint is the only thing that provides
mutual exclusion. The lock controller performs no locking of its own.

Implementations:
- Memory: In-process dict, suitable for testing and single-process scenarios
- SQLite: Single-file database, PRIMARY KEY on the lock name
- LocalFile: One JSON file per lock, created with O_EXCL
- Firestore: see ``singleton_process.gcp``
"""

import asyncio
import json
import sqlite3
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import aiofiles
import aiofiles.os

from .errors import ConfigurationError, PersisterError
from .expiry import utcnow
from .monitoring import get_logger

logger = get_logger(__name__)


# =============================================================================
# Types
# =============================================================================

@dataclass
class LockRecord:
    """Wire format for a persisted lock: a unique name and its creation time."""
    name: str
    created: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "created": self.created.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockRecord":
        created = data["created"]
        if isinstance(created, str):
            created = datetime.fromisoformat(created)
        return cls(name=data["name"], created=created)


@dataclass
class PersistResult:
    """
    Outcome of a create-if-absent attempt.

    ``created`` is True when this call inserted the record. Otherwise a record
    with the same name already existed and ``conflict_created`` holds its
    creation time, or None when it vanished before it could be read back.
    """
    created: bool
    conflict_created: Optional[datetime] = None


# =============================================================================
# Persister Protocol
# =============================================================================

@runtime_checkable
class LockPersister(Protocol):
    """
    Protocol for lock storage backends.

    Every operation raises PersisterError on connectivity, permission or any
    other backend failure. A uniqueness violation is not a failure.
    """

    async def persist_lock(self, name: str) -> PersistResult:
        """Atomically insert a lock record for ``name`` if none exists.

        Args:
            name: Lock name (the unique key)

        Returns:
            PersistResult describing success or the conflicting record
        """
        ...

    async def delete_lock(self, name: str) -> None:
        """Remove the lock record for ``name``. Missing records are ignored.

        Args:
            name: Lock name
        """
        ...

    async def lock_exists(self, name: str) -> bool:
        """Report whether a lock record exists for ``name``.

        Args:
            name: Lock name

        Returns:
            True if a record exists
        """
        ...


# =============================================================================
# Memory
# =============================================================================

class MemoryPersister:
    """In-memory persister for testing and single-process scenarios."""

    def __init__(self):
        self._records: Dict[str, LockRecord] = {}
        self._lock = asyncio.Lock()

    async def persist_lock(self, name: str) -> PersistResult:
        async with self._lock:
            existing = self._records.get(name)
            if existing is not None:
                logger.debug(f"MemoryPersister: conflict on {name}")
                return PersistResult(created=False, conflict_created=existing.created)
            self._records[name] = LockRecord(name=name)
            logger.debug(f"MemoryPersister: created {name}")
            return PersistResult(created=True)

    async def delete_lock(self, name: str) -> None:
        async with self._lock:
            self._records.pop(name, None)

    async def lock_exists(self, name: str) -> bool:
        return name in self._records

    def get(self, name: str) -> Optional[LockRecord]:
        """Return the stored record for ``name``, if any."""
        return self._records.get(name)

    def put(self, record: LockRecord) -> None:
        """Store ``record`` unconditionally, replacing any existing one."""
        self._records[record.name] = record


# =============================================================================
# SQLite
# =============================================================================

class SQLitePersister:
    """
    SQLite-based persister for local/container deployments.

    The PRIMARY KEY on ``name`` is the uniqueness constraint; SQLite serializes
    writers across processes through its file lock. Each call opens and closes
    its own connection on a worker thread.
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS singletons (
        name TEXT PRIMARY KEY,
        created TEXT NOT NULL
    );
    """

    def __init__(self, db_path: str = "singletons.sqlite", timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._get_conn()) as conn:
            conn.executescript(self.SCHEMA)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _insert(self, name: str) -> PersistResult:
        created = utcnow()
        with closing(self._get_conn()) as conn:
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO singletons (name, created) VALUES (?, ?)",
                        (name, created.isoformat())
                    )
            except sqlite3.IntegrityError:
                row = conn.execute(
                    "SELECT created FROM singletons WHERE name = ?", (name,)
                ).fetchone()
                conflict_created = datetime.fromisoformat(row["created"]) if row else None
                return PersistResult(created=False, conflict_created=conflict_created)
        return PersistResult(created=True)

    def _delete(self, name: str) -> None:
        with closing(self._get_conn()) as conn:
            with conn:
                conn.execute("DELETE FROM singletons WHERE name = ?", (name,))

    def _exists(self, name: str) -> bool:
        with closing(self._get_conn()) as conn:
            row = conn.execute(
                "SELECT 1 FROM singletons WHERE name = ?", (name,)
            ).fetchone()
            return row is not None

    async def persist_lock(self, name: str) -> PersistResult:
        try:
            result = await asyncio.to_thread(self._insert, name)
        except sqlite3.Error as e:
            raise PersisterError(f"SQLite insert failed for lock '{name}': {e}") from e
        logger.debug(f"SQLitePersister: {'created' if result.created else 'conflict on'} {name}")
        return result

    async def delete_lock(self, name: str) -> None:
        try:
            await asyncio.to_thread(self._delete, name)
        except sqlite3.Error as e:
            raise PersisterError(f"SQLite delete failed for lock '{name}': {e}") from e

    async def lock_exists(self, name: str) -> bool:
        try:
            return await asyncio.to_thread(self._exists, name)
        except sqlite3.Error as e:
            raise PersisterError(f"SQLite query failed for lock '{name}': {e}") from e


# =============================================================================
# Local file
# =============================================================================

class LocalFilePersister:
    """
    File-based persister: one ``<name>.lock`` JSON file per lock.

    Exclusive-create mode ('x', i.e. O_CREAT | O_EXCL) makes creation atomic
    on local filesystems. NOT suited for distributed cloud storage (S3/GCS).
    """

    def __init__(self, lock_dir: str = ".singletons"):
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, name: str) -> Path:
        return self.lock_dir / f"{quote(name, safe='')}.lock"

    async def _read_created(self, path: Path) -> Optional[datetime]:
        try:
            async with aiofiles.open(path, 'r', encoding='utf-8') as f:
                content = await f.read()
        except FileNotFoundError:
            return None

        try:
            return LockRecord.from_dict(json.loads(content)).created
        except (ValueError, KeyError, TypeError):
            # Writer has not finished yet; fall back to the file's own timestamp
            try:
                stat = await aiofiles.os.stat(path)
            except FileNotFoundError:
                return None
            return datetime.fromtimestamp(stat.st_mtime).astimezone()

    async def persist_lock(self, name: str) -> PersistResult:
        path = self._path(name)
        record = LockRecord(name=name)
        try:
            async with aiofiles.open(path, 'x', encoding='utf-8') as f:
                await f.write(json.dumps(record.to_dict()))
        except FileExistsError:
            try:
                conflict_created = await self._read_created(path)
            except OSError as e:
                raise PersisterError(f"Could not read lock file {path}: {e}") from e
            return PersistResult(created=False, conflict_created=conflict_created)
        except OSError as e:
            raise PersisterError(f"Could not create lock file {path}: {e}") from e
        return PersistResult(created=True)

    async def delete_lock(self, name: str) -> None:
        path = self._path(name)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersisterError(f"Could not remove lock file {path}: {e}") from e

    async def lock_exists(self, name: str) -> bool:
        path = self._path(name)
        try:
            await aiofiles.os.stat(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersisterError(f"Could not stat lock file {path}: {e}") from e
        return True


# =============================================================================
# Factory
# =============================================================================

def create_persister(backend_type: str = "memory", **kwargs: Any) -> LockPersister:
    """Create a persister by type.

    Args:
        backend_type: "memory", "sqlite", "file" or "firestore"
        **kwargs: Backend-specific options (db_path, lock_dir, collection, project)

    Returns:
        LockPersister instance
    """
    if backend_type == "memory":
        return MemoryPersister()
    elif backend_type == "sqlite":
        return SQLitePersister(db_path=kwargs.get("db_path") or "singletons.sqlite")
    elif backend_type == "file":
        return LocalFilePersister(lock_dir=kwargs.get("lock_dir") or ".singletons")
    elif backend_type == "firestore":
        from .gcp import FirestorePersister
        return FirestorePersister(
            collection=kwargs.get("collection") or "singletons",
            project=kwargs.get("project"),
        )
    else:
        raise ConfigurationError(f"Unknown persister backend type: {backend_type}")


__all__ = [
    "LockRecord",
    "PersistResult",
    "LockPersister",
    "MemoryPersister",
    "SQLitePersister",
    "LocalFilePersister",
    "create_persister",
]
