"""Persistent caching of embedding vectors and saved search results.

Both caches sit on top of a small `KeyValueStore` abstraction with an in-memory
and a SQLite implementation.
"""

import asyncio
import hashlib
import io
import json
import logging
import re
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import numpy as np

from ..bus import EventBus
from ..errors import StorageQuotaExceeded
from .types import RankedFile

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class KeyValueStore(Protocol):
    """Byte-valued storage with write timestamps."""

    def get(self, key: str) -> bytes | None: ...

    def put(self, key: str, value: bytes, timestamp: float | None = None) -> None: ...

    def delete(self, key: str) -> bool: ...

    def items(self) -> Iterator[tuple[str, bytes, float]]: ...

    def purge_older_than(self, timestamp: float) -> int: ...

    def count(self) -> int: ...


class MemoryStore:
    """Dict-backed store, optionally bounded to `max_entries` keys."""

    def __init__(self, max_entries: int | None = None):
        self.max_entries = max_entries
        self._data: dict[str, tuple[bytes, float]] = {}

    def get(self, key: str) -> bytes | None:
        entry = self._data.get(key)
        return entry[0] if entry else None

    def put(self, key: str, value: bytes, timestamp: float | None = None) -> None:
        if (
            self.max_entries is not None
            and key not in self._data
            and len(self._data) >= self.max_entries
        ):
            raise StorageQuotaExceeded(
                f"Memory store is full ({self.max_entries} entries)"
            )
        self._data[key] = (bytes(value), time.time() if timestamp is None else timestamp)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def items(self) -> Iterator[tuple[str, bytes, float]]:
        for key, (value, timestamp) in list(self._data.items()):
            yield key, value, timestamp

    def purge_older_than(self, timestamp: float) -> int:
        old = [k for k, (_, ts) in self._data.items() if ts < timestamp]
        for key in old:
            del self._data[key]
        return len(old)

    def count(self) -> int:
        return len(self._data)


class SqliteStore:
    """SQLite-backed store; several namespaces can share one database file.

    A connection is opened per operation so the store can be used from worker
    threads.
    """

    def __init__(self, path: Path | str, namespace: str = "default"):
        self.path = Path(path)
        self.namespace = namespace
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value BLOB NOT NULL,
                    timestamp REAL NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS kv_timestamp ON kv (timestamp)")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=10)

    def get(self, key: str) -> bytes | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT value FROM kv WHERE namespace = ? AND key = ?",
                (self.namespace, key),
            ).fetchone()
        return bytes(row[0]) if row else None

    def put(self, key: str, value: bytes, timestamp: float | None = None) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "INSERT OR REPLACE INTO kv (namespace, key, value, timestamp) VALUES (?, ?, ?, ?)",
                (
                    self.namespace,
                    key,
                    sqlite3.Binary(value),
                    time.time() if timestamp is None else timestamp,
                ),
            )

    def delete(self, key: str) -> bool:
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                "DELETE FROM kv WHERE namespace = ? AND key = ?", (self.namespace, key)
            )
            return cursor.rowcount > 0

    def items(self) -> Iterator[tuple[str, bytes, float]]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT key, value, timestamp FROM kv WHERE namespace = ? ORDER BY key",
                (self.namespace,),
            ).fetchall()
        for key, value, timestamp in rows:
            yield key, bytes(value), timestamp

    def purge_older_than(self, timestamp: float) -> int:
        with closing(self._connect()) as conn, conn:
            cursor = conn.execute(
                "DELETE FROM kv WHERE namespace = ? AND timestamp < ?",
                (self.namespace, timestamp),
            )
            return cursor.rowcount

    def count(self) -> int:
        with closing(self._connect()) as conn:
            (n,) = conn.execute(
                "SELECT COUNT(*) FROM kv WHERE namespace = ?", (self.namespace,)
            ).fetchone()
        return n


def _serialize(vector: np.ndarray) -> bytes:
    buf = io.BytesIO()
    np.save(buf, np.asarray(vector), allow_pickle=False)
    return buf.getvalue()


def _deserialize(data: bytes) -> np.ndarray:
    return np.load(io.BytesIO(data), allow_pickle=False)


class EmbeddingCache:
    """Embedding vectors keyed by project, model and content hash.

    Cache failures never fail a search: unreadable entries are misses and
    failed writes are logged and dropped.
    """

    def __init__(self, store: KeyValueStore, bus: EventBus | None = None):
        self.store = store
        self.bus = bus

    @staticmethod
    def generate_key(project_name: str, model_id: str, content_hash: str) -> str:
        return hashlib.sha256(
            "\x00".join((project_name, model_id, content_hash)).encode()
        ).hexdigest()

    async def get(self, key: str) -> np.ndarray | None:
        try:
            data = await asyncio.to_thread(self.store.get, key)
            if data is None:
                return None
            return _deserialize(data)
        except Exception as e:
            logger.debug(f"Embedding cache read failed for {key[:12]}: {e}")
            return None

    async def put(self, key: str, vector: np.ndarray) -> bool:
        """Store a vector; returns False if the write was dropped."""
        try:
            await asyncio.to_thread(self.store.put, key, _serialize(vector))
        except Exception as e:
            logger.warning(f"Failed to cache embedding {key[:12]}: {e}")
            if self.bus is not None:
                self.bus.emit("cache.write_failed", key=key, error=str(e))
            return False
        return True

    def clean_old(self, max_age_days: int = 30) -> int:
        removed = self.store.purge_older_than(time.time() - max_age_days * SECONDS_PER_DAY)
        if removed:
            logger.info(f"Removed {removed} cached embeddings older than {max_age_days} days")
        return removed

    def stats(self) -> dict[str, Any]:
        total_bytes = 0
        oldest = newest = None
        for _, value, timestamp in self.store.items():
            total_bytes += len(value)
            oldest = timestamp if oldest is None else min(oldest, timestamp)
            newest = timestamp if newest is None else max(newest, timestamp)
        return {
            "entries": self.store.count(),
            "bytes": total_bytes,
            "oldest": oldest,
            "newest": newest,
        }


@dataclass
class SavedSearch:
    """A search result persisted for later inspection."""

    id: str
    keyword: str
    project_name: str
    results: list[dict[str, Any]]
    entry_point_file: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "keyword": self.keyword,
            "projectName": self.project_name,
            "entryPointFile": self.entry_point_file,
            "timestamp": self.timestamp,
            "results": self.results,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SavedSearch":
        return cls(
            id=data["id"],
            keyword=data["keyword"],
            project_name=data["projectName"],
            results=list(data.get("results", [])),
            entry_point_file=data.get("entryPointFile"),
            timestamp=float(data.get("timestamp", 0.0)),
        )


class ResultsStore:
    """Saved searches, one per (keyword, project); saving again replaces it."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    @staticmethod
    def generate_key(keyword: str, project_name: str) -> str:
        return re.sub(r"[^a-zA-Z0-9]", "_", f"search_{keyword}_{project_name}")

    def save(
        self,
        keyword: str,
        project_name: str,
        results: Sequence[RankedFile | dict[str, Any]],
        entry_point_file: str | None = None,
    ) -> SavedSearch:
        record = SavedSearch(
            id=self.generate_key(keyword, project_name),
            keyword=keyword,
            project_name=project_name,
            results=[r.to_dict() if isinstance(r, RankedFile) else dict(r) for r in results],
            entry_point_file=entry_point_file,
            timestamp=time.time(),
        )
        self.store.put(
            record.id, json.dumps(record.to_dict()).encode(), timestamp=record.timestamp
        )
        logger.debug(f"Saved {len(record.results)} results as {record.id}")
        return record

    def _decode(self, key: str, data: bytes) -> SavedSearch | None:
        try:
            return SavedSearch.from_dict(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable saved search {key}: {e}")
            return None

    def get(self, search_id: str) -> SavedSearch | None:
        data = self.store.get(search_id)
        return self._decode(search_id, data) if data is not None else None

    def list_by_project(self, project_name: str) -> list[SavedSearch]:
        """Saved searches of a project, newest first."""
        records = []
        for key, data, _ in self.store.items():
            record = self._decode(key, data)
            if record and record.project_name == project_name:
                records.append(record)
        return sorted(records, key=lambda r: (-r.timestamp, r.id))

    def delete(self, search_id: str) -> bool:
        return self.store.delete(search_id)

    def clean_old(self, max_age_days: int = 30) -> int:
        return self.store.purge_older_than(time.time() - max_age_days * SECONDS_PER_DAY)
