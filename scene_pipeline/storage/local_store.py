"""
Local tier key-value storage.

JsonFileStore keeps one JSON document per key under a directory.
LocalStorageCache layers a key prefix, an item TTL and a capacity with
oldest-first eviction on top of it. Every cached value is wrapped as
{"data": ..., "timestamp": <epoch seconds>}.
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote, unquote

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

_SUFFIX = ".json"


class JsonFileStore:
    """
    One JSON file per key.

    Keys are URL-quoted into file names so any string is a valid key.
    Writes go to a temp file and are renamed into place.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / f"{quote(key, safe='')}{_SUFFIX}"

    def get_raw(self, key: str) -> Optional[str]:
        """Raw text for a key, or None if absent."""
        try:
            return self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def get(self, key: str) -> Any:
        """
        Parsed value for a key.

        Raises:
            ValueError: If the stored document is not valid JSON
        """
        raw = self.get_raw(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f, ensure_ascii=False)
        os.replace(tmp_path, path)

    def delete(self, key: str) -> bool:
        """Remove a key. Returns False if it did not exist."""
        try:
            self._path(key).unlink()
            return True
        except FileNotFoundError:
            return False

    def keys(self, prefix: str = "") -> List[str]:
        """All keys starting with prefix."""
        result = []
        for path in self.root.glob(f"*{_SUFFIX}"):
            key = unquote(path.name[: -len(_SUFFIX)])
            if key.startswith(prefix):
                result.append(key)
        return sorted(result)


class LocalStorageCache:
    """
    Prefixed TTL cache with a capacity limit.

    Reads check the TTL and drop expired or corrupt items. Writing a new key
    when the cache is full evicts the item with the oldest timestamp.
    """

    def __init__(
        self,
        store: JsonFileStore,
        prefix: str,
        max_items: int,
        ttl_seconds: float,
        clock: Clock = time.time,
    ):
        self.store = store
        self.prefix = prefix
        self.max_items = max_items
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _key(self, item_id: str) -> str:
        return f"{self.prefix}{item_id}"

    def _read_wrapped(self, key: str) -> Optional[Dict[str, Any]]:
        """Read a wrapped item, removing it if corrupt."""
        try:
            wrapped = self.store.get(key)
        except ValueError as e:
            logger.warning(f"[LocalStore] Corrupt entry {key} removed: {e}")
            self.store.delete(key)
            return None

        if wrapped is None:
            return None
        if not isinstance(wrapped, dict) or "data" not in wrapped or "timestamp" not in wrapped:
            logger.warning(f"[LocalStore] Malformed entry {key} removed")
            self.store.delete(key)
            return None
        return wrapped

    def _is_stale(self, wrapped: Dict[str, Any]) -> bool:
        return self._clock() - float(wrapped["timestamp"]) > self.ttl_seconds

    def get(self, item_id: str) -> Any:
        """Cached data, or None if missing, expired or corrupt."""
        key = self._key(item_id)
        wrapped = self._read_wrapped(key)
        if wrapped is None:
            return None
        if self._is_stale(wrapped):
            logger.debug(f"[LocalStore] Entry {key} expired")
            self.store.delete(key)
            return None
        return wrapped["data"]

    def set(self, item_id: str, data: Any) -> None:
        key = self._key(item_id)
        if self.store.get_raw(key) is None:
            self._evict_for_insert()
        self.store.set(key, {"data": data, "timestamp": self._clock()})

    def delete(self, item_id: str) -> bool:
        return self.store.delete(self._key(item_id))

    def item_ids(self) -> List[str]:
        return [key[len(self.prefix):] for key in self.store.keys(self.prefix)]

    def entries(self) -> List[Tuple[str, Any, float]]:
        """
        All live (item_id, data, timestamp) triples, newest first.

        Expired and corrupt entries are removed along the way.
        """
        live = []
        for item_id in self.item_ids():
            key = self._key(item_id)
            wrapped = self._read_wrapped(key)
            if wrapped is None:
                continue
            if self._is_stale(wrapped):
                self.store.delete(key)
                continue
            live.append((item_id, wrapped["data"], float(wrapped["timestamp"])))

        live.sort(key=lambda entry: entry[2], reverse=True)
        return live

    def get_all(self) -> List[Any]:
        """All live data values, newest first."""
        return [data for _, data, _ in self.entries()]

    def clear(self) -> int:
        """Remove every item under the prefix. Returns the count removed."""
        removed = 0
        for item_id in self.item_ids():
            if self.delete(item_id):
                removed += 1
        return removed

    def _evict_for_insert(self) -> None:
        entries = self.entries()
        while len(entries) >= self.max_items > 0:
            oldest_id, _, _ = entries.pop()
            logger.info(f"[LocalStore] Capacity {self.max_items} reached, evicting {self.prefix}{oldest_id}")
            self.delete(oldest_id)
