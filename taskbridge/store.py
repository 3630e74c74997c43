from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

from pydantic import ValidationError

from .schemas import COLLECTIONS, Client, Task, User


logger = logging.getLogger("taskbridge.store")

Entity = Union[Task, User, Client]

_MODEL_OF = {"tasks": Task, "users": User, "clients": Client}


class LocalStore:
    """In-memory copy of the three collections.

    Sync workers and the pull reconciler run on other threads, so every read
    and write goes through one re-entrant lock. Reads return copies.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._data: dict[str, list[Entity]] = {name: [] for name in COLLECTIONS}

    def _items(self, collection: str) -> list[Entity]:
        if collection not in self._data:
            raise KeyError(f"Unknown collection: {collection}")
        return self._data[collection]

    @contextmanager
    def locked(self) -> Iterator["LocalStore"]:
        """Hold the store lock across several calls (check-then-replace)."""
        with self._lock:
            yield self

    def snapshot(self, collection: str) -> list[Entity]:
        with self._lock:
            return list(self._items(collection))

    def get(self, collection: str, entity_id: str) -> Optional[Entity]:
        with self._lock:
            for item in self._items(collection):
                if item.id == entity_id:
                    return item
        return None

    def append(self, collection: str, *items: Entity) -> None:
        with self._lock:
            self._items(collection).extend(items)

    def upsert(self, collection: str, item: Entity) -> bool:
        """Replace the item with the same id, or append it. Returns True on replace."""
        with self._lock:
            items = self._items(collection)
            for i, existing in enumerate(items):
                if existing.id == item.id:
                    items[i] = item
                    return True
            items.append(item)
            return False

    def remove(self, collection: str, ids: Iterable[str]) -> list[Entity]:
        drop = set(ids)
        with self._lock:
            items = self._items(collection)
            removed = [x for x in items if x.id in drop]
            self._data[collection] = [x for x in items if x.id not in drop]
            return removed

    def replace_all(self, collection: str, items: Iterable[Entity]) -> None:
        with self._lock:
            self._items(collection)
            self._data[collection] = list(items)

    # ---- cache file ----

    def save_cache(self, path: str | Path) -> Path:
        with self._lock:
            payload = {
                name: [x.model_dump(by_alias=True, mode="json") for x in items] for name, items in self._data.items()
            }
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        tmp = p.with_suffix(p.suffix + ".tmp")
        tmp.write_text(json.dumps(payload), encoding="utf-8")
        tmp.replace(p)
        return p

    def load_cache(self, path: str | Path) -> int:
        """Load collections from a cache file. Returns the number of items loaded."""
        p = Path(path)
        if not p.exists():
            return 0
        try:
            raw = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable cache %s: %s", p, e)
            return 0
        if not isinstance(raw, dict):
            return 0

        loaded = 0
        for name, model in _MODEL_OF.items():
            rows = raw.get(name)
            if not isinstance(rows, list):
                continue
            items: list[Entity] = []
            for row in rows:
                try:
                    items.append(model.model_validate(row))
                except ValidationError:
                    logger.warning("Skipping unreadable cached %s entry", name)
            self.replace_all(name, items)
            loaded += len(items)
        return loaded
