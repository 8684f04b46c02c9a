"""
Local cache reconciliation for change notifications.

Caches are keyed containers of records with identity ``id``. Applying a
notification is idempotent: an insert never duplicates an id, an update only
replaces a record that is already listed, and a delete removes by id from
every list whose descriptor wants the entity type, whatever its filter.
Alongside the lists a single-record cache keyed by ``(entity_type, id)``
tracks the latest version of every record seen.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..schemas.changes import ChangeNotification, Operation, SubscriptionDescriptor


logger = logging.getLogger("reconciler")

Record = Dict[str, Any]
RecordKey = Tuple[str, str]


def _record_id(record: Record) -> str:
    return str(record.get("id"))


class CacheStore:
    """Thread-safe named record lists plus the single-record cache."""

    def __init__(self) -> None:
        self._lists: Dict[str, List[Record]] = {}
        self._records: Dict[RecordKey, Record] = {}
        self._lock = threading.Lock()

    def snapshot(self, cache_key: str) -> Tuple[Record, ...]:
        with self._lock:
            return tuple(copy.deepcopy(r) for r in self._lists.get(cache_key, ()))

    def get_record(self, entity_type: str, record_id: Any) -> Optional[Record]:
        with self._lock:
            record = self._records.get((entity_type, str(record_id)))
            return copy.deepcopy(record) if record is not None else None

    def seed(self, cache_key: str, records: Iterable[Record], *, entity_type: Optional[str] = None) -> None:
        """Replace a list with an initial load; duplicate ids keep the last copy."""
        by_id: Dict[str, Record] = {}
        for record in records:
            by_id[_record_id(record)] = copy.deepcopy(record)
        with self._lock:
            self._lists[cache_key] = list(by_id.values())
            if entity_type:
                for rid, record in by_id.items():
                    self._records[(entity_type, rid)] = copy.deepcopy(record)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._lists)

    def clear(self) -> None:
        with self._lock:
            self._lists.clear()
            self._records.clear()

    # Mutators below are only called by CacheReconciler.

    def _insert(self, cache_key: str, record: Record) -> bool:
        items = self._lists.setdefault(cache_key, [])
        rid = _record_id(record)
        if any(_record_id(r) == rid for r in items):
            return False
        items.append(copy.deepcopy(record))
        return True

    def _update(self, cache_key: str, record: Record) -> bool:
        items = self._lists.get(cache_key)
        if not items:
            return False
        rid = _record_id(record)
        for index, existing in enumerate(items):
            if _record_id(existing) == rid:
                items[index] = copy.deepcopy(record)
                return True
        return False

    def _delete(self, cache_key: str, record_id: str) -> bool:
        items = self._lists.get(cache_key)
        if not items:
            return False
        kept = [r for r in items if _record_id(r) != record_id]
        if len(kept) == len(items):
            return False
        self._lists[cache_key] = kept
        return True


class CacheReconciler:
    def __init__(self, store: Optional[CacheStore] = None, *, tenant_id: Optional[str] = None) -> None:
        self.store = store or CacheStore()
        self.tenant_id = tenant_id

    def apply(
        self,
        notification: ChangeNotification,
        descriptors: Iterable[SubscriptionDescriptor],
    ) -> List[str]:
        """Apply one notification. Returns the cache keys it touched, in order."""
        if self.tenant_id is not None and notification.tenant_id != self.tenant_id:
            logger.warning(
                "Dropping change for tenant=%s in cache for tenant=%s", notification.tenant_id, self.tenant_id
            )
            return []

        op = notification.operation
        rid = notification.key_id
        single_key = (notification.entity_type, rid)
        touched: List[str] = []
        relevant = False

        with self.store._lock:
            for descriptor in descriptors:
                if not descriptor.wants(notification):
                    continue
                # A list may hold an older copy than the latest one seen, so deletes ignore filters.
                if op != Operation.DELETE and not descriptor.accepts(notification.record):
                    continue
                relevant = True
                for cache_key in descriptor.cache_keys:
                    if op == Operation.INSERT:
                        changed = self.store._insert(cache_key, notification.record)
                    elif op == Operation.UPDATE:
                        changed = self.store._update(cache_key, notification.record)
                    else:
                        changed = self.store._delete(cache_key, rid)
                    if changed and cache_key not in touched:
                        touched.append(cache_key)

            if relevant and op == Operation.DELETE:
                self.store._records.pop(single_key, None)
            elif relevant:
                self.store._records[single_key] = copy.deepcopy(notification.record)

        return touched
