"""
Delivery-id stores used for webhook replay protection.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from github_guard.database.manager import DatabaseManager
from github_guard.database.models import WebhookDelivery
from github_guard.utils.logger import get_logger

DEFAULT_RETENTION_SECONDS = 86400
DEFAULT_MAX_ENTRIES = 10000


class DeliveryStore:
    """Interface for dedup stores.

    ``check_and_insert`` must be atomic: for concurrent calls with the same
    id, exactly one returns True.
    """

    def check_and_insert(self, delivery_id: str) -> bool:
        """Record ``delivery_id``; True if it was new, False if already seen."""
        raise NotImplementedError

    def release(self, delivery_id: str) -> bool:
        """Forget ``delivery_id`` so a redelivery is processed again."""
        raise NotImplementedError

    def contains(self, delivery_id: str) -> bool:
        raise NotImplementedError

    def get(self, delivery_id: str) -> Optional[WebhookDelivery]:
        raise NotImplementedError

    def size(self) -> int:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class InMemoryDeliveryStore(DeliveryStore):
    """Process-local store bounded by age and by count.

    Entries older than ``retention_seconds`` are dropped lazily; once
    ``max_entries`` is reached the oldest entry is evicted. An id evicted
    early by the count bound is treated as new if it is delivered again.
    """

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.retention_seconds = retention_seconds
        self.max_entries = max_entries
        self._clock = clock
        self.lock = threading.Lock()
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self.evictions = 0
        self.logger = get_logger("webhooks.store")

    def _purge_expired(self, now: float) -> None:
        cutoff = now - self.retention_seconds
        # Insertion order is first-seen order, so expired ids sit at the front
        while self._entries:
            if next(iter(self._entries.values())) > cutoff:
                break
            self._entries.popitem(last=False)

    def check_and_insert(self, delivery_id: str) -> bool:
        with self.lock:
            now = self._clock()
            self._purge_expired(now)
            if delivery_id in self._entries:
                return False
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
                self.evictions += 1
            self._entries[delivery_id] = now
            return True

    def release(self, delivery_id: str) -> bool:
        with self.lock:
            return self._entries.pop(delivery_id, None) is not None

    def contains(self, delivery_id: str) -> bool:
        with self.lock:
            self._purge_expired(self._clock())
            return delivery_id in self._entries

    def get(self, delivery_id: str) -> Optional[WebhookDelivery]:
        with self.lock:
            self._purge_expired(self._clock())
            seen_at = self._entries.get(delivery_id)
            return WebhookDelivery(delivery_id, seen_at) if seen_at is not None else None

    def size(self) -> int:
        with self.lock:
            self._purge_expired(self._clock())
            return len(self._entries)

    def clear(self) -> None:
        with self.lock:
            self._entries.clear()


class SQLiteDeliveryStore(DeliveryStore):
    """Durable store; survives process restarts.

    Atomicity comes from ``INSERT OR IGNORE`` on the ``delivery_id`` primary
    key, so it also holds across processes sharing the database file.
    """

    def __init__(
        self,
        database_path: str = ":memory:",
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
        db_manager: Optional[DatabaseManager] = None,
    ):
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.retention_seconds = retention_seconds
        self.max_entries = max_entries
        self._clock = clock
        self.db_manager = db_manager or DatabaseManager(database_path)
        self.logger = get_logger("webhooks.store")

    def check_and_insert(self, delivery_id: str) -> bool:
        now = self._clock()
        cutoff = now - self.retention_seconds
        counts = self.db_manager.execute_transaction(
            [
                ("DELETE FROM webhook_deliveries WHERE delivery_id = ? AND first_seen_at <= ?", (delivery_id, cutoff)),
                ("INSERT OR IGNORE INTO webhook_deliveries (delivery_id, first_seen_at) VALUES (?, ?)", (delivery_id, now)),
                (
                    "DELETE FROM webhook_deliveries WHERE delivery_id IN ("
                    "SELECT delivery_id FROM webhook_deliveries "
                    "ORDER BY first_seen_at DESC, rowid DESC LIMIT -1 OFFSET ?)",
                    (self.max_entries,),
                ),
            ]
        )
        return len(counts) > 1 and counts[1] == 1

    def release(self, delivery_id: str) -> bool:
        return self.db_manager.execute_update("DELETE FROM webhook_deliveries WHERE delivery_id = ?", (delivery_id,)) > 0

    def _row(self, delivery_id: str):
        rows = self.db_manager.execute_query(
            "SELECT delivery_id, first_seen_at FROM webhook_deliveries WHERE delivery_id = ? AND first_seen_at > ?",
            (delivery_id, self._clock() - self.retention_seconds),
        )
        return rows[0] if rows else None

    def contains(self, delivery_id: str) -> bool:
        return self._row(delivery_id) is not None

    def get(self, delivery_id: str) -> Optional[WebhookDelivery]:
        row = self._row(delivery_id)
        return WebhookDelivery(row[0], row[1]) if row else None

    def cleanup_expired(self) -> int:
        """Delete ids older than the retention window; returns how many."""
        removed = self.db_manager.execute_update(
            "DELETE FROM webhook_deliveries WHERE first_seen_at <= ?", (self._clock() - self.retention_seconds,)
        )
        if removed:
            self.logger.debug(f"Removed {removed} expired delivery ids")
        return removed

    def size(self) -> int:
        rows = self.db_manager.execute_query(
            "SELECT COUNT(*) FROM webhook_deliveries WHERE first_seen_at > ?",
            (self._clock() - self.retention_seconds,),
        )
        return rows[0][0] if rows else 0

    def clear(self) -> None:
        self.db_manager.execute_update("DELETE FROM webhook_deliveries")

    def close(self) -> None:
        self.db_manager.close()
