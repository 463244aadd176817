from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from . import db
from .models import RecommendationRecord

Key = Tuple[str, str]


class RecommendationCache:
    """(ticker, date) -> RecommendationRecord memo for one batch job or request scope.

    Not global: construct one per job and pass it to whatever needs it.
    `get_or_compute` holds a per-key lock so concurrent workers compute a key at
    most once. Records put with persist=True are queued and written by `flush()`
    in batches (INSERT OR REPLACE, last writer wins).
    """

    def __init__(self, db_path: Optional[str] = None, batch_size: int = 500):
        self.db_path = db_path
        self.batch_size = max(1, int(batch_size))
        self._records: Dict[Key, RecommendationRecord] = {}
        self._pending: Dict[Key, RecommendationRecord] = {}
        self._locks: Dict[Key, threading.Lock] = {}
        self._guard = threading.Lock()
        self.computations = 0

    def __len__(self) -> int:
        with self._guard:
            return len(self._records)

    def __contains__(self, key: Key) -> bool:
        with self._guard:
            return key in self._records

    def get(self, ticker: str, date: str) -> Optional[RecommendationRecord]:
        with self._guard:
            return self._records.get((ticker, date))

    def put(self, record: RecommendationRecord, persist: bool = False) -> None:
        key = (record.ticker, record.date)
        with self._guard:
            self._records[key] = record
            if persist:
                self._pending[key] = record

    def invalidate(self, ticker: str, date: str) -> None:
        """Drop one key from memory, the write queue and the backing table."""
        key = (ticker, date)
        with self._guard:
            self._records.pop(key, None)
            self._pending.pop(key, None)
        if self.db_path:
            conn = db.connect(self.db_path)
            try:
                db.delete_recommendation(conn, ticker, date)
            finally:
                conn.close()

    def clear(self) -> None:
        """Forget everything held in memory (queued writes included)."""
        with self._guard:
            self._records.clear()
            self._pending.clear()

    def get_or_compute(
        self,
        ticker: str,
        date: str,
        compute: Callable[[], RecommendationRecord],
        persist: bool = False,
    ) -> RecommendationRecord:
        key = (ticker, date)
        with self._guard:
            hit = self._records.get(key)
            if hit is not None:
                return hit
            lock = self._locks.setdefault(key, threading.Lock())

        with lock:
            hit = self.get(ticker, date)
            if hit is not None:
                return hit
            record = compute()
            with self._guard:
                self.computations += 1
                self._records[key] = record
                if persist:
                    self._pending[key] = record
                self._locks.pop(key, None)
            return record

    @property
    def pending(self) -> int:
        with self._guard:
            return len(self._pending)

    def load(self, ticker: str) -> int:
        """Warm memory from the backing table. Returns rows loaded."""
        if not self.db_path:
            return 0
        conn = db.connect(self.db_path)
        try:
            rows = db.load_recommendations(conn, ticker)
        finally:
            conn.close()
        with self._guard:
            for rec in rows:
                self._records[(rec.ticker, rec.date)] = rec
        return len(rows)

    def flush(self) -> int:
        """Write queued records in batches. Returns rows written.

        Chunks that fail to write go back on the queue before the error propagates.
        """
        if not self.db_path:
            return 0
        with self._guard:
            batch: List[RecommendationRecord] = list(self._pending.values())
            self._pending.clear()
        if not batch:
            return 0
        written = 0
        try:
            conn = db.connect(self.db_path)
            try:
                for i in range(0, len(batch), self.batch_size):
                    chunk = batch[i : i + self.batch_size]
                    db.save_recommendations(conn, chunk)
                    written += len(chunk)
            finally:
                conn.close()
        except Exception:
            self._requeue(batch[written:])
            logging.warning("recommendation cache flush failed; %s rows requeued", len(batch) - written)
            raise
        logging.info("recommendation cache flushed: %s rows", written)
        return written

    def _requeue(self, records: List[RecommendationRecord]) -> None:
        with self._guard:
            for rec in records:
                # a newer record queued meanwhile wins
                self._pending.setdefault((rec.ticker, rec.date), rec)
