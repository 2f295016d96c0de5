"""Throughput accounting for log output only."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from logging import LoggerAdapter

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "metrics"})


@dataclass(frozen=True)
class ThroughputSnapshot:
    items: int
    total_bytes: int
    elapsed_seconds: float
    items_per_second: float

    @property
    def megabytes(self) -> float:
        return self.total_bytes / (1024 * 1024)


class ThroughputMeter:
    """Count items and bytes since the run started; log a rate every ``log_every`` items."""

    def __init__(
        self,
        total: int,
        log_every: int = 50,
        logger: LoggerAdapter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._total = total
        self._log_every = max(1, log_every)
        self._logger = logger or LOGGER
        self._clock = clock
        self._lock = threading.Lock()
        self._started = clock()
        self._items = 0
        self._bytes = 0
        self._last_log_time = self._started
        self._last_log_items = 0

    def record(self, size_bytes: int = 0) -> ThroughputSnapshot | None:
        """Count one finished item; return the interval snapshot when one is logged."""

        with self._lock:
            self._items += 1
            self._bytes += max(0, size_bytes)
            if self._items % self._log_every != 0:
                return None

            now = self._clock()
            interval = now - self._last_log_time
            rate = (self._items - self._last_log_items) / interval if interval > 0 else 0.0
            snapshot = ThroughputSnapshot(
                items=self._items,
                total_bytes=self._bytes,
                elapsed_seconds=now - self._started,
                items_per_second=rate,
            )
            self._last_log_time = now
            self._last_log_items = self._items

        self._logger.info(
            "throughput_snapshot",
            extra={
                "processed": snapshot.items,
                "total": self._total,
                "elapsed_seconds": round(snapshot.elapsed_seconds, 1),
                "photos_per_second": round(snapshot.items_per_second, 1),
                "megabytes": round(snapshot.megabytes, 1),
            },
        )
        return snapshot

    def summary(self) -> ThroughputSnapshot:
        """Return and log whole-run averages."""

        with self._lock:
            elapsed = self._clock() - self._started
            snapshot = ThroughputSnapshot(
                items=self._items,
                total_bytes=self._bytes,
                elapsed_seconds=elapsed,
                items_per_second=self._items / elapsed if elapsed > 0 else 0.0,
            )
        self._logger.info(
            "throughput_summary",
            extra={
                "processed": snapshot.items,
                "total": self._total,
                "elapsed_seconds": round(snapshot.elapsed_seconds, 1),
                "photos_per_second": round(snapshot.items_per_second, 1),
                "megabytes": round(snapshot.megabytes, 1),
            },
        )
        return snapshot


__all__ = ["ThroughputMeter", "ThroughputSnapshot"]
