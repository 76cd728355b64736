# aaaa_filter/stats.py
# Version: 1.0.0
# Per-domain query statistics fed through a bounded event queue

"""
Query Statistics

Every handled query produces one QueryEvent. Events are pushed onto a small
bounded queue and applied by a single collector thread, which is the only
code that ever mutates DomainStat entries or the ranked index. Producers
block when the queue is full.

Names are grouped by a naive two-label root: "a.b.example.com." counts
towards "example.com". This is not public-suffix aware, so every name under
".co.uk" lands in the "co.uk" bucket.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from aaaa_filter.constants import STATS_QUEUE_SIZE, STATS_REPORT_SIZE, STATS_UNKNOWN_ROOT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryEvent:
    """A single handled query"""

    domain_name: str
    query_type: str
    filtered: bool = False


@dataclass
class DomainStat:
    """Counters for one root domain"""

    root_domain: str
    frequency: int = 0
    filtered_count: int = 0
    per_type_counts: Dict[str, int] = field(default_factory=dict)

    def record(self, event: QueryEvent):
        self.frequency += 1
        if event.filtered:
            self.filtered_count += 1
        self.per_type_counts[event.query_type] = self.per_type_counts.get(event.query_type, 0) + 1

    def copy(self) -> "DomainStat":
        return replace(self, per_type_counts=dict(self.per_type_counts))


@dataclass(frozen=True)
class StatsSnapshot:
    """Point-in-time copy of the aggregate state"""

    uptime: float
    total_queries: int
    domain_count: int
    top_domains: Tuple[DomainStat, ...]


def extract_root(name: str) -> str:
    """
    Derive the statistics grouping key from a domain name

    Args:
        name: Domain name, with or without the trailing dot

    Returns:
        The last two labels joined by a dot, or an empty string when the
        name has fewer than two labels
    """
    if not name.endswith("."):
        name += "."
    labels = name.split(".")
    if len(labels) < 3:
        return STATS_UNKNOWN_ROOT
    return f"{labels[-3]}.{labels[-2]}"


class StatsCollector:
    """Single consumer of query events, owner of all per-domain counters"""

    _STOP = object()

    def __init__(self, queue_size: int = STATS_QUEUE_SIZE, clock=time.monotonic):
        self._queue: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self._clock = clock
        self._started_at = clock()
        # Held by the collector while one event is applied and by readers
        # while they copy, so a snapshot never sees a half-applied event.
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._accepting = True

        self.total_queries = 0
        self._stats: Dict[str, DomainStat] = {}
        self._ranked: List[DomainStat] = []

    @property
    def started_at(self) -> float:
        return self._started_at

    @property
    def pending(self) -> int:
        """Approximate number of events waiting in the queue"""
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the collector thread"""
        if self.running:
            logger.warning("Stats collector already running")
            return
        self._thread = threading.Thread(target=self._run, name="stats-collector", daemon=True)
        self._thread.start()
        logger.info(f"Stats collector started (queue size {self._queue.maxsize})")

    def stop(self, timeout: Optional[float] = None):
        """Process every pending event, then stop the collector thread"""
        self._accepting = False
        if not self.running:
            return
        self._queue.put(self._STOP)
        self._thread.join(timeout)
        logger.info(f"Stats collector stopped after {self.total_queries} queries")

    def submit(self, event: QueryEvent):
        """Queue an event, blocking while the queue is full"""
        if not self._accepting:
            logger.debug(f"Stats collector stopped, discarding {event}")
            return
        self._queue.put(event)

    def _run(self):
        while True:
            event = self._queue.get()
            try:
                if event is self._STOP:
                    return
                self.process_event(event)
            except Exception as e:
                logger.error(f"Failed to record stats for {event}: {e}")
            finally:
                self._queue.task_done()

    def process_event(self, event: QueryEvent):
        """Apply one event to the counters and the ranked index"""
        root = extract_root(event.domain_name)
        with self._lock:
            self.total_queries += 1

            stat = self._stats.get(root)
            if stat is None:
                stat = DomainStat(root_domain=root)
                self._stats[root] = stat
                self._ranked.append(stat)

            stat.record(event)

            # list.sort is stable, so equal frequencies keep their order
            if stat.frequency > 1:
                self._ranked.sort(key=lambda s: s.frequency, reverse=True)

    def get(self, root_domain: str) -> Optional[DomainStat]:
        """Get a copy of the counters for one root domain"""
        with self._lock:
            stat = self._stats.get(root_domain)
            return stat.copy() if stat else None

    def top(self, limit: int = STATS_REPORT_SIZE) -> List[DomainStat]:
        """Get copies of the most frequently queried root domains"""
        with self._lock:
            return [stat.copy() for stat in self._ranked[:limit]]

    def snapshot(self, limit: int = STATS_REPORT_SIZE) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                uptime=self._clock() - self._started_at,
                total_queries=self.total_queries,
                domain_count=len(self._stats),
                top_domains=tuple(stat.copy() for stat in self._ranked[:limit]),
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._stats)
