# marina_scheduler/api/live_sync.py
#
# Live sync: keeps cached week views honest when another actor changes an
# intervention. Changes arrive on a ChangeFeed (published by our own store
# writes and by the database webhook); the listener only invalidates caches,
# the next calendar request recomputes from scratch.

import logging
import threading
from typing import Callable, List

from marina_scheduler.models import ChangeKind, TaskChange

logger = logging.getLogger(__name__)


class ChangeFeed:
    """In-process push subscription of task changes, delivered in publish order."""

    def __init__(self):
        self._subscribers: List[Callable[[TaskChange], None]] = []
        self._lock = threading.RLock()

    def subscribe(self, callback: Callable[[TaskChange], None]) -> Callable[[], None]:
        """Register callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, change: TaskChange):
        # one publisher at a time so every subscriber sees the same order
        with self._lock:
            subscribers = list(self._subscribers)
            for callback in subscribers:
                try:
                    callback(change)
                except Exception:
                    logger.exception(f"Change feed subscriber failed on {change}")


class LiveSyncListener:
    """
    Invalidates the planner's memoized week task sets and views on task changes.

    Only weeks currently held in cache (the visible planning horizon) are
    affected; an event it cannot place exactly drops more than necessary,
    which only costs a recomputation.
    """

    def __init__(self, planner):
        self.planner = planner
        self.events_seen = 0
        self._unsubscribe = None

    def attach(self, feed: ChangeFeed):
        self.detach()
        self._unsubscribe = feed.subscribe(self.handle)
        return self

    def detach(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle(self, change: TaskChange):
        self.events_seen += 1
        logger.debug(f"Change feed: {change.kind.value} task {change.task_id}")

        if not self.planner.watched_weeks():
            return

        dropped = self.planner.invalidate_task(change.task_id)
        if change.dates:
            dropped += self.planner.invalidate_dates(change.site_id, change.dates)
        elif change.kind == ChangeKind.INSERT:
            # a new task we know nothing about could land in any watched week
            self.planner.invalidate_all()
        if dropped:
            logger.debug(f"Live sync dropped {dropped} cache entries for task {change.task_id}")
