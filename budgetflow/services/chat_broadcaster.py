"""
In-process publish/subscribe for chat threads.

Subscribers get a bounded ``queue.Queue`` per thread. Delivery is best
effort: a full queue drops the event for that subscriber only. The database
stays the source of truth; clients re-read history on reconnect.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections import defaultdict

logger = logging.getLogger(__name__)


class ChatBroadcaster:
    def __init__(self, max_queue: int = 100) -> None:
        self.max_queue = max_queue
        self._lock = threading.Lock()
        self._subscribers: dict[int, set[queue.Queue]] = defaultdict(set)

    def subscribe(self, thread_id: int) -> queue.Queue:
        q: queue.Queue = queue.Queue(maxsize=self.max_queue)
        with self._lock:
            self._subscribers[thread_id].add(q)
        return q

    def unsubscribe(self, thread_id: int, q: queue.Queue) -> None:
        with self._lock:
            subs = self._subscribers.get(thread_id)
            if not subs:
                return
            subs.discard(q)
            if not subs:
                del self._subscribers[thread_id]

    def subscriber_count(self, thread_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(thread_id, ()))

    def publish(self, thread_id: int, event: dict) -> int:
        """Push ``event`` to every subscriber of the thread. Returns deliveries."""
        with self._lock:
            subs = list(self._subscribers.get(thread_id, ()))
        delivered = 0
        for q in subs:
            try:
                q.put_nowait(event)
                delivered += 1
            except queue.Full:
                logger.debug("Chat subscriber queue full; event dropped for thread %s", thread_id)
        return delivered


broadcaster = ChatBroadcaster()
