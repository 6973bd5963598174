# quorum/store/topic.py
"""
Append-only, ordered payload sequence that live subscribers can read two ways:
poll with since(cursor), or listen() for a queue pre-filled with the backlog
and fed by every later append.
"""
import queue
import threading

# Put on listener queues when the topic is closed (e.g. its run was evicted)
CLOSED = object()


class Topic:
    def __init__(self, max_items: int | None = None):
        self._items = []
        self._offset = 0          # absolute index of self._items[0]
        self._max_items = max_items
        self._listeners = []
        self._lock = threading.Lock()
        self.closed = False

    def append(self, item) -> None:
        with self._lock:
            self._items.append(item)
            if self._max_items and len(self._items) > self._max_items:
                drop = len(self._items) - self._max_items
                del self._items[:drop]
                self._offset += drop
            for q in self._listeners:
                q.put(item)

    def snapshot(self) -> list:
        with self._lock:
            return list(self._items)

    def since(self, cursor: int) -> tuple:
        """Return (items appended at or after absolute cursor, next cursor)."""
        with self._lock:
            start = max(0, int(cursor) - self._offset)
            return list(self._items[start:]), self._offset + len(self._items)

    def listen(self) -> queue.Queue:
        # backlog and registration under one lock: no gap, no duplicate
        q = queue.Queue()
        with self._lock:
            for item in self._items:
                q.put(item)
            if self.closed:
                q.put(CLOSED)
            else:
                self._listeners.append(q)
        return q

    def unlisten(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._listeners:
                self._listeners.remove(q)

    def close(self) -> None:
        with self._lock:
            self.closed = True
            for q in self._listeners:
                q.put(CLOSED)
            self._listeners = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
