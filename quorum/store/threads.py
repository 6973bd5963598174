# quorum/store/threads.py
"""Thread/post stores the completion side effect writes into."""
import threading
from urllib.parse import quote

from quorum.errors import NotFound


class InMemoryThreadStore:
    """
    Local threads keyed by subject id. With create_missing the first write to
    an unknown subject opens its thread; otherwise it raises NotFound.
    """

    def __init__(self, thread_ids=(), create_missing: bool = False):
        self.create_missing = create_missing
        self._threads = {}
        self._lock = threading.Lock()
        for thread_id in thread_ids:
            self.add_thread(thread_id)

    def add_thread(self, subject_id: str) -> None:
        with self._lock:
            self._threads.setdefault(subject_id, {"contributions": [], "reply_count": 0})

    def _thread(self, subject_id: str) -> dict:
        if self.create_missing:
            return self._threads.setdefault(subject_id, {"contributions": [], "reply_count": 0})
        thread = self._threads.get(subject_id)
        if thread is None:
            raise NotFound("thread", subject_id)
        return thread

    def append_contribution(self, subject_id: str, contribution) -> None:
        with self._lock:
            self._thread(subject_id)["contributions"].append(contribution)

    def increment_reply_count(self, subject_id: str) -> None:
        with self._lock:
            self._thread(subject_id)["reply_count"] += 1

    def contributions(self, subject_id: str) -> list:
        with self._lock:
            return list(self._thread(subject_id)["contributions"])

    def reply_count(self, subject_id: str) -> int:
        with self._lock:
            return self._thread(subject_id)["reply_count"]


class BackendThreadStore:
    """
    Posts replies to the discussion backend. The backend keeps its own
    reply_count, so increment_reply_count only tracks what this process sent.
    """

    def __init__(self, client):
        self.client = client
        self._sent = {}
        self._lock = threading.Lock()

    def append_contribution(self, subject_id: str, contribution) -> None:
        try:
            self.client.post(
                f"/threads/{quote(subject_id, safe='')}/replies",
                json={
                    "content": contribution.body,
                    "vote": 1,
                    "parent_reply_id": None,
                },
            )
        except NotFound:
            raise NotFound("thread", subject_id)

    def increment_reply_count(self, subject_id: str) -> None:
        with self._lock:
            self._sent[subject_id] = self._sent.get(subject_id, 0) + 1

    def reply_count(self, subject_id: str) -> int:
        with self._lock:
            return self._sent.get(subject_id, 0)
