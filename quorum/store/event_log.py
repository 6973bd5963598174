# quorum/store/event_log.py
import threading
import uuid

from quorum.errors import InvalidArgument, NotFound
from quorum.schemas.event import (
    CitationAddedEvent,
    ClaimAddedEvent,
    StageUpdateEvent,
    StatusEvent,
    SummaryEvent,
)
from quorum.store.topic import Topic

EVENT_TYPES = {
    "status": StatusEvent,
    "stage_update": StageUpdateEvent,
    "citation_added": CitationAddedEvent,
    "claim_added": ClaimAddedEvent,
    "summary": SummaryEvent,
}


def _event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:16]}"


class EventLog:
    """
    Per-run, append-only event sequences. Each run's events live in a Topic
    so live subscribers can follow them. Timestamps never go backwards
    within one run, even if the clock does.
    """

    def __init__(self, clock):
        self.clock = clock
        self._topics = {}
        self._last_ts = {}
        self._lock = threading.Lock()

    def open(self, run_id: str) -> None:
        with self._lock:
            self._topics.setdefault(run_id, Topic())

    def topic(self, run_id: str) -> Topic:
        with self._lock:
            topic = self._topics.get(run_id)
        if topic is None:
            raise NotFound("run", run_id)
        return topic

    def append(self, run_id: str, kind: str, message: str, progress: int,
               contributor: str | None = None, **fields):
        model = EVENT_TYPES.get(kind)
        if model is None:
            raise InvalidArgument(f"unknown event kind: {kind}")
        topic = self.topic(run_id)
        with self._lock:
            ts = self.clock.now()
            last = self._last_ts.get(run_id)
            if last is not None and ts < last:
                ts = last
            self._last_ts[run_id] = ts
            event = model(
                id=_event_id(),
                run_id=run_id,
                contributor=contributor,
                message=message,
                progress=progress,
                timestamp=ts,
                **fields,
            )
            # appended under the log lock so timestamp order == append order
            topic.append(event)
        return event

    def list(self, run_id: str) -> list:
        return self.topic(run_id).snapshot()

    def drop(self, run_id: str) -> None:
        with self._lock:
            topic = self._topics.pop(run_id, None)
            self._last_ts.pop(run_id, None)
        if topic is not None:
            topic.close()
