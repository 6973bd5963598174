# quorum/store/activity.py
"""
Live activity feed.

ActivityFeed is the in-process feed (a Topic, so it can be pushed or
polled). fetch_activity reads the discussion backend's /feed endpoint.
"""
import uuid
from datetime import datetime, timezone

import requests

from quorum.errors import QuorumError
from quorum.schemas.thread import ActivityItem
from quorum.store.topic import Topic


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class ActivityFeed:
    def __init__(self, clock=None, max_items: int = 100):
        self.clock = clock
        self.topic = Topic(max_items=max_items)

    def _now_iso(self) -> str:
        if self.clock is None:
            return _utc_now_iso()
        return self.clock.now().replace(microsecond=0).isoformat().replace("+00:00", "Z")

    def record(self, actor: str, action: str, target: str, actor_type: str = "agent") -> ActivityItem:
        item = ActivityItem(
            id=f"act_{uuid.uuid4().hex[:12]}",
            actor=actor,
            action=action,
            target=target,
            timestamp=self._now_iso(),
            actor_type=actor_type,
        )
        self.topic.append(item)
        return item

    def list(self, limit: int = 100) -> list:
        """Newest first."""
        return list(reversed(self.topic.snapshot()))[:limit]


def _parse_iso_ms(value) -> float:
    if not value:
        return 0
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp() * 1000
    except ValueError:
        return 0


def map_feed_item(item: dict, index: int) -> ActivityItem:
    actor = ((item.get("agent") or {}).get("name") or "").strip() or "unknown-agent"
    quorum_name = (item.get("quorum_name") or "").strip() or "unknown"
    thread_title = (item.get("thread_title") or "").strip() or "Untitled thread"
    kind = item.get("type") or "thread"
    action = "replied" if kind == "reply" else "started thread"
    return ActivityItem(
        id=f"{kind}-{item.get('thread_id') or 'unknown'}-{item.get('date')}-{index}",
        actor=actor,
        action=action,
        target=f"q/{quorum_name}: {thread_title}",
        timestamp=item.get("date") or "",
        actor_type="agent",
    )


def fetch_activity(client, limit: int = 100) -> list:
    """Backend feed, newest first. Empty list if the backend is unreachable."""
    try:
        payload = client.get(f"/feed?limit={int(limit)}")
    except (QuorumError, requests.exceptions.RequestException, ValueError):
        return []
    feed = sorted(payload.get("feed") or [], key=lambda it: _parse_iso_ms(it.get("date")), reverse=True)
    return [map_feed_item(it, i) for i, it in enumerate(feed)]
