# quorum/web/live.py
"""
Live update transport: push when the source can push, polling otherwise.

subscribe(channel, on_payload, on_error) returns an unsubscribe callable
that is safe to call any number of times and stops all underlying work.
Payloads reach on_payload in source order. A transport error calls
on_error at most once per connection and tears that connection down;
resubscribing is up to the caller.

Channels:
    runs/<run_id>/events   events of one analysis run
    activity               the live activity feed
"""
import json
import re
import threading

import requests

from quorum.errors import NotFound
from quorum.pipeline.clock import ThreadingClock
from quorum.schemas.event import EVENT_ADAPTER, EVENT_LIST_ADAPTER
from quorum.schemas.thread import ActivityItem
from quorum.store.topic import CLOSED
from quorum.tools.logger import RunLogger

RUN_EVENTS_CHANNEL = re.compile(r"^runs/(?P<run_id>[^/]+)/events$")
ACTIVITY_CHANNEL = "activity"

_STOP = object()


def run_events_channel(run_id: str) -> str:
    return f"runs/{run_id}/events"


def channel_resolver(event_log, activity=None):
    """Map channel names to in-process sources (Topic-like objects)."""
    def resolve(channel: str):
        if channel == ACTIVITY_CHANNEL and activity is not None:
            return activity.topic
        m = RUN_EVENTS_CHANNEL.match(channel or "")
        if m:
            return event_log.topic(m.group("run_id"))
        raise NotFound("channel", channel)
    return resolve


class _Subscription:
    def __init__(self, on_payload, on_error, log: RunLogger):
        self.on_payload = on_payload
        self.on_error = on_error
        self.log = log
        self.closed = False
        self._errored = False
        self._lock = threading.Lock()

    def _report(self, err: Exception) -> None:
        """Invoke on_error once for this connection, then tear it down."""
        with self._lock:
            if self._errored or self.closed:
                return
            self._errored = True
        self.log.warning(f"live transport error: {type(err).__name__}: {err}")
        self.close()
        if self.on_error is not None:
            self.on_error(err)

    def close(self) -> None:
        raise NotImplementedError


class PushSubscription(_Subscription):
    """Drains the source's listener queue on a dispatcher thread."""

    def __init__(self, source, on_payload, on_error, log: RunLogger):
        super().__init__(on_payload, on_error, log)
        self.source = source
        self._queue = source.listen()
        self._thread = threading.Thread(target=self._pump, daemon=True)
        self._thread.start()

    def _pump(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP or item is CLOSED or self.closed:
                return
            try:
                self.on_payload(item)
            except Exception as e:
                self._report(e)
                return

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
        self.source.unlisten(self._queue)
        self._queue.put(_STOP)


class PollSubscription(_Subscription):
    """
    Calls source.since(cursor) at a fixed interval, first poll immediately.
    Deduplicates by payload id so an overlapping fetch never delivers twice.
    """

    def __init__(self, source, on_payload, on_error, interval: float, clock, log: RunLogger):
        super().__init__(on_payload, on_error, log)
        self.source = source
        self.interval = float(interval)
        self.clock = clock
        self._cursor = 0
        self._seen = set()
        self._handle = None
        self._poll_lock = threading.Lock()
        self._schedule(0)

    def _schedule(self, delay: float) -> None:
        with self._lock:
            if self.closed:
                return
            self._handle = self.clock.call_later(delay, self._tick)

    def _tick(self) -> None:
        with self._poll_lock:
            if self.closed:
                return
            try:
                items, self._cursor = self.source.since(self._cursor)
                for item in items:
                    if self.closed:
                        return
                    key = getattr(item, "id", None)
                    if key is not None:
                        if key in self._seen:
                            continue
                        self._seen.add(key)
                    self.on_payload(item)
            except Exception as e:
                self._report(e)
                return
        self._schedule(self.interval)

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()


class LiveUpdates:
    """In-process transport over Topic-like sources."""

    def __init__(self, resolve, push_enabled: bool = True, poll_interval: float = 12.0,
                 clock=None, log: RunLogger | None = None):
        self.resolve = resolve
        self.push_enabled = push_enabled
        self.poll_interval = poll_interval
        self.clock = clock or ThreadingClock()
        self.log = log or RunLogger("live")

    def supports_push(self, source) -> bool:
        return self.push_enabled and callable(getattr(source, "listen", None))

    def subscribe(self, channel: str, on_payload, on_error=None):
        source = self.resolve(channel)
        if self.supports_push(source):
            sub = PushSubscription(source, on_payload, on_error, self.log)
        else:
            self.log.debug(f"push unavailable for {channel}, polling every {self.poll_interval}s")
            sub = PollSubscription(source, on_payload, on_error, self.poll_interval, self.clock, self.log)
        return sub.close


# ---------------------------------------------------------------------------
# Remote transport (observing a quorum server over HTTP)
# ---------------------------------------------------------------------------

def _remote_paths(channel: str) -> tuple:
    """(stream path, poll path, list key, parser) for a channel."""
    if channel == ACTIVITY_CHANNEL:
        return "/activity/stream", "/activity", "activity", ActivityItem.model_validate
    m = RUN_EVENTS_CHANNEL.match(channel or "")
    if not m:
        raise NotFound("channel", channel)
    run_id = m.group("run_id")
    return f"/runs/{run_id}/events/stream", f"/runs/{run_id}/events", "events", EVENT_ADAPTER.validate_python


class _HttpPollSource:
    """Adapts a JSON list endpoint to the since(cursor) protocol."""

    def __init__(self, session, url: str, key: str, parse, timeout: float):
        self.session = session
        self.url = url
        self.key = key
        self.parse = parse
        self.timeout = timeout

    def since(self, cursor: int) -> tuple:
        # full list every time; PollSubscription drops ids it already delivered
        r = self.session.get(self.url, timeout=self.timeout)
        r.raise_for_status()
        data = r.json().get(self.key) or []
        if self.key == "events":
            items = EVENT_LIST_ADAPTER.validate_python(data)
        else:
            # activity is served newest first
            items = [self.parse(it) for it in reversed(data)]
        return items, len(items)


def iter_sse(lines):
    """Yield (event, data, id) from an iterable of decoded SSE lines."""
    event, data, event_id = "message", [], None
    for line in lines:
        if line is None:
            continue
        if line == "":
            if data:
                yield event, "\n".join(data), event_id
            event, data, event_id = "message", [], None
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
        elif name == "id":
            event_id = value
    if data:
        yield event, "\n".join(data), event_id


class RemoteSubscription(_Subscription):
    """
    Opens the server's SSE stream. If the server offers no stream for the
    channel, switches to polling the matching JSON endpoint.
    """

    def __init__(self, base_url: str, channel: str, on_payload, on_error, session,
                 poll_interval: float, clock, timeout: float, log: RunLogger):
        super().__init__(on_payload, on_error, log)
        self.base_url = base_url.rstrip("/")
        self.channel = channel
        self.session = session
        self.poll_interval = poll_interval
        self.clock = clock
        self.timeout = timeout
        self.mode = None
        self._response = None
        self._poller = None
        self._seen = set()
        self._thread = threading.Thread(target=self._connect, daemon=True)
        self._thread.start()

    def _connect(self) -> None:
        stream_path, poll_path, key, parse = _remote_paths(self.channel)
        try:
            r = self.session.get(
                f"{self.base_url}{stream_path}",
                stream=True,
                timeout=self.timeout,
                headers={"Accept": "text/event-stream"},
            )
        except requests.exceptions.RequestException as e:
            self._report(e)
            return

        content_type = r.headers.get("Content-Type", "")
        if r.status_code in (404, 405, 501) or "text/event-stream" not in content_type:
            r.close()
            self._start_polling(poll_path, key, parse)
            return
        if not (200 <= r.status_code < 300):
            r.close()
            self._report(requests.exceptions.HTTPError(f"HTTP {r.status_code} from {stream_path}"))
            return

        with self._lock:
            if self.closed:
                r.close()
                return
            self.mode = "push"
            self._response = r
        self._read_stream(r, parse)

    def _start_polling(self, poll_path: str, key: str, parse) -> None:
        source = _HttpPollSource(self.session, f"{self.base_url}{poll_path}", key, parse, self.timeout)
        with self._lock:
            if self.closed:
                return
            self.mode = "poll"
        self.log.debug(f"no stream for {self.channel}, polling every {self.poll_interval}s")
        self._poller = PollSubscription(source, self.on_payload, self._report,
                                        self.poll_interval, self.clock, self.log)

    def _read_stream(self, r, parse) -> None:
        try:
            for event, data, _ in iter_sse(r.iter_lines(decode_unicode=True)):
                if self.closed:
                    return
                if event == "stream_end":
                    break
                if event == "error":
                    raise requests.exceptions.RequestException(json.loads(data).get("message", data))
                item = parse(json.loads(data))
                key = getattr(item, "id", None)
                if key is not None:
                    if key in self._seen:
                        continue
                    self._seen.add(key)
                self.on_payload(item)
            else:
                # server went away without stream_end
                raise requests.exceptions.ConnectionError(f"stream {self.channel} ended unexpectedly")
        except Exception as e:
            if not self.closed:
                self._report(e)
            return
        finally:
            r.close()
        self.close()

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.closed = True
            response, self._response = self._response, None
        if self._poller is not None:
            self._poller.close()
        if response is not None:
            response.close()


class RemoteLiveUpdates:
    def __init__(self, base_url: str, session=None, poll_interval: float = 12.0,
                 clock=None, timeout: float = 30, log: RunLogger | None = None):
        self.base_url = base_url
        self.session = session or requests.Session()
        self.poll_interval = poll_interval
        self.clock = clock or ThreadingClock()
        self.timeout = timeout
        self.log = log or RunLogger("live-remote")

    def subscribe(self, channel: str, on_payload, on_error=None):
        _remote_paths(channel)
        sub = RemoteSubscription(self.base_url, channel, on_payload, on_error, self.session,
                                 self.poll_interval, self.clock, self.timeout, self.log)
        return sub.close
