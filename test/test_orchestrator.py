import threading

import pytest

from conftest import make_cfg
from quorum.errors import BackendError, InvalidArgument, NotFound
from quorum.orchestrator import build_orchestrator
from quorum.pipeline.clock import ManualClock
from quorum.pipeline.stages import Stage, build_stages
from quorum.schemas.run import ALLOWED_TRANSITIONS
from quorum.store.participants import DEFAULT_PARTICIPANTS
from quorum.store.threads import InMemoryThreadStore

ALL_STAGES_DONE = 11.0  # default delays sum to 10.8s


def status_path(events):
    return [e.status for e in events if e.kind == "status"]


def assert_valid_path(path):
    assert path[0] == "queued"
    for current, new in zip(path, path[1:]):
        assert new in ALLOWED_TRANSITIONS[current]


def test_start_returns_queued_run_immediately(orch):
    run = orch.start("thread-42")

    assert run.status == "queued"
    assert run.progress == 0
    assert run.subject_id == "thread-42"
    assert run.participants == [p.name for p in DEFAULT_PARTICIPANTS]
    assert run.completed_at is None and run.summary is None

    events = orch.list_events(run.id)
    assert len(events) == 1
    assert events[0].kind == "status" and events[0].status == "queued"


@pytest.mark.parametrize("subject", ["", "   ", None, 42])
def test_start_rejects_invalid_subject(orch, subject):
    with pytest.raises(InvalidArgument):
        orch.start(subject)


def test_full_run_completes_and_publishes_one_reply(orch, clock, threads):
    run = orch.start("thread-42")

    clock.advance(ALL_STAGES_DONE)

    done = orch.get(run.id)
    assert done.status == "completed"
    assert done.progress == 100
    assert done.summary
    assert done.completed_at is not None

    replies = threads.contributions("thread-42")
    assert len(replies) == 1
    assert replies[0].author == "Synthesizer-A1"
    assert replies[0].body == done.summary
    assert threads.reply_count("thread-42") == 1
    assert orch.warnings(run.id) == []


def test_event_log_traces_valid_path_with_monotonic_progress(orch, clock):
    run = orch.start("thread-42")
    clock.run_all()

    events = orch.list_events(run.id)
    assert [e.kind for e in events] == [
        "status", "status", "stage_update", "citation_added", "claim_added", "summary", "status",
    ]
    path = status_path(events)
    assert path == ["queued", "running", "completed"]
    assert_valid_path(path)

    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    timestamps = [e.timestamp for e in events]
    assert timestamps == sorted(timestamps)
    assert len({e.id for e in events}) == len(events)


def test_summary_event_exists_iff_completed(orch, clock):
    done = orch.start("thread-42")
    cancelled = orch.start("thread-7")
    clock.advance(5)
    orch.cancel(cancelled.id)
    clock.run_all()

    done_events = orch.list_events(done.id)
    summaries = [e for e in done_events if e.kind == "summary"]
    assert len(summaries) == 1
    assert summaries[0].summary == orch.get(done.id).summary

    assert [e for e in orch.list_events(cancelled.id) if e.kind == "summary"] == []
    assert orch.get(cancelled.id).summary is None


def test_cancel_before_first_stage(orch, clock, threads):
    run = orch.start("thread-42")

    cancelled = orch.cancel(run.id)
    assert cancelled.status == "cancelled"
    assert cancelled.progress == 0

    events = orch.list_events(run.id)
    assert len(events) == 2
    assert events[1].kind == "status"
    assert events[1].status == "cancelled"
    assert events[1].progress == 0

    clock.advance(60)
    assert orch.get(run.id).status == "cancelled"
    assert len(orch.list_events(run.id)) == 2
    assert threads.contributions("thread-42") == []
    assert threads.reply_count("thread-42") == 0


def test_cancel_mid_run_freezes_progress(orch, clock):
    run = orch.start("thread-42")
    clock.advance(4)  # kickoff and review_evidence fired
    assert orch.get(run.id).progress == 35

    cancelled = orch.cancel(run.id)
    clock.advance(60)

    after = orch.get(run.id)
    assert cancelled.progress == 35
    assert after.status == "cancelled"
    assert after.progress == 35
    assert status_path(orch.list_events(run.id)) == ["queued", "running", "cancelled"]


def test_cancel_stops_pending_timers(orch, clock):
    run = orch.start("thread-42")
    assert clock.pending > 0

    orch.cancel(run.id)

    assert clock.pending == 0


def test_callbacks_are_noops_even_if_timers_keep_running(orch, clock, monkeypatch):
    run = orch.start("thread-42")
    clock.advance(2)
    monkeypatch.setattr(orch.pipeline, "cancel_timers", lambda run_id: 0)

    orch.cancel(run.id)
    fired = clock.advance(60)

    assert fired > 0
    assert orch.get(run.id).status == "cancelled"
    assert orch.get(run.id).progress == 12
    assert status_path(orch.list_events(run.id)) == ["queued", "running", "cancelled"]


def test_cancel_after_completion_is_identical_noop(orch, clock):
    run = orch.start("thread-42")
    clock.run_all()
    before = orch.get(run.id)
    events_before = orch.list_events(run.id)

    after = orch.cancel(run.id)

    assert after == before
    assert after.model_dump_json() == before.model_dump_json()
    assert orch.list_events(run.id) == events_before


def test_cancel_twice_is_idempotent(orch):
    run = orch.start("thread-42")
    first = orch.cancel(run.id)
    second = orch.cancel(run.id)

    assert first == second
    assert status_path(orch.list_events(run.id)) == ["queued", "cancelled"]


def test_unknown_run_raises_not_found(orch):
    with pytest.raises(NotFound):
        orch.cancel("does-not-exist")
    with pytest.raises(NotFound):
        orch.get("does-not-exist")
    with pytest.raises(NotFound):
        orch.list_events("does-not-exist")
    with pytest.raises(NotFound):
        orch.warnings("does-not-exist")


def test_list_runs_newest_first(orch, clock):
    first = orch.start("thread-42")
    clock.advance(1)
    second = orch.start("thread-42")
    third = orch.start("thread-42")  # same started_at as second
    orch.start("thread-7")

    ids = [r.id for r in orch.list_runs("thread-42")]
    assert ids == [third.id, second.id, first.id]
    assert orch.list_runs("thread-unknown") == []


def test_returned_runs_are_copies(orch):
    run = orch.start("thread-42")
    run.participants.append("Intruder")
    run.progress = 99

    stored = orch.get(run.id)
    assert "Intruder" not in stored.participants
    assert stored.progress == 0


class ExplodingStage(Stage):
    def render(self, subject_id, roster):
        if subject_id == "thread-bad":
            raise RuntimeError("boom")
        return super().render(subject_id, roster)


def _stages_with_failure():
    stages = build_stages()
    review = stages[1]
    stages[1] = ExplodingStage(
        name=review.name,
        delay=review.delay,
        progress=review.progress,
        kind=review.kind,
        role=review.role,
        message=review.message,
    )
    return stages


def test_stage_failure_fails_only_that_run(clock):
    threads_store = InMemoryThreadStore(["thread-42", "thread-bad"])
    orch = build_orchestrator(make_cfg(), clock=clock, thread_store=threads_store,
                              stages=_stages_with_failure())
    bad = orch.start("thread-bad")
    good = orch.start("thread-42")

    clock.run_all()

    failed = orch.get(bad.id)
    assert failed.status == "failed"
    assert failed.progress == 12
    last = orch.list_events(bad.id)[-1]
    assert last.kind == "status" and last.status == "failed"
    assert "boom" in last.message
    assert_valid_path(status_path(orch.list_events(bad.id)))
    assert threads_store.contributions("thread-bad") == []

    assert orch.get(good.id).status == "completed"
    assert len(threads_store.contributions("thread-42")) == 1


def test_publish_failure_is_a_warning_not_a_failure(orch, clock):
    run = orch.start("thread-missing")
    clock.run_all()

    done = orch.get(run.id)
    assert done.status == "completed"
    assert done.progress == 100
    warnings = orch.warnings(run.id)
    assert len(warnings) == 1
    assert "thread-missing" in warnings[0]


def test_stuck_run_times_out(clock, threads):
    stages = build_stages([1, 1000, 1, 1, 1])
    orch = build_orchestrator(make_cfg(pipeline={"run_timeout": 50}), clock=clock,
                              thread_store=threads, stages=stages)
    run = orch.start("thread-42")

    clock.advance(60)

    timed_out = orch.get(run.id)
    assert timed_out.status == "failed"
    assert "timed out" in orch.list_events(run.id)[-1].message

    clock.run_all()
    assert orch.get(run.id).status == "failed"
    assert threads.contributions("thread-42") == []


def test_completed_run_is_not_timed_out(clock, threads):
    orch = build_orchestrator(make_cfg(pipeline={"run_timeout": 50}), clock=clock, thread_store=threads)
    run = orch.start("thread-42")
    clock.advance(200)

    assert orch.get(run.id).status == "completed"
    assert status_path(orch.list_events(run.id))[-1] == "completed"


def test_retention_evicts_oldest_terminal_runs(clock, threads):
    orch = build_orchestrator(make_cfg(registry={"max_runs": 2}), clock=clock, thread_store=threads)
    first = orch.start("thread-42")
    clock.run_all()
    second = orch.start("thread-42")
    clock.run_all()
    third = orch.start("thread-42")

    with pytest.raises(NotFound):
        orch.get(first.id)
    with pytest.raises(NotFound):
        orch.event_log.list(first.id)
    assert orch.get(second.id).status == "completed"
    assert orch.get(third.id).status == "queued"


def test_retention_never_evicts_live_runs(clock, threads):
    orch = build_orchestrator(make_cfg(registry={"max_runs": 2}), clock=clock, thread_store=threads)
    runs = [orch.start("thread-42") for _ in range(3)]

    assert [orch.get(r.id).status for r in runs] == ["queued"] * 3


class BrokenDirectory:
    def list_available_participants(self):
        raise BackendError("agents endpoint down")


def test_unreachable_directory_falls_back_to_builtin_roster(clock, threads):
    orch = build_orchestrator(make_cfg(), clock=clock, thread_store=threads,
                              participants=BrokenDirectory())
    run = orch.start("thread-42")

    assert run.participants == [p.name for p in DEFAULT_PARTICIPANTS]


def test_activity_records_start_and_reply(orch, clock):
    orch.start("thread-42")
    clock.run_all()

    items = orch.activity.list()
    assert [it.action for it in items] == ["replied", "started analysis"]
    assert items[0].actor == "Synthesizer-A1"
    assert items[0].target == "thread thread-42"


def test_default_wiring_opens_threads_on_first_reply():
    clock = ManualClock()
    orch = build_orchestrator(make_cfg(), clock=clock)
    run = orch.start("thread-42")

    clock.run_all()

    assert orch.get(run.id).status == "completed"
    assert orch.warnings(run.id) == []
    store = orch.pipeline.publisher.thread_store
    assert len(store.contributions("thread-42")) == 1
    assert store.reply_count("thread-42") == 1


def test_cancelled_runs_release_pipeline_state(orch, clock):
    runs = [orch.start("thread-42") for _ in range(50)]
    for run in runs:
        orch.cancel(run.id)

    clock.run_all()

    assert orch.pipeline._contexts == {}


def test_finished_runs_release_pipeline_state(orch, clock):
    orch.start("thread-42")
    orch.start("thread-missing")

    clock.run_all()

    assert orch.pipeline._contexts == {}


def test_eviction_releases_pipeline_state(clock, threads, monkeypatch):
    orch = build_orchestrator(make_cfg(registry={"max_runs": 1}), clock=clock, thread_store=threads)
    old = orch.start("thread-42")
    orch.cancel(old.id)
    released = []
    monkeypatch.setattr(orch.pipeline, "release", released.append)

    orch.start("thread-42")

    assert released == [old.id]


class ObservingThreadStore(InMemoryThreadStore):
    """Reads the run from another thread while the reply is being written."""

    def __init__(self, thread_ids, orch=None):
        super().__init__(thread_ids)
        self.orch = orch
        self.readable_during_publish = None

    def append_contribution(self, subject_id, contribution):
        done = threading.Event()

        def read():
            self.orch.list_runs(subject_id)
            done.set()

        threading.Thread(target=read, daemon=True).start()
        self.readable_during_publish = done.wait(2.0)
        super().append_contribution(subject_id, contribution)


def test_run_lock_is_free_while_reply_is_published(clock):
    store = ObservingThreadStore(["thread-42"])
    orch = build_orchestrator(make_cfg(), clock=clock, thread_store=store)
    store.orch = orch
    run = orch.start("thread-42")

    clock.run_all()

    assert store.readable_during_publish is True
    assert orch.get(run.id).status == "completed"
    assert len(store.contributions("thread-42")) == 1
