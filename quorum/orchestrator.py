# quorum/orchestrator.py
"""
Analysis run orchestrator: start, cancel and query simulated analysis runs.

All collaborators are passed in; build_orchestrator() wires the default set
from a config dict. start() never waits on a stage.
"""
import requests

from quorum.config import stage_delays
from quorum.errors import InvalidArgument, QuorumError
from quorum.pipeline.clock import ThreadingClock
from quorum.pipeline.publish import ReplyPublisher
from quorum.pipeline.runner import StagePipeline
from quorum.pipeline.stages import build_stages
from quorum.store.activity import ActivityFeed
from quorum.store.event_log import EventLog
from quorum.store.participants import (
    DEFAULT_PARTICIPANTS,
    BackendParticipantDirectory,
    StaticParticipantDirectory,
    pick_roster,
)
from quorum.store.registry import RunRegistry
from quorum.store.threads import BackendThreadStore, InMemoryThreadStore
from quorum.tools.backend import BackendClient
from quorum.tools.logger import RunLogger


class AnalysisOrchestrator:
    def __init__(self, registry, event_log, pipeline, participants, activity=None,
                 roster_size: int = 4, log: RunLogger | None = None, backend=None):
        self.registry = registry
        self.event_log = event_log
        self.pipeline = pipeline
        self.participants = participants
        self.activity = activity
        self.roster_size = roster_size
        self.backend = backend
        self.log = log or RunLogger("orchestrator")

    @property
    def clock(self):
        return self.pipeline.clock

    def _roster(self) -> list:
        try:
            available = self.participants.list_available_participants()
        except (QuorumError, requests.exceptions.RequestException, ValueError) as e:
            self.log.warning(f"participant directory unavailable, using built-in roster: {e}")
            available = DEFAULT_PARTICIPANTS
        return pick_roster(available, self.roster_size)

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def start(self, subject_id: str):
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise InvalidArgument("subject_id must be a non-empty string")
        subject_id = subject_id.strip()

        roster = self._roster()
        run = self.registry.create(subject_id, [p.name for p in roster], self.clock.now())
        self.event_log.open(run.id)
        self.event_log.append(run.id, "status", "Analysis queued", run.progress, status="queued")
        self.pipeline.start(run.id, roster)

        if self.activity is not None:
            self.activity.record(actor=roster[0].name, action="started analysis",
                                 target=f"thread {subject_id}")
        self.log.log(f"run {run.id} queued for subject {subject_id} ({', '.join(run.participants)})")
        return run

    def cancel(self, run_id: str):
        with self.registry.locked(run_id):
            run = self.registry.get(run_id)
            if run.is_terminal:
                return run
            run = self.registry.transition(run_id, "cancelled", self.clock.now())
            self.event_log.append(run_id, "status", "Analysis cancelled", run.progress, status="cancelled")
        stopped = self.pipeline.release(run_id)
        self.log.log(f"run {run_id} cancelled at {run.progress}% ({stopped} timers stopped)")
        return run

    def get(self, run_id: str):
        return self.registry.get(run_id)

    def list_events(self, run_id: str) -> list:
        self.registry.get(run_id)
        return self.event_log.list(run_id)

    def list_runs(self, subject_id: str) -> list:
        return self.registry.list_for_subject(subject_id)

    def warnings(self, run_id: str) -> list:
        return self.registry.warnings(run_id)

    def shutdown(self) -> None:
        self.pipeline.shutdown()


def build_orchestrator(cfg: dict, clock=None, thread_store=None, participants=None,
                       activity=None, stages=None) -> AnalysisOrchestrator:
    """Wire an orchestrator and its collaborators from config."""
    clock = clock or ThreadingClock()
    backend_cfg = cfg.get("backend", {})
    client = None
    if backend_cfg.get("api_base"):
        client = BackendClient(backend_cfg["api_base"], timeout_sec=backend_cfg.get("timeout_sec", 20))

    if thread_store is None:
        thread_store = BackendThreadStore(client) if client else InMemoryThreadStore(create_missing=True)
    if participants is None:
        participants = BackendParticipantDirectory(client) if client else StaticParticipantDirectory()
    if activity is None:
        activity = ActivityFeed(clock=clock)

    event_log = EventLog(clock)

    # evicted runs are terminal; drop their events and any pipeline state
    def on_evict(run_id: str) -> None:
        event_log.drop(run_id)
        pipeline.release(run_id)

    registry = RunRegistry(max_runs=cfg.get("registry", {}).get("max_runs", 500), on_evict=on_evict)
    log_cfg = cfg.get("logging", {})
    pipeline = StagePipeline(
        registry,
        event_log,
        clock,
        stages if stages is not None else build_stages(stage_delays(cfg)),
        publisher=ReplyPublisher(thread_store, activity=activity),
        run_timeout=cfg.get("pipeline", {}).get("run_timeout", 0),
        log_dir=log_cfg.get("run_log_dir"),
        log_level=log_cfg.get("level"),
    )
    orchestrator = AnalysisOrchestrator(
        registry,
        event_log,
        pipeline,
        participants,
        activity=activity,
        roster_size=cfg.get("pipeline", {}).get("roster_size", 4),
        log=RunLogger("orchestrator", level=log_cfg.get("level")),
        backend=client,
    )
    return orchestrator
