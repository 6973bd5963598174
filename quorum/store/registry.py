# quorum/store/registry.py
"""
Run registry: the single owner of AnalysisRun state.

Every run has its own re-entrant lock. Stage callbacks and cancel() hold it
while they check the status and mutate, which is what makes a terminal
status final. Callers only ever receive copies of the stored runs.
"""
import itertools
import threading
import uuid
from contextlib import contextmanager

from quorum.errors import InvariantViolation, NotFound
from quorum.schemas.run import AnalysisRun, check_transition, is_terminal


class _RunSlot:
    def __init__(self, run: AnalysisRun, seq: int):
        self.run = run
        self.seq = seq
        self.lock = threading.RLock()
        self.handles = []
        self.warnings = []


class RunRegistry:
    def __init__(self, max_runs: int = 500, on_evict=None):
        self.max_runs = int(max_runs)
        self.on_evict = on_evict
        self._slots = {}
        self._seq = itertools.count()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _slot(self, run_id: str) -> _RunSlot:
        with self._lock:
            slot = self._slots.get(run_id)
        if slot is None:
            raise NotFound("run", run_id)
        return slot

    @contextmanager
    def locked(self, run_id: str):
        """Hold the run's lock for a check-then-mutate sequence."""
        slot = self._slot(run_id)
        with slot.lock:
            yield

    def get(self, run_id: str) -> AnalysisRun:
        slot = self._slot(run_id)
        with slot.lock:
            return slot.run.model_copy(deep=True)

    def list_for_subject(self, subject_id: str) -> list:
        with self._lock:
            slots = [s for s in self._slots.values() if s.run.subject_id == subject_id]
        slots.sort(key=lambda s: (s.run.started_at, s.seq), reverse=True)
        out = []
        for slot in slots:
            with slot.lock:
                out.append(slot.run.model_copy(deep=True))
        return out

    def __contains__(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._slots

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def create(self, subject_id: str, participants: list, now) -> AnalysisRun:
        run = AnalysisRun(
            id=f"run_{uuid.uuid4().hex[:12]}",
            subject_id=subject_id,
            status="queued",
            progress=0,
            participants=list(participants),
            started_at=now,
            updated_at=now,
        )
        with self._lock:
            self._slots[run.id] = _RunSlot(run, next(self._seq))
        self._evict()
        return run.model_copy(deep=True)

    def transition(self, run_id: str, status: str, now, progress: int | None = None,
                   summary: str | None = None) -> AnalysisRun:
        slot = self._slot(run_id)
        with slot.lock:
            run = slot.run
            check_transition(run.status, status)
            if progress is not None and status != "cancelled":
                run.progress = max(run.progress, int(progress))
            run.status = status
            run.updated_at = now
            if status == "completed":
                run.completed_at = now
                run.summary = summary
            return run.model_copy(deep=True)

    def set_progress(self, run_id: str, progress: int, now) -> AnalysisRun:
        slot = self._slot(run_id)
        with slot.lock:
            run = slot.run
            if is_terminal(run.status):
                raise InvariantViolation(f"progress update on {run.status} run {run_id}")
            run.progress = max(run.progress, min(100, int(progress)))
            run.updated_at = now
            return run.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Timers and warnings held alongside the run
    # ------------------------------------------------------------------

    def attach_handles(self, run_id: str, handles: list) -> None:
        slot = self._slot(run_id)
        with slot.lock:
            slot.handles.extend(handles)

    def release_handles(self, run_id: str) -> list:
        slot = self._slot(run_id)
        with slot.lock:
            handles, slot.handles = slot.handles, []
            return handles

    def add_warning(self, run_id: str, message: str) -> None:
        slot = self._slot(run_id)
        with slot.lock:
            slot.warnings.append(message)

    def warnings(self, run_id: str) -> list:
        slot = self._slot(run_id)
        with slot.lock:
            return list(slot.warnings)

    def run_ids(self) -> list:
        with self._lock:
            return list(self._slots)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def _evict(self) -> None:
        """Drop the oldest terminal runs once above max_runs. Live runs stay."""
        if self.max_runs <= 0:
            return
        evicted = []
        with self._lock:
            excess = len(self._slots) - self.max_runs
            if excess <= 0:
                return
            for run_id, slot in sorted(self._slots.items(), key=lambda kv: kv[1].seq):
                if excess <= 0:
                    break
                if is_terminal(slot.run.status):
                    del self._slots[run_id]
                    evicted.append(run_id)
                    excess -= 1
        for run_id in evicted:
            if self.on_evict:
                self.on_evict(run_id)
