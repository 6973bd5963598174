# quorum/pipeline/runner.py
"""
Stage pipeline runner.

Schedules every stage of a run on the clock at its cumulative delay. Each
callback takes the run's lock and checks the status first: once a run is
terminal (cancelled, failed, completed) every later callback is a no-op,
whether or not its timer was stopped in time. A stage that raises fails only
its own run.
"""
import threading
import traceback

from quorum.errors import NotFound
from quorum.pipeline.stages import synthesizer_of
from quorum.tools.logger import make_run_logger


class _RunContext:
    def __init__(self, roster: list, log):
        self.roster = roster
        self.log = log


class StagePipeline:
    def __init__(self, registry, event_log, clock, stages: list, publisher=None,
                 run_timeout: float = 0, log_dir: str | None = None, log_level: str | None = None):
        self.registry = registry
        self.event_log = event_log
        self.clock = clock
        self.stages = list(stages)
        self.publisher = publisher
        self.run_timeout = float(run_timeout or 0)
        self.log_dir = log_dir
        self.log_level = log_level
        self._contexts = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start(self, run_id: str, roster: list) -> None:
        """Schedule all stages for a queued run. Returns immediately."""
        log = make_run_logger(run_id, outdir=self.log_dir, level=self.log_level)
        with self._lock:
            self._contexts[run_id] = _RunContext(list(roster), log)

        with self.registry.locked(run_id):
            handles = []
            at = 0.0
            for stage in self.stages:
                at += float(stage.delay)
                handles.append(self.clock.call_later(at, self._callback(run_id, stage)))
            if self.run_timeout > 0:
                handles.append(self.clock.call_later(self.run_timeout, lambda: self._on_timeout(run_id)))
            self.registry.attach_handles(run_id, handles)
        log.debug(f"scheduled {len(self.stages)} stages (total {at:.1f}s)")

    def cancel_timers(self, run_id: str) -> int:
        """Best-effort stop of pending callbacks; correctness never depends on it."""
        try:
            handles = self.registry.release_handles(run_id)
        except NotFound:
            return 0
        for handle in handles:
            handle.cancel()
        return len(handles)

    def release(self, run_id: str) -> int:
        """Stop a run's timers and forget its roster and logger. Safe to repeat."""
        stopped = self.cancel_timers(run_id)
        with self._lock:
            self._contexts.pop(run_id, None)
        return stopped

    def shutdown(self) -> None:
        for run_id in self.registry.run_ids():
            self.release(run_id)

    def _callback(self, run_id: str, stage):
        return lambda: self._fire(run_id, stage)

    def _context(self, run_id: str) -> _RunContext:
        with self._lock:
            ctx = self._contexts.get(run_id)
        if ctx is None:
            ctx = _RunContext([], make_run_logger(run_id, level=self.log_level))
        return ctx

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _fire(self, run_id: str, stage) -> None:
        ctx = self._context(run_id)
        completed = None
        try:
            with self.registry.locked(run_id):
                run = self.registry.get(run_id)
                if run.is_terminal:
                    ctx.log.debug(f"stage {stage.name} skipped: run is {run.status}")
                    return
                try:
                    completed = self._apply(run, stage, ctx)
                except Exception as e:
                    ctx.log.error(f"stage {stage.name} failed: {type(e).__name__}: {e}")
                    ctx.log.debug(traceback.format_exc())
                    self._fail(run_id, f"Stage {stage.name} failed: {e}", ctx)
                    return
                if stage.final:
                    self.release(run_id)
        except NotFound:
            # run evicted while its timer was pending
            return

        # the run is already completed; publishing happens outside its lock
        if completed is not None:
            self._publish(completed, ctx)

    def _apply(self, run, stage, ctx: _RunContext):
        """Apply one stage under the run lock. Returns the run if it just completed."""
        out = stage.render(run.subject_id, ctx.roster)
        now = self.clock.now()
        run_id = run.id

        if stage.final:
            run = self.registry.transition(run_id, "completed", now,
                                           progress=stage.progress,
                                           summary=out.fields.get("summary"))
            self.event_log.append(run_id, stage.kind, out.message, run.progress,
                                  contributor=out.contributor, **out.fields)
            self.event_log.append(run_id, "status", "Analysis completed", run.progress,
                                  contributor=out.contributor, status="completed")
            ctx.log.log(f"run completed for subject {run.subject_id}")
            return run

        if stage.status:
            run = self.registry.transition(run_id, stage.status, now, progress=stage.progress)
        else:
            run = self.registry.set_progress(run_id, stage.progress, now)
        self.event_log.append(run_id, stage.kind, out.message, run.progress,
                              contributor=out.contributor, **out.fields)
        ctx.log.log(f"stage {stage.name} -> {run.status} {run.progress}%")
        return None

    def _publish(self, run, ctx: _RunContext) -> None:
        if self.publisher is None:
            return
        warning = self.publisher.publish(run, author=synthesizer_of(ctx.roster) or "synthesizer")
        if warning:
            ctx.log.warning(warning)
            try:
                self.registry.add_warning(run.id, warning)
            except NotFound:
                pass

    def _fail(self, run_id: str, message: str, ctx: _RunContext) -> None:
        """Move a non-terminal run to failed. Caller holds the run's lock."""
        run = self.registry.get(run_id)
        if run.is_terminal:
            ctx.log.error(f"not failing {run.status} run: {message}")
            return
        run = self.registry.transition(run_id, "failed", self.clock.now())
        self.event_log.append(run_id, "status", message, run.progress, status="failed")
        self.release(run_id)

    def _on_timeout(self, run_id: str) -> None:
        ctx = self._context(run_id)
        try:
            with self.registry.locked(run_id):
                if self.registry.get(run_id).is_terminal:
                    return
                ctx.log.warning(f"run still unfinished after {self.run_timeout:.0f}s")
                self._fail(run_id, f"Analysis timed out after {self.run_timeout:.0f}s", ctx)
        except NotFound:
            return
