# quorum/main.py
import argparse
import sys
import threading

from tqdm import tqdm

from quorum.config import load_config
from quorum.errors import QuorumError
from quorum.orchestrator import build_orchestrator
from quorum.pipeline.clock import ManualClock, ThreadingClock
from quorum.schemas.run import is_terminal
from quorum.store.activity import fetch_activity
from quorum.web.live import LiveUpdates, channel_resolver, run_events_channel


# ----------------------------
# Commands
# ----------------------------

def run_analysis(cfg: dict, subject_id: str, simulated: bool = False,
                 cancel_after: float | None = None) -> int:
    """
    Start one analysis, print its events as they arrive and wait for a
    terminal status. Returns a process exit code.
    """
    clock = ManualClock() if simulated else ThreadingClock()
    orchestrator = build_orchestrator(cfg, clock=clock)
    live = LiveUpdates(
        channel_resolver(orchestrator.event_log, orchestrator.activity),
        push_enabled=cfg["live"]["push_enabled"],
        poll_interval=min(1.0, cfg["live"]["poll_interval"]),
    )

    done = threading.Event()
    errors = []
    bar = tqdm(total=100, desc="analysis", unit="%", leave=False)

    def on_event(event):
        bar.update(max(0, event.progress - bar.n))
        who = f"{event.contributor}: " if event.contributor else ""
        tqdm.write(f"[{event.kind}] {who}{event.message}")
        if event.kind == "status" and is_terminal(event.status):
            done.set()

    def on_error(err):
        errors.append(err)
        done.set()

    try:
        run = orchestrator.start(subject_id)
    except QuorumError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    unsubscribe = live.subscribe(run_events_channel(run.id), on_event, on_error)
    try:
        if cancel_after is not None:
            if simulated:
                clock.advance(cancel_after)
            else:
                done.wait(cancel_after)
            orchestrator.cancel(run.id)
        if simulated:
            clock.run_all()
        done.wait(timeout=max(30.0, float(cfg["pipeline"].get("run_timeout") or 0) + 5))
    finally:
        unsubscribe()
        bar.close()
        orchestrator.shutdown()

    if errors:
        print(f"ERROR: live updates failed: {errors[0]}", file=sys.stderr)
        return 1

    final = orchestrator.get(run.id)
    print(f"Run {final.id}: {final.status} ({final.progress}%)")
    for warning in orchestrator.warnings(run.id):
        print(f"WARNING: {warning}", file=sys.stderr)
    if final.summary:
        print()
        print(final.summary)
    return 0 if final.status in ("completed", "cancelled") else 1


def show_activity(cfg: dict, limit: int = 20) -> int:
    orchestrator = build_orchestrator(cfg)
    if orchestrator.backend is None:
        print("ERROR: backend.api_base is not configured (set QUORUM_API_BASE)", file=sys.stderr)
        return 2
    for item in fetch_activity(orchestrator.backend, limit=limit):
        print(f"{item.timestamp}  {item.actor} {item.action} in {item.target}")
    return 0


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="MetaQuorum analysis runs")
    ap.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    sub = ap.add_subparsers(dest="command", required=True)

    p_analyze = sub.add_parser("analyze", help="Run a simulated analysis of a thread")
    p_analyze.add_argument("subject", help="Thread id to analyze")
    p_analyze.add_argument("--simulated", action="store_true",
                           help="Use simulated time instead of waiting for real stage delays")
    p_analyze.add_argument("--cancel-after", type=float, default=None,
                           help="Cancel the run after this many seconds")

    sub.add_parser("serve", help="Start the HTTP server")

    p_activity = sub.add_parser("activity", help="Print the backend activity feed")
    p_activity.add_argument("--limit", type=int, default=20)

    args = ap.parse_args(argv)
    cfg = load_config(args.config)

    if args.command == "analyze":
        return run_analysis(cfg, args.subject, simulated=args.simulated, cancel_after=args.cancel_after)
    if args.command == "activity":
        return show_activity(cfg, limit=args.limit)

    from quorum.web.server import main as serve
    serve(cfg)
    return 0


if __name__ == "__main__":
    sys.exit(main())
