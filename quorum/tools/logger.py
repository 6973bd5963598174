# quorum/tools/logger.py
import os
import threading
from datetime import datetime
from typing import Optional

LEVELS = {"DEBUG": 0, "INFO": 1, "WARNING": 2, "ERROR": 3}


def should_log(level: str, threshold: Optional[str] = None) -> bool:
    """Check if we should log at the given level (QUORUM_LOG_LEVEL when no threshold)."""
    current_level = threshold or os.environ.get("QUORUM_LOG_LEVEL", "INFO")
    return LEVELS.get(level, 1) >= LEVELS.get(current_level.upper(), 1)


class RunLogger:
    """
    Simple run logger:
    - prints to stdout
    - optionally appends to a logfile (e.g., logs/<run_id>.log)
    """

    def __init__(self, run_id: str, logfile_path: Optional[str] = None, level: Optional[str] = None):
        self.run_id = run_id
        self.logfile_path = logfile_path
        self.level = level
        self._lock = threading.Lock()

        if self.logfile_path:
            os.makedirs(os.path.dirname(self.logfile_path) or ".", exist_ok=True)
            # Touch early so it exists even if we crash later
            with open(self.logfile_path, "a", encoding="utf-8") as f:
                f.write("")

    def log(self, msg: str, level: str = "INFO") -> None:
        if not should_log(level, self.level):
            return
        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        tag = "" if level == "INFO" else f"{level}: "
        line = f"[{ts}] [{self.run_id}] {tag}{msg}"
        with self._lock:
            print(line)
            if self.logfile_path:
                with open(self.logfile_path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")

    def debug(self, msg: str) -> None:
        self.log(msg, level="DEBUG")

    def warning(self, msg: str) -> None:
        self.log(msg, level="WARNING")

    def error(self, msg: str) -> None:
        self.log(msg, level="ERROR")


def make_run_logger(run_id: str, outdir: str | None = None, level: str | None = None) -> RunLogger:
    logfile_path = os.path.join(outdir, f"{run_id}.log") if outdir else None
    return RunLogger(run_id=run_id, logfile_path=logfile_path, level=level)
