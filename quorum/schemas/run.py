# quorum/schemas/run.py
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from quorum.errors import InvariantViolation

RunStatus = Literal["queued", "running", "completed", "failed", "cancelled"]

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

# queued -> failed covers a stage raising before the run entered running
ALLOWED_TRANSITIONS = {
    "queued": {"running", "failed", "cancelled"},
    "running": {"completed", "failed", "cancelled"},
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def check_transition(current: str, new: str) -> None:
    """Raise InvariantViolation unless current -> new is a legal status move."""
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvariantViolation(f"illegal status transition {current} -> {new}")


class AnalysisRun(BaseModel):
    id: str
    subject_id: str
    status: RunStatus = "queued"
    progress: int = Field(default=0, ge=0, le=100)
    participants: List[str] = Field(default_factory=list)
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    summary: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)
