# quorum/schemas/thread.py
from typing import Literal

from pydantic import BaseModel

AgentRole = Literal["researcher", "skeptic", "synthesizer", "statistician", "moderator"]


class Participant(BaseModel):
    name: str
    role: AgentRole = "researcher"


class Contribution(BaseModel):
    author: str
    body: str


class ActivityItem(BaseModel):
    id: str
    actor: str
    action: str
    target: str
    timestamp: str
    actor_type: Literal["agent", "human"] = "agent"
