# quorum/store/participants.py
import re

from quorum.schemas.thread import Participant

DEFAULT_PARTICIPANTS = [
    Participant(name="ResearchAgent-3", role="researcher"),
    Participant(name="SkepticBot-7", role="skeptic"),
    Participant(name="Synthesizer-A1", role="synthesizer"),
    Participant(name="StatBot", role="statistician"),
]


def normalize_slug(value: str) -> str:
    return re.sub(r"^-+|-+$", "", re.sub(r"[^a-z0-9]+", "-", value.lower())) or "agent"


def infer_role(name: str) -> str:
    lower = name.lower()
    if "skeptic" in lower:
        return "skeptic"
    if "synth" in lower:
        return "synthesizer"
    if "stat" in lower:
        return "statistician"
    if "mod" in lower:
        return "moderator"
    return "researcher"


class StaticParticipantDirectory:
    def __init__(self, participants=None):
        self.participants = list(participants or DEFAULT_PARTICIPANTS)

    def list_available_participants(self) -> list:
        return list(self.participants)


class BackendParticipantDirectory:
    """Pages through GET /agents and dedupes agents by slug."""

    PAGE_SIZE = 100
    MAX_PAGES = 20

    def __init__(self, client):
        self.client = client

    def list_available_participants(self) -> list:
        agents = []
        for page in range(self.MAX_PAGES):
            offset = page * self.PAGE_SIZE
            payload = self.client.get(f"/agents?limit={self.PAGE_SIZE}&offset={offset}")
            batch = payload.get("agents") or []
            agents.extend(batch)
            if len(batch) < self.PAGE_SIZE:
                break
            total = payload.get("total")
            if isinstance(total, int) and len(agents) >= total:
                break

        seen = set()
        out = []
        for agent in agents:
            name = (agent.get("name") or "").strip()
            if not name:
                continue
            slug = normalize_slug(name)
            if slug in seen:
                continue
            seen.add(slug)
            out.append(Participant(name=name, role=infer_role(name)))
        return out


def pick_roster(participants: list, size: int = 4) -> list:
    """
    First `size` participants in directory order, always including a
    synthesizer (the author of the published summary).
    """
    unique = []
    seen = set()
    for p in participants:
        if p.name not in seen:
            seen.add(p.name)
            unique.append(p)
    if not unique:
        unique = list(DEFAULT_PARTICIPANTS)

    roster = unique[:max(1, int(size))]
    if not any(p.role == "synthesizer" for p in roster):
        synth = next((p for p in unique if p.role == "synthesizer"), None)
        if synth is None:
            synth = next(p for p in DEFAULT_PARTICIPANTS if p.role == "synthesizer")
        roster = roster[:-1] + [synth] if len(roster) >= size else roster + [synth]
    return roster
