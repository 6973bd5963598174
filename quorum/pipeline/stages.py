# quorum/pipeline/stages.py
"""
Stage definitions for the simulated multi-agent analysis.

Each stage fires at a fixed delay after the previous one, raises the run's
progress, emits one event, and may move the run to a new status. Content is
canned: no model is called.
"""
from dataclasses import dataclass, field
from typing import Optional

DEFAULT_STAGE_DELAYS = [1.2, 2.4, 2.4, 2.4, 2.4]


@dataclass
class StageOutput:
    """What a stage contributes: event text, contributor and kind-specific fields."""
    message: str
    contributor: Optional[str] = None
    fields: dict = field(default_factory=dict)


@dataclass
class Stage:
    name: str
    delay: float
    progress: int
    kind: str
    role: str
    message: str
    status: Optional[str] = None
    fields: dict = field(default_factory=dict)
    final: bool = False

    def render(self, subject_id: str, roster: list) -> StageOutput:
        contributor = contributor_for(self.role, roster)
        fields = dict(self.fields)
        if self.kind == "stage_update":
            fields.setdefault("stage", self.name)
        if self.kind == "status":
            fields.setdefault("status", self.status)
        return StageOutput(
            message=self.message.format(subject=subject_id, contributor=contributor or "agent"),
            contributor=contributor,
            fields=fields,
        )


@dataclass
class SynthesisStage(Stage):
    """Final stage: writes the summary that gets published back to the thread."""

    def render(self, subject_id: str, roster: list) -> StageOutput:
        out = super().render(subject_id, roster)
        out.fields["summary"] = build_summary(subject_id, roster)
        return out


def contributor_for(role: str, roster: list) -> Optional[str]:
    """Name of the first roster participant with the role, else the first participant."""
    for p in roster:
        if p.role == role:
            return p.name
    return roster[0].name if roster else None


def build_summary(subject_id: str, roster: list) -> str:
    names = ", ".join(p.name for p in roster) or "the quorum"
    return (
        f"Synthesis for thread {subject_id}: {names} reviewed the cited evidence, "
        "cross-checked citations against their sources, and recomputed confidence "
        "for the main claims. Consensus leans supported, with open questions on "
        "sample size and replication. Suggested next step: request the underlying "
        "dataset before treating the conclusion as settled."
    )


def build_stages(delays: list | None = None) -> list:
    """Default five-stage sequence; delays are seconds after the previous stage."""
    d = list(delays or DEFAULT_STAGE_DELAYS)
    if len(d) < 5:
        d += DEFAULT_STAGE_DELAYS[len(d):]
    return [
        Stage(
            name="kickoff",
            delay=d[0],
            progress=12,
            kind="status",
            role="researcher",
            status="running",
            message="{contributor} opened the analysis of thread {subject}",
        ),
        Stage(
            name="review_evidence",
            delay=d[1],
            progress=35,
            kind="stage_update",
            role="researcher",
            message="Reviewing evidence linked from the thread",
        ),
        Stage(
            name="cross_check_citations",
            delay=d[2],
            progress=58,
            kind="citation_added",
            role="skeptic",
            message="Cross-checking citations against primary sources",
            fields={"citation": "Primary source cited in the opening post"},
        ),
        Stage(
            name="confidence_deltas",
            delay=d[3],
            progress=82,
            kind="claim_added",
            role="statistician",
            message="Computing confidence deltas for the main claims",
            fields={"claim": "Effect size holds after adjusting for the reported confounders",
                    "confidence": "medium"},
        ),
        SynthesisStage(
            name="synthesis",
            delay=d[4],
            progress=100,
            kind="summary",
            role="synthesizer",
            status="completed",
            message="{contributor} posted the synthesis",
            final=True,
        ),
    ]


def synthesizer_of(roster: list) -> Optional[str]:
    return contributor_for("synthesizer", roster)
