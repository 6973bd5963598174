# quorum/schemas/event.py
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from quorum.schemas.run import RunStatus

Confidence = Literal["low", "medium", "high"]


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    run_id: str
    contributor: Optional[str] = None
    message: str
    progress: int = Field(ge=0, le=100)
    timestamp: datetime


class StatusEvent(_EventBase):
    kind: Literal["status"] = "status"
    status: RunStatus


class StageUpdateEvent(_EventBase):
    kind: Literal["stage_update"] = "stage_update"
    stage: str


class CitationAddedEvent(_EventBase):
    kind: Literal["citation_added"] = "citation_added"
    citation: str


class ClaimAddedEvent(_EventBase):
    kind: Literal["claim_added"] = "claim_added"
    claim: str
    confidence: Confidence = "medium"


class SummaryEvent(_EventBase):
    kind: Literal["summary"] = "summary"
    summary: str


AnalysisEvent = Annotated[
    Union[StatusEvent, StageUpdateEvent, CitationAddedEvent, ClaimAddedEvent, SummaryEvent],
    Field(discriminator="kind"),
]

# Parses event payloads coming back over HTTP (poll or SSE)
EVENT_ADAPTER = TypeAdapter(AnalysisEvent)
EVENT_LIST_ADAPTER = TypeAdapter(List[AnalysisEvent])
