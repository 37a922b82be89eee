"""Candidate entities — ranked guesses at which work item an utterance names."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from intent_engine.models.wire import UtcDatetime, WireModel


class EntityType(str, Enum):
    STORY = "story"
    TASK = "task"
    SPRINT = "sprint"
    PROJECT = "project"


class EvidenceType(str, Enum):
    PR = "pr"
    COMMIT = "commit"
    ASSIGNMENT = "assignment"
    TIME = "time"
    MENTION = "mention"


class EvidenceChip(WireModel):
    """Provenance marker. Explanatory only; never feeds back into ranking."""

    type: EvidenceType
    label: str
    value: str
    url: Optional[str] = None


class CandidateEntity(WireModel):
    """One ranked match. Produced per request, never persisted as truth."""

    id: str
    type: EntityType
    title: str
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: List[EvidenceChip] = []
    metadata: Dict[str, Any] = {}


class LinkedChange(WireModel):
    """A pull request or commit linked to a work item."""

    ref: str
    url: Optional[str] = None
    at: UtcDatetime


class IndexedEntity(WireModel):
    """A work item as stored in the tenant's vector index partition."""

    id: str
    tenant_id: str
    type: EntityType
    title: str
    description: Optional[str] = None
    key: Optional[str] = None               # e.g., "PROJ-42"
    status: Optional[str] = None
    assignee_id: Optional[str] = None
    assigned_at: Optional[UtcDatetime] = None
    linked_prs: List[LinkedChange] = []
    recent_commits: List[LinkedChange] = []
    updated_at: Optional[UtcDatetime] = None

    def search_text(self) -> str:
        parts = [self.title]
        if self.description:
            parts.append(self.description)
        return "\n".join(parts)


class VectorHit(WireModel):
    """Raw similarity hit returned by a vector index."""

    entity: IndexedEntity
    score: float
