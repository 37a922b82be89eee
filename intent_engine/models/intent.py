"""Utterance requests and parsed intents."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from intent_engine.models.entities import EntityType
from intent_engine.models.wire import WireModel


class IntentLabel(str, Enum):
    TAKE_OWNERSHIP = "take_ownership"
    RELEASE_OWNERSHIP = "release_ownership"
    START_WORK = "start_work"
    COMPLETE_TASK = "complete_task"
    UPDATE_STATUS = "update_status"
    ASSIGN_TASK = "assign_task"
    CREATE_ITEM = "create_item"
    CREATE_SPRINT = "create_sprint"
    CLOSE_SPRINT = "close_sprint"
    MOVE_TO_SPRINT = "move_to_sprint"
    UPDATE_PRIORITY = "update_priority"
    ADD_COMMENT = "add_comment"
    ARCHIVE = "archive"
    QUERY_STATUS = "query_status"
    SEARCH_ITEMS = "search_items"
    GENERATE_REPORT = "generate_report"
    UNKNOWN = "unknown"     # Sentinel: nothing recognizable


# Intents that act on the caller's work rather than a selected entity.
TARGETLESS_INTENTS = frozenset({
    IntentLabel.CREATE_ITEM,
    IntentLabel.CREATE_SPRINT,
    IntentLabel.SEARCH_ITEMS,
    IntentLabel.GENERATE_REPORT,
})


class ParseSource(str, Enum):
    LANGUAGE_MODEL = "language_model"
    HEURISTIC = "heuristic"


class ContextEntities(WireModel):
    """Work items the caller is currently looking at."""

    story_id: Optional[str] = None
    task_id: Optional[str] = None
    sprint_id: Optional[str] = None
    project_id: Optional[str] = None

    def ids(self) -> List[str]:
        return [
            i for i in (self.task_id, self.story_id, self.sprint_id, self.project_id)
            if i
        ]


class UtteranceRequest(WireModel):
    """Caller-supplied free text plus identity. Immutable once received."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    utterance: str = Field(min_length=1, max_length=2000)
    context_entities: ContextEntities = Field(default_factory=ContextEntities)
    tenant_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)


class EntityDescriptor(WireModel):
    """Free-text phrase naming a work item, e.g. 'the login bug task'."""

    text: str = Field(min_length=1)
    entity_type: Optional[EntityType] = None


class ParsedIntent(WireModel):
    """Output of the parsing stage, before any entity is resolved."""

    intent: IntentLabel
    confidence: float = Field(ge=0.0, le=1.0)
    descriptors: List[EntityDescriptor] = []
    parameters: Dict[str, Any] = {}
    source: ParseSource

    @property
    def needs_target(self) -> bool:
        return (
            self.intent != IntentLabel.UNKNOWN
            and self.intent not in TARGETLESS_INTENTS
        )
