"""IntentResult — what an interpret call returns to the caller."""

from typing import List, Optional

from pydantic import Field, model_validator

from intent_engine.models.action import ActionCommand
from intent_engine.models.entities import CandidateEntity
from intent_engine.models.intent import IntentLabel, ParseSource
from intent_engine.models.wire import WireModel


class IntentResult(WireModel):
    """
    Invariants:
      - auto_select and ambiguous are never both true
      - ambiguous with an empty entity list only when no_matches is set
    """

    intent: IntentLabel
    confidence: float = Field(ge=0.0, le=1.0)
    entities: List[CandidateEntity] = []
    auto_select: bool = False
    ambiguous: bool = False
    no_matches: bool = False
    source: ParseSource = ParseSource.HEURISTIC
    degraded_stages: List[str] = []
    suggested_action: Optional[ActionCommand] = None

    @model_validator(mode="after")
    def _check_selection_flags(self) -> "IntentResult":
        if self.auto_select and self.ambiguous:
            raise ValueError("auto_select and ambiguous are mutually exclusive")
        if self.ambiguous and not self.entities and not self.no_matches:
            raise ValueError("ambiguous result without entities must set no_matches")
        if self.auto_select and not self.entities:
            raise ValueError("auto_select requires a selected entity")
        return self

    @property
    def selected(self) -> Optional[CandidateEntity]:
        return self.entities[0] if self.auto_select else None
