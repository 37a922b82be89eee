"""Action commands and their execution drafts."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import model_validator

from intent_engine.models.entities import EntityType
from intent_engine.models.intent import IntentLabel
from intent_engine.models.wire import UtcDatetime, WireModel


class RiskLevel(str, Enum):
    LOW = "low"         # Read-only / informational
    MEDIUM = "medium"   # Single-entity mutation
    HIGH = "high"       # Destructive, bulk, or cross-entity


class StepType(str, Enum):
    API_CALL = "api_call"
    UPDATE_STATUS = "update_status"
    CREATE_ITEM = "create_item"
    SEND_NOTIFICATION = "send_notification"
    VALIDATION = "validation"


class ActionStep(WireModel):
    id: str
    description: str
    type: StepType
    details: Dict[str, Any] = {}
    can_skip: bool = False


class ActionDraft(WireModel):
    """
    Human-readable description of everything an action will do.
    Fully determined before any side effect happens.
    """

    summary: str
    steps: List[ActionStep]
    reasoning: str
    expected_outcome: str
    potential_issues: Optional[List[str]] = None
    estimated_time: Optional[str] = None


class ActionCommand(WireModel):
    """
    A risk-classified action ready for confirmation or execution.

    interaction_id, issued_at and confirmation_token bind the command to the
    draft that produced it; any field change breaks the binding.
    """

    type: IntentLabel
    entity_id: Optional[str] = None
    entity_type: Optional[EntityType] = None
    entity_state: Optional[str] = None      # Status at drafting time; feeds the risk lookup
    parameters: Dict[str, Any] = {}
    risk_level: RiskLevel
    description: str
    confirmation_required: bool
    draft: ActionDraft

    interaction_id: str
    issued_at: UtcDatetime
    confirmation_token: str = ""

    @model_validator(mode="after")
    def _high_risk_requires_confirmation(self) -> "ActionCommand":
        if self.risk_level == RiskLevel.HIGH and not self.confirmation_required:
            raise ValueError("high-risk actions must require confirmation")
        return self

    def binding_fields(self) -> Dict[str, Any]:
        """Every field the confirmation token covers."""
        return self.model_dump(mode="json", exclude={"confirmation_token"})
