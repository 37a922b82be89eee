"""Intent History Record — the audit entry for one interpret or act call."""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel

from intent_engine.models.action import ActionCommand
from intent_engine.models.errors import ErrorKind
from intent_engine.models.execution import ActionResult
from intent_engine.models.result import IntentResult
from intent_engine.models.wire import UtcDatetime


class OperationKind(str, Enum):
    INTERPRET = "interpret"
    ACT = "act"


class IntentHistoryRecord(BaseModel):
    """
    Append-only. Never mutated or deleted once written.
    Signature and prior_record_hash chain each record to its predecessor.
    """

    id: str
    operation: OperationKind
    tenant_id: str
    user_id: str
    utterance: Optional[str] = None         # Omitted when text storage is disabled
    utterance_hash: Optional[str] = None    # SHA-256 of the raw utterance
    intent_result: Optional[IntentResult] = None
    action_command: Optional[ActionCommand] = None
    action_result: Optional[ActionResult] = None
    final_state: str
    error_kind: Optional[ErrorKind] = None
    duration_seconds: Optional[float] = None
    timestamp: UtcDatetime

    # INTEGRITY
    signature: str = ""
    prior_record_hash: Optional[str] = None


class IntentAnalytics(BaseModel):
    """Aggregates for one tenant over a time range."""

    tenant_id: str
    start: UtcDatetime
    end: UtcDatetime
    total_interpretations: int = 0
    total_actions: int = 0
    successful_actions: int = 0
    rate_limited: int = 0
    fallback_parses: int = 0
    average_confidence: float = 0.0
    intent_distribution: Dict[str, int] = {}
