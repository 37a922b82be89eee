"""Action Result — outcome from the Action Executor."""

from typing import Any, Dict, List, Optional

from intent_engine.models.errors import ErrorKind
from intent_engine.models.wire import WireModel


class ActionResult(WireModel):
    """Exactly one per executed (or rejected) action."""

    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    errors: Optional[List[str]] = None
    kind: Optional[ErrorKind] = None
    action_type: Optional[str] = None
    entity_id: Optional[str] = None
    attempts: int = 0
    duration_seconds: float = 0.0
