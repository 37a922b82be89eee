"""Intent engine data models."""

from intent_engine.models.action import (
    ActionCommand,
    ActionDraft,
    ActionStep,
    RiskLevel,
    StepType,
)
from intent_engine.models.entities import (
    CandidateEntity,
    EntityType,
    EvidenceChip,
    EvidenceType,
    IndexedEntity,
    LinkedChange,
    VectorHit,
)
from intent_engine.models.errors import (
    ConfirmationMismatch,
    EngineError,
    ErrorBody,
    ErrorKind,
    ExecutionFailed,
    IdentityMismatch,
    InvalidParameters,
    ParseInvalid,
    ParseTimeout,
    ProviderError,
    RateLimited,
    TenantIsolationViolation,
)
from intent_engine.models.execution import ActionResult
from intent_engine.models.history import (
    IntentAnalytics,
    IntentHistoryRecord,
    OperationKind,
)
from intent_engine.models.intent import (
    TARGETLESS_INTENTS,
    ContextEntities,
    EntityDescriptor,
    IntentLabel,
    ParsedIntent,
    ParseSource,
    UtteranceRequest,
)
from intent_engine.models.limits import (
    CircuitSnapshot,
    CircuitState,
    RateLimitBucket,
    RateLimitDecision,
)
from intent_engine.models.result import IntentResult

__all__ = [
    "ActionCommand",
    "ActionDraft",
    "ActionResult",
    "ActionStep",
    "CandidateEntity",
    "CircuitSnapshot",
    "CircuitState",
    "ConfirmationMismatch",
    "ContextEntities",
    "EngineError",
    "EntityDescriptor",
    "EntityType",
    "ErrorBody",
    "ErrorKind",
    "EvidenceChip",
    "EvidenceType",
    "ExecutionFailed",
    "IdentityMismatch",
    "IndexedEntity",
    "IntentAnalytics",
    "IntentHistoryRecord",
    "IntentLabel",
    "IntentResult",
    "InvalidParameters",
    "LinkedChange",
    "OperationKind",
    "ParseInvalid",
    "ParseSource",
    "ParseTimeout",
    "ParsedIntent",
    "ProviderError",
    "RateLimitBucket",
    "RateLimitDecision",
    "RateLimited",
    "RiskLevel",
    "StepType",
    "TARGETLESS_INTENTS",
    "TenantIsolationViolation",
    "UtteranceRequest",
    "VectorHit",
]
