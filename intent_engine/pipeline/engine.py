"""
Interpretation Engine — the interpret/act pipeline.

    interpret: rate limit → parse (LLM, heuristic fallback) → resolve →
               disambiguate → draft → [execute when safe]
    act:       rate limit → confirmation gate → execute

Behavioral Contract:
- The rate limiter runs first; a denied call makes no external request.
- Provider outages degrade the result instead of failing the request.
- An ambiguous selection never produces a draft.
- High-risk drafts stop at AwaitingConfirmation until a matching act call.
- Exactly one history record per interpret call and per act call,
  whatever the outcome.
"""

import asyncio
import hashlib
import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel

from intent_engine.config.settings import EngineSettings
from intent_engine.events.channel import ActionEvent, EventChannel
from intent_engine.execution.executor import ActionExecutor
from intent_engine.execution.services import HttpWorkItemService, InMemoryWorkItemService
from intent_engine.governance.confirmation import ConfirmationGate
from intent_engine.governance.disambiguation import (
    DisambiguationThresholds,
    decide_with_thresholds,
)
from intent_engine.governance.drafter import ActionDrafter
from intent_engine.governance.validation import validate_command
from intent_engine.history.recorder import AuditRecorder
from intent_engine.history.store import HistoryStore
from intent_engine.limits.circuit_breaker import CircuitBreaker
from intent_engine.limits.rate_limiter import RateLimiter
from intent_engine.models.action import ActionCommand
from intent_engine.models.entities import CandidateEntity
from intent_engine.models.errors import EngineError, ErrorKind, RateLimited
from intent_engine.models.execution import ActionResult
from intent_engine.models.history import IntentHistoryRecord, OperationKind
from intent_engine.models.intent import IntentLabel, UtteranceRequest
from intent_engine.models.limits import RateLimitDecision
from intent_engine.models.result import IntentResult
from intent_engine.models.wire import utc_now
from intent_engine.parsing.heuristic import HeuristicParser
from intent_engine.parsing.llm import ChatCompletionsProvider
from intent_engine.parsing.parser import IntentParser
from intent_engine.resolution.embeddings import HashingEmbedder, OpenAIEmbedder
from intent_engine.resolution.index import InMemoryVectorIndex, QdrantVectorIndex
from intent_engine.resolution.resolver import CandidateResolver, ResolverConfig

logger = logging.getLogger("intent-engine.pipeline")


class PipelineState(str, Enum):
    RECEIVED = "received"
    PARSING = "parsing"
    FALLBACK = "fallback"
    RESOLVING = "resolving"
    DISAMBIGUATING = "disambiguating"
    AUTO_SELECTED = "auto_selected"
    AMBIGUOUS = "ambiguous"
    DRAFTING = "drafting"
    DRAFTED = "drafted"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class InterpretOutcome(BaseModel):
    result: IntentResult
    state: PipelineState
    rate_limit: RateLimitDecision
    action_result: Optional[ActionResult] = None
    interaction_id: str


class ActOutcome(BaseModel):
    result: ActionResult
    rate_limit: RateLimitDecision


class _Trace:
    """Per-request state holder. Never shared between calls."""

    def __init__(self, interaction_id: str):
        self.interaction_id = interaction_id
        self.state = PipelineState.RECEIVED
        self.started = time.monotonic()

    def advance(self, state: PipelineState) -> None:
        logger.debug("%s: %s -> %s", self.interaction_id, self.state.value, state.value)
        self.state = state

    def elapsed(self) -> float:
        return round(time.monotonic() - self.started, 3)


class InterpretationEngine:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        parser: IntentParser,
        resolver: CandidateResolver,
        drafter: ActionDrafter,
        gate: ConfirmationGate,
        executor: ActionExecutor,
        recorder: AuditRecorder,
        events: Optional[EventChannel] = None,
        thresholds: Optional[DisambiguationThresholds] = None,
        auto_execute_safe_actions: bool = True,
        store_utterance_text: bool = True,
        health_timeout_seconds: float = 2.0,
    ):
        self.rate_limiter = rate_limiter
        self.parser = parser
        self.resolver = resolver
        self.drafter = drafter
        self.gate = gate
        self.executor = executor
        self.recorder = recorder
        self.events = events or EventChannel()
        self.thresholds = thresholds or DisambiguationThresholds()
        self.auto_execute_safe_actions = auto_execute_safe_actions
        self.store_utterance_text = store_utterance_text
        self.health_timeout_seconds = health_timeout_seconds

    # === INTERPRET ===

    async def interpret(
        self, request: UtteranceRequest, disable_llm: bool = False
    ) -> InterpretOutcome:
        trace = _Trace(f"ix_{uuid4().hex[:12]}")
        decision = self.rate_limiter.check(request.tenant_id, request.user_id, "interpret")
        if not decision.allowed:
            trace.advance(PipelineState.FAILED)
            self._record_interpret(trace, request, error_kind=ErrorKind.RATE_LIMITED)
            raise RateLimited(decision.limit, decision.reset_at)

        try:
            outcome = await self._interpret(trace, request, decision, disable_llm)
        except EngineError as e:
            trace.advance(PipelineState.FAILED)
            self._record_interpret(trace, request, error_kind=e.kind)
            raise
        except Exception:
            trace.advance(PipelineState.FAILED)
            self._record_interpret(trace, request, error_kind=ErrorKind.EXECUTION_FAILED)
            raise
        except asyncio.CancelledError:
            # The quota was spent, so the call is audited even without a caller
            trace.advance(PipelineState.FAILED)
            self._record_interpret(trace, request, error_kind=ErrorKind.CANCELLED)
            raise

        self._record_interpret(
            trace,
            request,
            result=outcome.result,
            command=outcome.result.suggested_action,
            action_result=outcome.action_result,
            error_kind=outcome.action_result.kind if outcome.action_result else None,
        )
        return outcome

    async def _interpret(
        self,
        trace: _Trace,
        request: UtteranceRequest,
        decision: RateLimitDecision,
        disable_llm: bool,
    ) -> InterpretOutcome:
        tenant_id, user_id = request.tenant_id, request.user_id

        trace.advance(PipelineState.PARSING)
        parse = await self.parser.parse(request, disable_llm=disable_llm)
        parsed = parse.parsed
        degraded: List[str] = list(parse.degraded_stages)
        if parse.used_fallback:
            trace.advance(PipelineState.FALLBACK)

        def finish(result: IntentResult, action_result: Optional[ActionResult] = None):
            return InterpretOutcome(
                result=result,
                state=trace.state,
                rate_limit=decision,
                action_result=action_result,
                interaction_id=trace.interaction_id,
            )

        if parsed.intent == IntentLabel.UNKNOWN:
            trace.advance(PipelineState.AMBIGUOUS)
            return finish(IntentResult(
                intent=parsed.intent,
                confidence=parsed.confidence,
                ambiguous=True,
                no_matches=True,
                source=parsed.source,
                degraded_stages=degraded,
            ))

        target: Optional[CandidateEntity] = None
        entities: List[CandidateEntity] = []
        if parsed.needs_target:
            trace.advance(PipelineState.RESOLVING)
            resolved = await self.resolver.resolve(
                tenant_id,
                user_id,
                request.utterance,
                parsed.descriptors,
                request.context_entities,
            )
            degraded.extend(resolved.degraded_stages)

            trace.advance(PipelineState.DISAMBIGUATING)
            choice = decide_with_thresholds(
                resolved.candidates, self.thresholds, from_fallback=parse.used_fallback
            )
            entities = choice.candidates
            if not choice.auto_select:
                trace.advance(PipelineState.AMBIGUOUS)
                return finish(IntentResult(
                    intent=parsed.intent,
                    confidence=parsed.confidence,
                    entities=entities,
                    ambiguous=True,
                    no_matches=choice.no_matches,
                    source=parsed.source,
                    degraded_stages=degraded,
                ))
            trace.advance(PipelineState.AUTO_SELECTED)
            target = choice.selected

        trace.advance(PipelineState.DRAFTING)
        command = self.drafter.draft(
            parsed,
            target=target,
            context=request.context_entities,
            utterance=request.utterance,
            interaction_id=trace.interaction_id,
        )
        command = self.gate.issue(command, tenant_id, user_id)
        trace.advance(PipelineState.DRAFTED)

        result = IntentResult(
            intent=parsed.intent,
            confidence=parsed.confidence,
            entities=entities,
            auto_select=target is not None,
            source=parsed.source,
            degraded_stages=degraded,
            suggested_action=command,
        )

        if self.gate.requires_pause(command):
            trace.advance(PipelineState.AWAITING_CONFIRMATION)
            return finish(result)

        problems = validate_command(
            command.type, command.entity_id, command.entity_type, command.parameters
        )
        if not self.auto_execute_safe_actions or problems:
            return finish(result)

        self.gate.verify(command, tenant_id, user_id, confirmed=False)
        trace.advance(PipelineState.EXECUTING)
        action_result = await self.executor.execute(command, tenant_id, user_id)
        self._publish(action_result, command, tenant_id, user_id)
        trace.advance(
            PipelineState.COMPLETED if action_result.success else PipelineState.FAILED
        )
        return finish(result, action_result)

    # === ACT ===

    async def act(
        self,
        command: ActionCommand,
        tenant_id: str,
        user_id: str,
        confirmed: bool = False,
    ) -> ActOutcome:
        trace = _Trace(command.interaction_id)
        decision = self.rate_limiter.check(tenant_id, user_id, "act")
        if not decision.allowed:
            trace.advance(PipelineState.FAILED)
            self._record_act(trace, tenant_id, user_id, command, error_kind=ErrorKind.RATE_LIMITED)
            raise RateLimited(decision.limit, decision.reset_at)

        try:
            self.gate.verify(command, tenant_id, user_id, confirmed)
        except EngineError as e:
            trace.advance(PipelineState.FAILED)
            self._record_act(trace, tenant_id, user_id, command, error_kind=e.kind)
            raise

        trace.advance(PipelineState.EXECUTING)
        try:
            result = await self.executor.execute(command, tenant_id, user_id)
        except asyncio.CancelledError:
            # Steps may already have landed at the owning service
            trace.advance(PipelineState.FAILED)
            self._record_act(trace, tenant_id, user_id, command, error_kind=ErrorKind.CANCELLED)
            raise
        self._publish(result, command, tenant_id, user_id)
        trace.advance(PipelineState.COMPLETED if result.success else PipelineState.FAILED)
        self._record_act(
            trace, tenant_id, user_id, command, action_result=result, error_kind=result.kind
        )
        return ActOutcome(result=result, rate_limit=decision)

    # === READINESS ===

    async def readiness(self) -> Dict[str, Any]:
        """Provider reachability, reported independently per dependency."""
        provider = self.parser.provider
        language_model = await self._check_health(provider) if provider is not None else False
        embeddings = await self._check_health(self.resolver.embedder)
        vector_index = await self._check_health(self.resolver.index)

        breakers = [
            self.parser.breaker.snapshot(),
            self.resolver.embedding_breaker.snapshot(),
            self.resolver.index_breaker.snapshot(),
        ]
        all_up = language_model and embeddings and vector_index
        return {
            # The heuristic parser keeps the engine serving when providers are down
            "status": "ready" if all_up else "degraded",
            "languageModel": {
                "configured": provider is not None,
                "reachable": language_model,
                "mode": "model" if language_model else "fallback_only",
            },
            "embeddings": {"reachable": embeddings},
            "vectorIndex": {"reachable": vector_index},
            "history": {
                "reachable": self.recorder.store.health_check(),
                "failedWrites": self.recorder.failed_writes,
            },
            "breakers": [b.model_dump(mode="json") for b in breakers],
        }

    async def _check_health(self, component) -> bool:
        try:
            return bool(await asyncio.wait_for(
                component.health_check(), timeout=self.health_timeout_seconds
            ))
        except Exception as e:
            logger.debug("Health check for %s failed: %s", type(component).__name__, e)
            return False

    # === EVENTS / HISTORY ===

    def _publish(
        self, result: ActionResult, command: ActionCommand, tenant_id: str, user_id: str
    ) -> None:
        self.events.publish(ActionEvent(
            type="action.completed" if result.success else "action.failed",
            tenant_id=tenant_id,
            user_id=user_id,
            action_type=command.type.value,
            entity_id=command.entity_id,
            payload={
                "interactionId": command.interaction_id,
                "message": result.message,
                "riskLevel": command.risk_level.value,
            },
        ))

    def _record_interpret(
        self,
        trace: _Trace,
        request: UtteranceRequest,
        result: Optional[IntentResult] = None,
        command: Optional[ActionCommand] = None,
        action_result: Optional[ActionResult] = None,
        error_kind: Optional[ErrorKind] = None,
    ) -> None:
        self.recorder.submit(IntentHistoryRecord(
            id=f"hist_{uuid4().hex[:12]}",
            operation=OperationKind.INTERPRET,
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            utterance=request.utterance if self.store_utterance_text else None,
            utterance_hash=hashlib.sha256(request.utterance.encode()).hexdigest(),
            intent_result=result,
            action_command=command,
            action_result=action_result,
            final_state=trace.state.value,
            error_kind=error_kind,
            duration_seconds=trace.elapsed(),
            timestamp=utc_now(),
        ))

    def _record_act(
        self,
        trace: _Trace,
        tenant_id: str,
        user_id: str,
        command: ActionCommand,
        action_result: Optional[ActionResult] = None,
        error_kind: Optional[ErrorKind] = None,
    ) -> None:
        self.recorder.submit(IntentHistoryRecord(
            id=f"hist_{uuid4().hex[:12]}",
            operation=OperationKind.ACT,
            tenant_id=tenant_id,
            user_id=user_id,
            action_command=command,
            action_result=action_result,
            final_state=trace.state.value,
            error_kind=error_kind,
            duration_seconds=trace.elapsed(),
            timestamp=utc_now(),
        ))


def build_engine(
    settings: Optional[EngineSettings] = None,
    history_store: Optional[HistoryStore] = None,
) -> InterpretationEngine:
    """Wire every stage from settings. Unconfigured providers get in-process stand-ins."""
    settings = settings or EngineSettings()

    def breaker(name: str) -> CircuitBreaker:
        return CircuitBreaker(
            name,
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout_seconds=settings.breaker_reset_seconds,
        )

    provider = None
    if settings.llm_base_url:
        provider = ChatCompletionsProvider(
            settings.llm_base_url,
            settings.llm_model,
            api_key=settings.llm_api_key,
            timeout=settings.llm_timeout_seconds,
        )
    if settings.embedding_base_url:
        embedder = OpenAIEmbedder(
            settings.embedding_base_url,
            settings.embedding_model,
            api_key=settings.embedding_api_key,
            timeout=settings.embedding_timeout_seconds,
        )
    else:
        embedder = HashingEmbedder(settings.embedding_dimensions)
    if settings.qdrant_url:
        index = QdrantVectorIndex(
            settings.qdrant_url,
            settings.qdrant_collection,
            api_key=settings.qdrant_api_key,
            timeout=settings.vector_timeout_seconds,
        )
    else:
        index = InMemoryVectorIndex()
    if settings.work_item_service_url:
        service = HttpWorkItemService(
            settings.work_item_service_url, timeout=settings.executor_timeout_seconds
        )
    else:
        service = InMemoryWorkItemService()

    events = EventChannel(queue_size=settings.event_queue_size)
    heuristic = HeuristicParser(confidence_ceiling=settings.heuristic_confidence_ceiling)

    return InterpretationEngine(
        rate_limiter=RateLimiter(
            limit=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
            scope_limits={"act": settings.act_rate_limit_requests},
        ),
        parser=IntentParser(
            provider=provider,
            heuristic=heuristic,
            breaker=breaker("language_model"),
            timeout_seconds=settings.llm_timeout_seconds,
        ),
        resolver=CandidateResolver(
            index,
            embedder,
            config=ResolverConfig(
                top_k=settings.top_k,
                min_similarity=settings.min_similarity,
                mention_boost=settings.mention_boost,
                assignment_boost=settings.assignment_boost,
                linkage_boost=settings.linkage_boost,
                recency_boost=settings.recency_boost,
                recency_window_days=settings.recency_window_days,
                embedding_timeout_seconds=settings.embedding_timeout_seconds,
                vector_timeout_seconds=settings.vector_timeout_seconds,
            ),
            embedding_breaker=breaker("embeddings"),
            index_breaker=breaker("vector_index"),
        ),
        drafter=ActionDrafter(confirm_medium_risk=settings.confirm_medium_risk),
        gate=ConfirmationGate(
            settings.confirmation_secret,
            ttl_seconds=settings.confirmation_ttl_seconds,
            confirm_medium_risk=settings.confirm_medium_risk,
        ),
        executor=ActionExecutor(
            service,
            events=events,
            max_attempts=settings.executor_max_attempts,
            backoff_seconds=settings.executor_backoff_seconds,
            timeout_seconds=settings.executor_timeout_seconds,
        ),
        recorder=AuditRecorder(history_store or HistoryStore(settings.history_db_path)),
        events=events,
        thresholds=DisambiguationThresholds(
            min_confidence=settings.auto_select_min_confidence,
            min_margin=settings.auto_select_min_margin,
            fallback_penalty=settings.fallback_confidence_penalty,
        ),
        auto_execute_safe_actions=settings.auto_execute_safe_actions,
        store_utterance_text=settings.store_utterance_text,
        health_timeout_seconds=settings.vector_timeout_seconds,
    )
