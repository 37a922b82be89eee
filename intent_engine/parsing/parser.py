"""
Intent Parser — language model first, heuristic fallback always.

Behavioral Contract:
- The language-model call is bounded by a hard timeout.
- Timeout, provider error, or malformed output never fail the request:
  control passes to the Heuristic Parser and the stage is marked degraded.
- While the provider's circuit is open, the heuristic path is taken
  immediately without waiting for the timeout.
- Language-model confidence is never reported below the heuristic ceiling,
  so a heuristic result can never outrank a model result.
"""

import asyncio
import logging
from typing import List, Optional

from pydantic import BaseModel

from intent_engine.limits.circuit_breaker import CircuitBreaker
from intent_engine.models.errors import (
    EngineError,
    ParseInvalid,
    ParseTimeout,
    ProviderError,
)
from intent_engine.models.intent import ParsedIntent, UtteranceRequest
from intent_engine.parsing.heuristic import HeuristicParser
from intent_engine.parsing.llm import (
    LanguageModelProvider,
    build_messages,
    parse_intent_payload,
)

logger = logging.getLogger("intent-engine.parser")


class ParseOutcome(BaseModel):
    parsed: ParsedIntent
    used_fallback: bool = False
    fallback_reason: Optional[str] = None
    degraded_stages: List[str] = []


class IntentParser:
    def __init__(
        self,
        provider: Optional[LanguageModelProvider] = None,
        heuristic: Optional[HeuristicParser] = None,
        breaker: Optional[CircuitBreaker] = None,
        timeout_seconds: float = 3.0,
    ):
        self.provider = provider
        self.heuristic = heuristic or HeuristicParser()
        self.breaker = breaker or CircuitBreaker("language_model")
        self.timeout_seconds = timeout_seconds

    @property
    def confidence_floor(self) -> float:
        return self.heuristic.confidence_ceiling

    async def parse(
        self, request: UtteranceRequest, disable_llm: bool = False
    ) -> ParseOutcome:
        if disable_llm:
            return self._fallback(request, reason=None)
        if self.provider is None:
            return self._fallback(request, reason="unavailable")
        if not self.breaker.allow_request():
            logger.debug("Language model circuit open; using heuristic parser")
            return self._fallback(request, reason="circuit_open")

        messages = build_messages(request.utterance, request.context_entities)
        try:
            parsed = await self._call_provider(messages)
        except EngineError as e:
            self.breaker.record_failure()
            logger.warning("Intent parse degraded to heuristic: %s", e.kind.value)
            return self._fallback(request, reason=e.kind.value)
        except BaseException:
            # Cancelled mid-call: no verdict on the provider
            self.breaker.release_trial()
            raise

        self.breaker.record_success()
        floor = self.confidence_floor
        if parsed.confidence < floor:
            parsed = parsed.model_copy(update={"confidence": floor})
        return ParseOutcome(parsed=parsed)

    async def _call_provider(self, messages) -> ParsedIntent:
        """
        One bounded provider round trip.
        Raises ParseTimeout or ParseInvalid; only cancellation escapes otherwise.
        """
        try:
            raw = await asyncio.wait_for(
                self.provider.complete(messages), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise ParseTimeout(
                f"language model did not answer within {self.timeout_seconds}s"
            ) from e
        except ProviderError as e:
            raise ParseInvalid(str(e)) from e
        except Exception as e:
            logger.exception("Language model client raised unexpectedly")
            raise ParseInvalid(f"language model client error: {type(e).__name__}") from e
        return parse_intent_payload(raw)

    def _fallback(
        self, request: UtteranceRequest, reason: Optional[str]
    ) -> ParseOutcome:
        parsed = self.heuristic.parse(request.utterance, request.context_entities)
        return ParseOutcome(
            parsed=parsed,
            used_fallback=True,
            fallback_reason=reason,
            degraded_stages=[f"parser:{reason}"] if reason else [],
        )
