"""
Language-model provider boundary.

The provider is asked for a JSON object:
  {"intent": <label>, "confidence": <0..1>,
   "entityDescriptors": [{"text": ..., "entityType"?: ...}],
   "parameters"?: {...}}

The response is validated strictly. Any missing or malformed field
invalidates the whole call; nothing is partially trusted.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import Field, ValidationError

from intent_engine.models.entities import EntityType
from intent_engine.models.errors import ParseInvalid, ProviderError
from intent_engine.models.intent import (
    ContextEntities,
    EntityDescriptor,
    IntentLabel,
    ParsedIntent,
    ParseSource,
)
from intent_engine.models.wire import WireModel

logger = logging.getLogger("intent-engine.llm")


class LanguageModelProvider(Protocol):
    """Protocol for the intent-classification backend."""

    async def complete(self, messages: List[Dict[str, str]]) -> str: ...

    async def health_check(self) -> bool: ...


class ChatCompletionsProvider:
    """OpenAI-compatible /chat/completions client."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout: float = 3.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": 0,
            "response_format": {"type": "json_object"},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"language model request failed: {e}") from e

        if resp.status_code != 200:
            raise ProviderError(f"language model returned HTTP {resp.status_code}")

        try:
            return resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError("language model response has no message content") from e

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.base_url}/models", headers=self._headers())
            return resp.status_code == 200
        except httpx.HTTPError:
            return False


# --- Prompt ---

_SYSTEM_PROMPT = (
    "You interpret natural language commands for a project management system. "
    "Classify the command into exactly one intent and extract phrases that name "
    "the work items it refers to. Respond with a JSON object of the form:\n"
    '{"intent": "<label>", "confidence": <number between 0 and 1>, '
    '"entityDescriptors": [{"text": "<phrase>", "entityType": "story|task|sprint|project"}], '
    '"parameters": {"key": "value"}}\n'
    "Allowed intent labels: {labels}.\n"
    "Use \"unknown\" when the command matches none of them. "
    "Status values are Ready, InProgress, InReview, Done. Priority is an integer 1-5. "
    "Respond with valid JSON only. Do not include any other text."
)


def build_messages(utterance: str, context: ContextEntities) -> List[Dict[str, str]]:
    labels = ", ".join(label.value for label in IntentLabel)
    system = _SYSTEM_PROMPT.replace("{labels}", labels)
    user = f"Command: {utterance}"
    context_lines = [
        f"{name}: {value}"
        for name, value in context.model_dump(by_alias=True).items()
        if value
    ]
    if context_lines:
        user += "\nCurrently open: " + ", ".join(context_lines)
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


# --- Response validation ---

class _DescriptorPayload(WireModel):
    text: str = Field(min_length=1)
    entity_type: Optional[EntityType] = None


class _IntentPayload(WireModel):
    intent: IntentLabel
    confidence: float = Field(ge=0.0, le=1.0)
    entity_descriptors: List[_DescriptorPayload]
    parameters: Dict[str, Any] = {}


def _extract_json_object(raw: str) -> str:
    """Models sometimes wrap the object in prose or code fences."""
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        raise ParseInvalid("language model response contains no JSON object")
    return raw[start:end + 1]


def parse_intent_payload(raw: str) -> ParsedIntent:
    """Validate a raw completion into a ParsedIntent, or raise ParseInvalid."""
    if not isinstance(raw, str) or not raw.strip():
        raise ParseInvalid("language model returned an empty response")

    body = _extract_json_object(raw)
    try:
        json.loads(body)
        payload = _IntentPayload.model_validate_json(body, strict=True)
    except (ValueError, ValidationError) as e:
        raise ParseInvalid(f"language model response failed validation: {e}") from e

    return ParsedIntent(
        intent=payload.intent,
        confidence=payload.confidence,
        descriptors=[
            EntityDescriptor(text=d.text, entity_type=d.entity_type)
            for d in payload.entity_descriptors
        ],
        parameters=payload.parameters,
        source=ParseSource.LANGUAGE_MODEL,
    )
