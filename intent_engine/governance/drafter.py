"""
Action Drafter — (intent, entity) to a risk-classified ActionCommand.

Behavioral Contract:
- Risk comes from a fixed lookup over (intent, entity type, entity state).
- riskLevel = high always implies confirmationRequired.
- The draft enumerates every side effect before anything runs.
- Drafting performs no I/O and no mutation.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from intent_engine.governance.playbook import PlaybookEntry, get_entry, render
from intent_engine.governance.validation import validate_command
from intent_engine.models.action import ActionCommand, ActionDraft, ActionStep, RiskLevel
from intent_engine.models.entities import CandidateEntity, EntityType
from intent_engine.models.intent import (
    ContextEntities,
    IntentLabel,
    ParsedIntent,
    ParseSource,
)
from intent_engine.models.wire import utc_now


READ_ONLY_INTENTS = frozenset({
    IntentLabel.QUERY_STATUS,
    IntentLabel.SEARCH_ITEMS,
    IntentLabel.GENERATE_REPORT,
})

DESTRUCTIVE_INTENTS = frozenset({
    IntentLabel.ARCHIVE,
    IntentLabel.CLOSE_SPRINT,
})

STATUS_SETTING_INTENTS = {
    IntentLabel.UPDATE_STATUS: None,        # Target status comes from parameters
    IntentLabel.START_WORK: "InProgress",
    IntentLabel.COMPLETE_TASK: "Done",
}

# Mutations on these types ripple into every item they contain
CONTAINER_TYPES = frozenset({EntityType.SPRINT, EntityType.PROJECT})


class DraftingError(Exception):
    """Raised when an intent has no playbook and cannot be drafted."""
    pass


def target_status(intent: IntentLabel, parameters: Dict[str, Any]) -> Optional[str]:
    if intent not in STATUS_SETTING_INTENTS:
        return None
    return STATUS_SETTING_INTENTS[intent] or parameters.get("new_status")


def classify_risk(
    intent: IntentLabel,
    entity_type: Optional[EntityType],
    entity_state: Optional[str],
    parameters: Optional[Dict[str, Any]] = None,
) -> RiskLevel:
    """Fixed risk lookup. Same inputs, same answer, every time."""
    parameters = parameters or {}

    if intent in READ_ONLY_INTENTS:
        return RiskLevel.LOW
    if intent in DESTRUCTIVE_INTENTS:
        return RiskLevel.HIGH
    if entity_type in CONTAINER_TYPES:
        return RiskLevel.HIGH
    bulk_targets = parameters.get("entity_ids")
    if isinstance(bulk_targets, list) and len(bulk_targets) > 1:
        return RiskLevel.HIGH

    status = target_status(intent, parameters)
    if status is not None and entity_state is not None and status == entity_state:
        # Re-setting the current status changes nothing
        return RiskLevel.LOW
    return RiskLevel.MEDIUM


def requires_confirmation(risk: RiskLevel, confirm_medium_risk: bool = False) -> bool:
    if risk == RiskLevel.HIGH:
        return True
    return confirm_medium_risk and risk == RiskLevel.MEDIUM


class ActionDrafter:
    def __init__(
        self,
        confirm_medium_risk: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.confirm_medium_risk = confirm_medium_risk
        self._clock = clock

    def draft(
        self,
        parsed: ParsedIntent,
        target: Optional[CandidateEntity] = None,
        context: Optional[ContextEntities] = None,
        utterance: str = "",
        interaction_id: Optional[str] = None,
    ) -> ActionCommand:
        entry = get_entry(parsed.intent)
        if entry is None:
            raise DraftingError(f"No playbook for intent '{parsed.intent.value}'")

        context = context or ContextEntities()
        parameters = self._parameters(parsed, target, context, utterance)
        entity_id = target.id if target else None
        entity_type = target.type if target else None
        entity_state = target.metadata.get("status") if target else None

        risk = classify_risk(parsed.intent, entity_type, entity_state, parameters)
        values = self._template_values(target, parameters)
        issues = validate_command(parsed.intent, entity_id, entity_type, parameters)
        issues.extend(self._risk_notes(parsed.intent, risk, target))

        draft = ActionDraft(
            summary=render(entry.summary, values),
            steps=self._steps(entry, values, entity_id, parameters),
            reasoning=self._reasoning(parsed, target),
            expected_outcome=render(entry.expected_outcome, values),
            potential_issues=issues or None,
            estimated_time=entry.estimated_time,
        )

        return ActionCommand(
            type=parsed.intent,
            entity_id=entity_id,
            entity_type=entity_type,
            entity_state=entity_state,
            parameters=parameters,
            risk_level=risk,
            description=draft.summary,
            confirmation_required=requires_confirmation(risk, self.confirm_medium_risk),
            draft=draft,
            interaction_id=interaction_id or f"ix_{uuid4().hex[:12]}",
            issued_at=self._clock(),
        )

    def _parameters(
        self,
        parsed: ParsedIntent,
        target: Optional[CandidateEntity],
        context: ContextEntities,
        utterance: str,
    ) -> Dict[str, Any]:
        params = dict(parsed.parameters)
        status = target_status(parsed.intent, params)
        if status is not None:
            params["new_status"] = status

        if parsed.intent == IntentLabel.CREATE_ITEM:
            params.setdefault("item_type", EntityType.TASK.value)
            parent = context.story_id if params["item_type"] == EntityType.TASK.value else None
            if parent:
                params.setdefault("parent_id", parent)
            if context.sprint_id:
                params.setdefault("sprint_id", context.sprint_id)
        elif parsed.intent == IntentLabel.CREATE_SPRINT and context.project_id:
            params.setdefault("project_id", context.project_id)
        elif parsed.intent == IntentLabel.SEARCH_ITEMS:
            query = " ".join(d.text for d in parsed.descriptors) or utterance
            params.setdefault("query", query)
        elif parsed.intent == IntentLabel.GENERATE_REPORT:
            scope = context.sprint_id or context.project_id
            if scope:
                params.setdefault("scope_id", scope)
        return params

    def _template_values(
        self, target: Optional[CandidateEntity], parameters: Dict[str, Any]
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = dict(parameters)
        if target:
            values["title"] = f"'{target.title}'"
        return values

    def _steps(
        self,
        entry: PlaybookEntry,
        values: Dict[str, Any],
        entity_id: Optional[str],
        parameters: Dict[str, Any],
    ) -> List[ActionStep]:
        steps = []
        for i, template in enumerate(entry.steps, start=1):
            details: Dict[str, Any] = {"operation": template.operation}
            if entity_id:
                details["entityId"] = entity_id
            if template.operation not in (None, "get_item", "notify"):
                details["parameters"] = parameters
            steps.append(ActionStep(
                id=f"step_{i}",
                description=render(template.description, values),
                type=template.type,
                details=details,
                can_skip=template.can_skip,
            ))
        return steps

    def _reasoning(
        self, parsed: ParsedIntent, target: Optional[CandidateEntity]
    ) -> str:
        source = "language model" if parsed.source == ParseSource.LANGUAGE_MODEL else "keyword rules"
        reasoning = (
            f"Interpreted as '{parsed.intent.value}' by {source} "
            f"with {parsed.confidence:.0%} confidence."
        )
        if target:
            evidence = ", ".join(chip.label.lower() for chip in target.evidence)
            reasoning += f" Selected '{target.title}' ({target.confidence:.0%} match"
            reasoning += f"; {evidence})." if evidence else ")."
        return reasoning

    def _risk_notes(
        self,
        intent: IntentLabel,
        risk: RiskLevel,
        target: Optional[CandidateEntity],
    ) -> List[str]:
        notes = []
        if intent == IntentLabel.CLOSE_SPRINT:
            notes.append("Every unfinished item in the sprint moves back to the backlog")
        elif intent == IntentLabel.ARCHIVE:
            notes.append("Archived items disappear from boards and reports")
        elif risk == RiskLevel.HIGH and target and target.type in CONTAINER_TYPES:
            notes.append(f"This changes a {target.type.value} and everything it contains")
        return notes
