"""
Action validation — parameter and entity-type compatibility rules.

Shared by the drafter (surfaced as potential issues) and the executor
(which refuses to call the owning service with invalid input).
"""

from typing import Any, Dict, List, Optional

from intent_engine.models.entities import EntityType
from intent_engine.models.intent import IntentLabel

VALID_STATUSES = ("Ready", "InProgress", "InReview", "Done")
MAX_TITLE_LENGTH = 200
MAX_COMMENT_LENGTH = 2000

_WORK_ITEMS = (EntityType.STORY, EntityType.TASK)

# Which entity types each action may target. None means no target is needed.
COMPATIBLE_TARGETS: Dict[IntentLabel, Optional[tuple]] = {
    IntentLabel.TAKE_OWNERSHIP: _WORK_ITEMS,
    IntentLabel.RELEASE_OWNERSHIP: _WORK_ITEMS,
    IntentLabel.START_WORK: _WORK_ITEMS,
    IntentLabel.COMPLETE_TASK: _WORK_ITEMS,
    IntentLabel.UPDATE_STATUS: _WORK_ITEMS,
    IntentLabel.ASSIGN_TASK: _WORK_ITEMS,
    IntentLabel.UPDATE_PRIORITY: _WORK_ITEMS,
    IntentLabel.ADD_COMMENT: _WORK_ITEMS,
    IntentLabel.MOVE_TO_SPRINT: _WORK_ITEMS,
    IntentLabel.ARCHIVE: _WORK_ITEMS,
    IntentLabel.CLOSE_SPRINT: (EntityType.SPRINT,),
    IntentLabel.QUERY_STATUS: tuple(EntityType),
    IntentLabel.CREATE_ITEM: None,
    IntentLabel.CREATE_SPRINT: None,
    IntentLabel.SEARCH_ITEMS: None,
    IntentLabel.GENERATE_REPORT: None,
}


def _check_title(params: Dict[str, Any], errors: List[str]) -> None:
    title = params.get("title")
    if not isinstance(title, str) or not title.strip():
        errors.append("Title is required")
    elif len(title) > MAX_TITLE_LENGTH:
        errors.append(f"Title must be at most {MAX_TITLE_LENGTH} characters")


def _check_priority(params: Dict[str, Any], errors: List[str], required: bool) -> None:
    if "priority" not in params:
        if required:
            errors.append("Priority is required")
        return
    priority = params["priority"]
    try:
        value = int(priority)
    except (TypeError, ValueError):
        errors.append("Priority must be an integer between 1 and 5")
        return
    if isinstance(priority, bool) or not 1 <= value <= 5:
        errors.append("Priority must be an integer between 1 and 5")


def validate_parameters(intent: IntentLabel, params: Dict[str, Any]) -> List[str]:
    """Return human-readable problems; an empty list means valid."""
    errors: List[str] = []

    if intent == IntentLabel.UPDATE_STATUS:
        status = params.get("new_status")
        if status is None:
            errors.append("A target status is required")
        elif status not in VALID_STATUSES:
            errors.append(
                f"Invalid status '{status}'; expected one of {', '.join(VALID_STATUSES)}"
            )

    elif intent == IntentLabel.UPDATE_PRIORITY:
        _check_priority(params, errors, required=True)

    elif intent == IntentLabel.CREATE_ITEM:
        _check_title(params, errors)
        _check_priority(params, errors, required=False)
        item_type = params.get("item_type", EntityType.TASK.value)
        if item_type not in (EntityType.STORY.value, EntityType.TASK.value):
            errors.append("Only stories and tasks can be created")

    elif intent == IntentLabel.CREATE_SPRINT:
        _check_title(params, errors)

    elif intent == IntentLabel.ADD_COMMENT:
        comment = params.get("comment")
        if not isinstance(comment, str) or not comment.strip():
            errors.append("Comment content is required")
        elif len(comment) > MAX_COMMENT_LENGTH:
            errors.append(f"Comment must be at most {MAX_COMMENT_LENGTH} characters")

    elif intent == IntentLabel.ASSIGN_TASK:
        if not params.get("assignee"):
            errors.append("An assignee is required")

    elif intent == IntentLabel.MOVE_TO_SPRINT:
        if not params.get("sprint_id"):
            errors.append("A destination sprint is required")

    return errors


def validate_target(
    intent: IntentLabel,
    entity_id: Optional[str],
    entity_type: Optional[EntityType],
) -> List[str]:
    allowed = COMPATIBLE_TARGETS.get(intent)
    if intent == IntentLabel.UNKNOWN:
        return ["Unrecognized action"]
    if allowed is None:
        return []
    if not entity_id or entity_type is None:
        return ["A target work item is required"]
    if entity_type not in allowed:
        names = " or ".join(t.value for t in allowed)
        return [f"{intent.value} can only target a {names}"]
    return []


def validate_command(
    intent: IntentLabel,
    entity_id: Optional[str],
    entity_type: Optional[EntityType],
    params: Dict[str, Any],
) -> List[str]:
    return validate_target(intent, entity_id, entity_type) + validate_parameters(intent, params)
