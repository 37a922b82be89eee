"""
Action playbook — the fixed recipe for every action type.

The drafter renders these steps for review; the executor runs the same
steps in the same order. A draft therefore enumerates exactly the side
effects execution will perform.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel

from intent_engine.models.action import StepType
from intent_engine.models.intent import IntentLabel


class StepTemplate(BaseModel):
    type: StepType
    description: str                      # str.format template
    operation: Optional[str] = None       # Executor handler; None for pure notices
    can_skip: bool = False


class PlaybookEntry(BaseModel):
    action_type: IntentLabel
    summary: str
    steps: List[StepTemplate]
    expected_outcome: str
    estimated_time: str = "a few seconds"
    idempotent: bool = False              # Safe to retry on transient failure
    read_only: bool = False


def _validate(description: str) -> StepTemplate:
    return StepTemplate(type=StepType.VALIDATION, description=description, operation="get_item")


def _notify(description: str) -> StepTemplate:
    return StepTemplate(
        type=StepType.SEND_NOTIFICATION,
        description=description,
        operation="notify",
        can_skip=True,
    )


PLAYBOOK: Dict[IntentLabel, PlaybookEntry] = {
    IntentLabel.TAKE_OWNERSHIP: PlaybookEntry(
        action_type=IntentLabel.TAKE_OWNERSHIP,
        summary="Take ownership of {title}",
        steps=[
            _validate("Confirm {title} exists and can be reassigned"),
            StepTemplate(type=StepType.API_CALL, description="Assign {title} to you", operation="assign_self"),
            _notify("Notify watchers of {title} about the new owner"),
        ],
        expected_outcome="You are the assignee of {title}",
        idempotent=True,
    ),
    IntentLabel.RELEASE_OWNERSHIP: PlaybookEntry(
        action_type=IntentLabel.RELEASE_OWNERSHIP,
        summary="Release ownership of {title}",
        steps=[
            _validate("Confirm {title} is currently assigned to you"),
            StepTemplate(type=StepType.API_CALL, description="Remove you as assignee of {title}", operation="unassign"),
            _notify("Notify watchers that {title} is unassigned"),
        ],
        expected_outcome="{title} has no assignee",
        idempotent=True,
    ),
    IntentLabel.START_WORK: PlaybookEntry(
        action_type=IntentLabel.START_WORK,
        summary="Start work on {title}",
        steps=[
            _validate("Confirm {title} exists"),
            StepTemplate(type=StepType.UPDATE_STATUS, description="Move {title} to InProgress", operation="update_status"),
            _notify("Notify watchers that work on {title} has started"),
        ],
        expected_outcome="{title} is InProgress",
        idempotent=True,
    ),
    IntentLabel.COMPLETE_TASK: PlaybookEntry(
        action_type=IntentLabel.COMPLETE_TASK,
        summary="Mark {title} as Done",
        steps=[
            _validate("Confirm {title} exists"),
            StepTemplate(type=StepType.UPDATE_STATUS, description="Move {title} to Done", operation="update_status"),
            _notify("Notify watchers that {title} is done"),
        ],
        expected_outcome="{title} is Done",
        idempotent=True,
    ),
    IntentLabel.UPDATE_STATUS: PlaybookEntry(
        action_type=IntentLabel.UPDATE_STATUS,
        summary="Move {title} to {new_status}",
        steps=[
            _validate("Confirm {title} exists and {new_status} is a valid status"),
            StepTemplate(type=StepType.UPDATE_STATUS, description="Set status of {title} to {new_status}", operation="update_status"),
            _notify("Notify watchers of the status change"),
        ],
        expected_outcome="{title} is {new_status}",
        idempotent=True,
    ),
    IntentLabel.ASSIGN_TASK: PlaybookEntry(
        action_type=IntentLabel.ASSIGN_TASK,
        summary="Assign {title} to {assignee}",
        steps=[
            _validate("Confirm {title} exists"),
            StepTemplate(type=StepType.API_CALL, description="Set assignee of {title} to {assignee}", operation="assign"),
            _notify("Notify {assignee} about the assignment"),
        ],
        expected_outcome="{assignee} is the assignee of {title}",
        idempotent=True,
    ),
    IntentLabel.UPDATE_PRIORITY: PlaybookEntry(
        action_type=IntentLabel.UPDATE_PRIORITY,
        summary="Set priority of {title} to {priority}",
        steps=[
            _validate("Confirm {title} exists"),
            StepTemplate(type=StepType.API_CALL, description="Set priority of {title} to {priority}", operation="update_priority"),
        ],
        expected_outcome="{title} has priority {priority}",
        idempotent=True,
    ),
    IntentLabel.ADD_COMMENT: PlaybookEntry(
        action_type=IntentLabel.ADD_COMMENT,
        summary="Comment on {title}",
        steps=[
            _validate("Confirm {title} exists"),
            StepTemplate(type=StepType.API_CALL, description="Post comment on {title}: \"{comment}\"", operation="add_comment"),
            _notify("Notify watchers of {title} about the comment"),
        ],
        expected_outcome="A new comment appears on {title}",
    ),
    IntentLabel.MOVE_TO_SPRINT: PlaybookEntry(
        action_type=IntentLabel.MOVE_TO_SPRINT,
        summary="Move {title} to sprint {sprint_id}",
        steps=[
            _validate("Confirm {title} and sprint {sprint_id} exist"),
            StepTemplate(type=StepType.API_CALL, description="Move {title} into sprint {sprint_id}", operation="move_to_sprint"),
            _notify("Notify the sprint team about the added work"),
        ],
        expected_outcome="{title} is part of sprint {sprint_id}",
        idempotent=True,
    ),
    IntentLabel.CLOSE_SPRINT: PlaybookEntry(
        action_type=IntentLabel.CLOSE_SPRINT,
        summary="Close sprint {title}",
        steps=[
            _validate("Confirm sprint {title} is active"),
            StepTemplate(
                type=StepType.UPDATE_STATUS,
                description="Close sprint {title}; unfinished stories and tasks return to the backlog",
                operation="close_sprint",
            ),
            _notify("Notify the sprint team that {title} is closed"),
        ],
        expected_outcome="Sprint {title} is closed and unfinished work is back in the backlog",
        estimated_time="under a minute",
    ),
    IntentLabel.ARCHIVE: PlaybookEntry(
        action_type=IntentLabel.ARCHIVE,
        summary="Archive {title}",
        steps=[
            _validate("Confirm {title} exists and is not already archived"),
            StepTemplate(type=StepType.API_CALL, description="Archive {title}", operation="archive"),
            _notify("Notify watchers that {title} was archived"),
        ],
        expected_outcome="{title} is archived and hidden from active boards",
    ),
    IntentLabel.CREATE_ITEM: PlaybookEntry(
        action_type=IntentLabel.CREATE_ITEM,
        summary="Create {item_type} \"{title}\"",
        steps=[
            StepTemplate(type=StepType.VALIDATION, description="Check title and priority for the new {item_type}"),
            StepTemplate(type=StepType.CREATE_ITEM, description="Create {item_type} \"{title}\"", operation="create_item"),
        ],
        expected_outcome="A new {item_type} \"{title}\" exists",
    ),
    IntentLabel.CREATE_SPRINT: PlaybookEntry(
        action_type=IntentLabel.CREATE_SPRINT,
        summary="Create sprint \"{title}\"",
        steps=[
            StepTemplate(type=StepType.VALIDATION, description="Check the sprint name"),
            StepTemplate(type=StepType.CREATE_ITEM, description="Create sprint \"{title}\"", operation="create_sprint"),
        ],
        expected_outcome="A new sprint \"{title}\" exists",
    ),
    IntentLabel.QUERY_STATUS: PlaybookEntry(
        action_type=IntentLabel.QUERY_STATUS,
        summary="Look up the status of {title}",
        steps=[
            StepTemplate(type=StepType.API_CALL, description="Fetch {title}", operation="get_item"),
        ],
        expected_outcome="The current status of {title}",
        idempotent=True,
        read_only=True,
    ),
    IntentLabel.SEARCH_ITEMS: PlaybookEntry(
        action_type=IntentLabel.SEARCH_ITEMS,
        summary="Search work items for \"{query}\"",
        steps=[
            StepTemplate(type=StepType.API_CALL, description="Search for \"{query}\"", operation="search"),
        ],
        expected_outcome="Matching work items",
        idempotent=True,
        read_only=True,
    ),
    IntentLabel.GENERATE_REPORT: PlaybookEntry(
        action_type=IntentLabel.GENERATE_REPORT,
        summary="Generate a progress report",
        steps=[
            StepTemplate(type=StepType.API_CALL, description="Collect progress figures", operation="report"),
        ],
        expected_outcome="A summary of current progress",
        idempotent=True,
        read_only=True,
    ),
}


class _Values(dict):
    """format_map source that renders unknown placeholders as '?'."""

    def __missing__(self, key):
        return "?"


def render(template: str, values: Dict[str, object]) -> str:
    return template.format_map(_Values(values))


def get_entry(action_type: IntentLabel) -> Optional[PlaybookEntry]:
    return PLAYBOOK.get(action_type)
