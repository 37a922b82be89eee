"""
Action Executor — runs a confirmed ActionCommand against the owning service.

Behavioral Contract:
- Accepts only commands that passed the Confirmation Gate.
- Runs the playbook steps the draft showed, in the same order.
- Idempotent actions (and read-only lookups) retry transient failures with
  bounded exponential backoff. Non-idempotent actions run at most once.
- Always returns exactly one ActionResult. Nothing raises past execute().
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from intent_engine.events.channel import ActionEvent, EventChannel
from intent_engine.execution.services import (
    ServiceError,
    TransientServiceError,
    WorkItemService,
)
from intent_engine.governance.playbook import StepTemplate, get_entry
from intent_engine.governance.validation import validate_command
from intent_engine.models.action import ActionCommand
from intent_engine.models.errors import ErrorKind
from intent_engine.models.execution import ActionResult

logger = logging.getLogger("intent-engine.executor")

Handler = Callable[[ActionCommand, str, str], Awaitable[Dict[str, Any]]]

READ_ONLY_OPERATIONS = frozenset({"get_item", "search", "report"})


class ActionExecutor:
    def __init__(
        self,
        service: WorkItemService,
        events: Optional[EventChannel] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
        timeout_seconds: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.service = service
        self.events = events
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._handlers: Dict[str, Handler] = {}
        self._register_default_handlers()

    def _register_default_handlers(self) -> None:
        """Map playbook operations to work item service calls."""
        self._handlers["get_item"] = self._get_item
        self._handlers["assign_self"] = self._assign_self
        self._handlers["unassign"] = self._unassign
        self._handlers["assign"] = self._assign
        self._handlers["update_status"] = self._update_status
        self._handlers["update_priority"] = self._update_priority
        self._handlers["add_comment"] = self._add_comment
        self._handlers["move_to_sprint"] = self._move_to_sprint
        self._handlers["close_sprint"] = self._close_sprint
        self._handlers["archive"] = self._archive
        self._handlers["create_item"] = self._create_item
        self._handlers["create_sprint"] = self._create_sprint
        self._handlers["search"] = self._search
        self._handlers["report"] = self._report
        self._handlers["notify"] = self._notify

    def register_handler(self, operation: str, handler: Handler) -> None:
        """Register a custom handler for a playbook operation."""
        self._handlers[operation] = handler

    async def execute(
        self, command: ActionCommand, tenant_id: str, user_id: str
    ) -> ActionResult:
        start = time.monotonic()
        try:
            return await self._execute(command, tenant_id, user_id, start)
        except Exception as e:
            logger.exception("Unexpected executor failure for %s", command.type.value)
            return ActionResult(
                success=False,
                message=f"{command.description} failed unexpectedly",
                errors=[str(e)],
                kind=ErrorKind.EXECUTION_FAILED,
                action_type=command.type.value,
                entity_id=command.entity_id,
                duration_seconds=round(time.monotonic() - start, 3),
            )

    async def _execute(
        self, command: ActionCommand, tenant_id: str, user_id: str, start: float
    ) -> ActionResult:
        entry = get_entry(command.type)
        problems = validate_command(
            command.type, command.entity_id, command.entity_type, command.parameters
        )
        if entry is None or problems:
            return ActionResult(
                success=False,
                message=f"{command.description} cannot be executed",
                errors=problems or [f"No playbook for {command.type.value}"],
                kind=ErrorKind.INVALID_PARAMETERS,
                action_type=command.type.value,
                entity_id=command.entity_id,
                duration_seconds=round(time.monotonic() - start, 3),
            )

        steps: List[dict] = []
        main_data: Dict[str, Any] = {}
        attempts = 0
        for template in entry.steps:
            if template.operation is None:
                continue
            outcome = await self._dispatch_step(
                template, command, tenant_id, user_id, entry.idempotent
            )
            attempts += outcome["attempts"]
            steps.append({k: v for k, v in outcome.items() if k != "data"})

            if outcome["success"]:
                if template.operation not in ("get_item", "notify") or entry.read_only:
                    main_data = outcome["data"]
                continue
            if template.can_skip:
                logger.warning(
                    "Skippable step %s failed for %s: %s",
                    template.operation, command.type.value, outcome["error"],
                )
                continue

            return ActionResult(
                success=False,
                message=f"{command.description} failed",
                errors=[outcome["error"]],
                kind=ErrorKind.EXECUTION_FAILED,
                data={"steps": steps},
                action_type=command.type.value,
                entity_id=command.entity_id,
                attempts=attempts,
                duration_seconds=round(time.monotonic() - start, 3),
            )

        return ActionResult(
            success=True,
            message=f"{command.description} succeeded",
            data={"result": main_data, "steps": steps},
            action_type=command.type.value,
            entity_id=command.entity_id,
            attempts=attempts,
            duration_seconds=round(time.monotonic() - start, 3),
        )

    async def _dispatch_step(
        self,
        template: StepTemplate,
        command: ActionCommand,
        tenant_id: str,
        user_id: str,
        idempotent: bool,
    ) -> dict:
        """Run one playbook step, retrying only where repeating is harmless."""
        handler = self._handlers.get(template.operation)
        if handler is None:
            return {
                "operation": template.operation,
                "success": False,
                "error": f"No handler registered for operation: {template.operation}",
                "attempts": 0,
                "duration": 0.0,
            }

        retryable = idempotent or template.operation in READ_ONLY_OPERATIONS
        max_attempts = self.max_attempts if retryable else 1
        start = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                data = await asyncio.wait_for(
                    handler(command, tenant_id, user_id), timeout=self.timeout_seconds
                )
                return {
                    "operation": template.operation,
                    "success": True,
                    "data": data,
                    "attempts": attempt,
                    "duration": round(time.monotonic() - start, 3),
                }
            except (TransientServiceError, asyncio.TimeoutError) as e:
                error = str(e) or f"{template.operation} timed out"
                if attempt < max_attempts:
                    delay = self.backoff_seconds * (2 ** (attempt - 1))
                    logger.info(
                        "Retrying %s after transient failure (attempt %d/%d)",
                        template.operation, attempt, max_attempts,
                    )
                    await self._sleep(delay)
                    continue
            except ServiceError as e:
                error = str(e)
            except Exception as e:
                logger.exception("Handler %s raised", template.operation)
                error = str(e)
            return {
                "operation": template.operation,
                "success": False,
                "error": error,
                "attempts": attempt,
                "duration": round(time.monotonic() - start, 3),
            }

    # --- Handlers ---

    def _target(self, command: ActionCommand):
        return command.entity_type.value, command.entity_id

    async def _get_item(self, command, tenant_id, user_id):
        entity_type, entity_id = self._target(command)
        return await self.service.get_item(tenant_id, user_id, entity_type, entity_id)

    async def _assign_self(self, command, tenant_id, user_id):
        entity_type, entity_id = self._target(command)
        return await self.service.assign(tenant_id, user_id, entity_type, entity_id, user_id)

    async def _unassign(self, command, tenant_id, user_id):
        entity_type, entity_id = self._target(command)
        return await self.service.assign(tenant_id, user_id, entity_type, entity_id, None)

    async def _assign(self, command, tenant_id, user_id):
        entity_type, entity_id = self._target(command)
        return await self.service.assign(
            tenant_id, user_id, entity_type, entity_id, command.parameters["assignee"]
        )

    async def _update_status(self, command, tenant_id, user_id):
        entity_type, entity_id = self._target(command)
        return await self.service.update_status(
            tenant_id, user_id, entity_type, entity_id, command.parameters["new_status"]
        )

    async def _update_priority(self, command, tenant_id, user_id):
        entity_type, entity_id = self._target(command)
        return await self.service.update_priority(
            tenant_id, user_id, entity_type, entity_id, int(command.parameters["priority"])
        )

    async def _add_comment(self, command, tenant_id, user_id):
        entity_type, entity_id = self._target(command)
        return await self.service.add_comment(
            tenant_id, user_id, entity_type, entity_id, command.parameters["comment"]
        )

    async def _move_to_sprint(self, command, tenant_id, user_id):
        entity_type, entity_id = self._target(command)
        return await self.service.move_to_sprint(
            tenant_id, user_id, entity_type, entity_id, command.parameters["sprint_id"]
        )

    async def _close_sprint(self, command, tenant_id, user_id):
        return await self.service.close_sprint(tenant_id, user_id, command.entity_id)

    async def _archive(self, command, tenant_id, user_id):
        entity_type, entity_id = self._target(command)
        return await self.service.archive(tenant_id, user_id, entity_type, entity_id)

    async def _create_item(self, command, tenant_id, user_id):
        params = command.parameters
        item = {"title": params["title"], "item_type": params.get("item_type", "task")}
        for optional in ("parent_id", "sprint_id", "priority", "description"):
            if params.get(optional) is not None:
                item[optional] = params[optional]
        return await self.service.create_item(tenant_id, user_id, item)

    async def _create_sprint(self, command, tenant_id, user_id):
        sprint = {"name": command.parameters["title"]}
        if command.parameters.get("project_id"):
            sprint["project_id"] = command.parameters["project_id"]
        return await self.service.create_sprint(tenant_id, user_id, sprint)

    async def _search(self, command, tenant_id, user_id):
        return await self.service.search(tenant_id, user_id, command.parameters.get("query", ""))

    async def _report(self, command, tenant_id, user_id):
        return await self.service.report(tenant_id, user_id, command.parameters.get("scope_id"))

    async def _notify(self, command, tenant_id, user_id):
        if self.events is None:
            return {"delivered": 0}
        delivered = self.events.publish(ActionEvent(
            type="work_item.changed",
            tenant_id=tenant_id,
            user_id=user_id,
            action_type=command.type.value,
            entity_id=command.entity_id,
            payload={"description": command.description},
        ))
        return {"delivered": delivered}
