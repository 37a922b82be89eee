"""
Work item service boundary.

The owning backlog/sprint services are authoritative for work-item state.
The engine only calls their mutation endpoints and never touches their
storage. Transient failures (network, 5xx, 429) are distinguished from
definitive rejections (4xx) so the executor can decide whether to retry.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol
from uuid import uuid4

import httpx

from intent_engine.models.wire import utc_now

logger = logging.getLogger("intent-engine.work-items")


class ServiceError(Exception):
    """The owning service rejected the request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientServiceError(ServiceError):
    """The request may succeed if repeated."""
    pass


class WorkItemService(Protocol):
    async def get_item(self, tenant_id: str, user_id: str, entity_type: str, entity_id: str) -> dict: ...

    async def update_status(self, tenant_id: str, user_id: str, entity_type: str, entity_id: str, status: str) -> dict: ...

    async def assign(self, tenant_id: str, user_id: str, entity_type: str, entity_id: str, assignee_id: Optional[str]) -> dict: ...

    async def update_priority(self, tenant_id: str, user_id: str, entity_type: str, entity_id: str, priority: int) -> dict: ...

    async def add_comment(self, tenant_id: str, user_id: str, entity_type: str, entity_id: str, content: str) -> dict: ...

    async def move_to_sprint(self, tenant_id: str, user_id: str, entity_type: str, entity_id: str, sprint_id: str) -> dict: ...

    async def archive(self, tenant_id: str, user_id: str, entity_type: str, entity_id: str) -> dict: ...

    async def close_sprint(self, tenant_id: str, user_id: str, sprint_id: str) -> dict: ...

    async def create_item(self, tenant_id: str, user_id: str, item: Dict[str, Any]) -> dict: ...

    async def create_sprint(self, tenant_id: str, user_id: str, sprint: Dict[str, Any]) -> dict: ...

    async def search(self, tenant_id: str, user_id: str, query: str, limit: int = 20) -> dict: ...

    async def report(self, tenant_id: str, user_id: str, scope_id: Optional[str] = None) -> dict: ...

    async def health_check(self) -> bool: ...


_PLURAL = {"story": "stories", "task": "tasks", "sprint": "sprints", "project": "projects"}


def _collection(entity_type: str) -> str:
    try:
        return _PLURAL[entity_type]
    except KeyError:
        raise ServiceError(f"Unsupported entity type: {entity_type}")


class HttpWorkItemService:
    """REST client for the backlog/sprint services."""

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        path: str,
        tenant_id: str,
        user_id: str,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        headers = {"X-Tenant-Id": tenant_id, "X-User-Id": user_id}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    json=json,
                    params=params,
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise TransientServiceError(f"{method} {path} failed: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientServiceError(
                f"{method} {path} returned HTTP {resp.status_code}", resp.status_code
            )
        if resp.status_code >= 400:
            raise ServiceError(
                f"{method} {path} rejected with HTTP {resp.status_code}: {resp.text[:200]}",
                resp.status_code,
            )
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ServiceError(f"{method} {path} returned a non-JSON body") from e

    async def get_item(self, tenant_id, user_id, entity_type, entity_id):
        return await self._request("GET", f"/{_collection(entity_type)}/{entity_id}", tenant_id, user_id)

    async def update_status(self, tenant_id, user_id, entity_type, entity_id, status):
        return await self._request(
            "PUT", f"/{_collection(entity_type)}/{entity_id}/status", tenant_id, user_id,
            json={"status": status},
        )

    async def assign(self, tenant_id, user_id, entity_type, entity_id, assignee_id):
        return await self._request(
            "PUT", f"/{_collection(entity_type)}/{entity_id}/assign", tenant_id, user_id,
            json={"assignee_id": assignee_id},
        )

    async def update_priority(self, tenant_id, user_id, entity_type, entity_id, priority):
        return await self._request(
            "PUT", f"/{_collection(entity_type)}/{entity_id}/priority", tenant_id, user_id,
            json={"priority": priority},
        )

    async def add_comment(self, tenant_id, user_id, entity_type, entity_id, content):
        return await self._request(
            "POST", f"/{_collection(entity_type)}/{entity_id}/comments", tenant_id, user_id,
            json={"author_id": user_id, "content": content},
        )

    async def move_to_sprint(self, tenant_id, user_id, entity_type, entity_id, sprint_id):
        return await self._request(
            "PUT", f"/{_collection(entity_type)}/{entity_id}/sprint", tenant_id, user_id,
            json={"sprint_id": sprint_id},
        )

    async def archive(self, tenant_id, user_id, entity_type, entity_id):
        return await self._request(
            "POST", f"/{_collection(entity_type)}/{entity_id}/archive", tenant_id, user_id
        )

    async def close_sprint(self, tenant_id, user_id, sprint_id):
        return await self._request("POST", f"/sprints/{sprint_id}/close", tenant_id, user_id)

    async def create_item(self, tenant_id, user_id, item):
        collection = _collection(item.get("item_type", "task"))
        return await self._request("POST", f"/{collection}", tenant_id, user_id, json=item)

    async def create_sprint(self, tenant_id, user_id, sprint):
        return await self._request("POST", "/sprints", tenant_id, user_id, json=sprint)

    async def search(self, tenant_id, user_id, query, limit=20):
        return await self._request(
            "GET", "/search", tenant_id, user_id, params={"q": query, "limit": limit}
        )

    async def report(self, tenant_id, user_id, scope_id=None):
        params = {"scope_id": scope_id} if scope_id else None
        return await self._request("GET", "/reports/progress", tenant_id, user_id, params=params)

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.base_url}/health")
            return resp.status_code == 200
        except httpx.HTTPError:
            return False


class InMemoryWorkItemService:
    """
    Tenant-partitioned in-process stand-in for the backlog/sprint services.
    Supports failure injection per operation for tests.
    """

    def __init__(self):
        self._items: Dict[str, Dict[str, dict]] = {}
        self._failures: Dict[str, List[Exception]] = {}
        self.calls: List[Dict[str, Any]] = []

    # --- fixtures ---

    def seed(self, tenant_id: str, item: dict) -> dict:
        record = {"status": "Ready", "assignee_id": None, "archived": False, **item}
        self._items.setdefault(tenant_id, {})[record["id"]] = record
        return record

    def inject_failures(self, operation: str, error: Exception, times: int = 1) -> None:
        self._failures.setdefault(operation, []).extend([error] * times)

    def item(self, tenant_id: str, entity_id: str) -> Optional[dict]:
        return self._items.get(tenant_id, {}).get(entity_id)

    # --- internals ---

    def _enter(self, operation: str, tenant_id: str, **details) -> None:
        self.calls.append({"operation": operation, "tenant_id": tenant_id, **details})
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _get(self, tenant_id: str, entity_id: str) -> dict:
        record = self._items.get(tenant_id, {}).get(entity_id)
        if record is None:
            raise ServiceError("Work item not found", 404)
        return record

    # --- WorkItemService ---

    async def get_item(self, tenant_id, user_id, entity_type, entity_id):
        self._enter("get_item", tenant_id, entity_id=entity_id)
        return dict(self._get(tenant_id, entity_id))

    async def update_status(self, tenant_id, user_id, entity_type, entity_id, status):
        self._enter("update_status", tenant_id, entity_id=entity_id, status=status)
        record = self._get(tenant_id, entity_id)
        record["status"] = status
        return dict(record)

    async def assign(self, tenant_id, user_id, entity_type, entity_id, assignee_id):
        self._enter("assign", tenant_id, entity_id=entity_id, assignee_id=assignee_id)
        record = self._get(tenant_id, entity_id)
        record["assignee_id"] = assignee_id
        return dict(record)

    async def update_priority(self, tenant_id, user_id, entity_type, entity_id, priority):
        self._enter("update_priority", tenant_id, entity_id=entity_id, priority=priority)
        record = self._get(tenant_id, entity_id)
        record["priority"] = priority
        return dict(record)

    async def add_comment(self, tenant_id, user_id, entity_type, entity_id, content):
        self._enter("add_comment", tenant_id, entity_id=entity_id)
        record = self._get(tenant_id, entity_id)
        comment = {"id": f"cmt_{uuid4().hex[:12]}", "author_id": user_id, "content": content}
        record.setdefault("comments", []).append(comment)
        return comment

    async def move_to_sprint(self, tenant_id, user_id, entity_type, entity_id, sprint_id):
        self._enter("move_to_sprint", tenant_id, entity_id=entity_id, sprint_id=sprint_id)
        self._get(tenant_id, sprint_id)
        record = self._get(tenant_id, entity_id)
        record["sprint_id"] = sprint_id
        return dict(record)

    async def archive(self, tenant_id, user_id, entity_type, entity_id):
        self._enter("archive", tenant_id, entity_id=entity_id)
        record = self._get(tenant_id, entity_id)
        if record["archived"]:
            raise ServiceError("Work item is already archived", 409)
        record["archived"] = True
        return dict(record)

    async def close_sprint(self, tenant_id, user_id, sprint_id):
        self._enter("close_sprint", tenant_id, entity_id=sprint_id)
        sprint = self._get(tenant_id, sprint_id)
        if sprint["status"] == "Closed":
            raise ServiceError("Sprint is already closed", 409)
        sprint["status"] = "Closed"
        returned = []
        for record in self._items.get(tenant_id, {}).values():
            if record.get("sprint_id") == sprint_id and record["status"] != "Done":
                record["sprint_id"] = None
                returned.append(record["id"])
        return {"id": sprint_id, "status": "Closed", "returned_to_backlog": returned}

    async def create_item(self, tenant_id, user_id, item):
        self._enter("create_item", tenant_id, title=item.get("title"))
        record = self.seed(tenant_id, {
            "id": f"{item.get('item_type', 'task')}_{uuid4().hex[:12]}",
            "type": item.get("item_type", "task"),
            "created_by": user_id,
            "created_at": utc_now().isoformat(),
            **{k: v for k, v in item.items() if k != "item_type"},
        })
        return dict(record)

    async def create_sprint(self, tenant_id, user_id, sprint):
        self._enter("create_sprint", tenant_id, title=sprint.get("name"))
        record = self.seed(tenant_id, {
            "id": f"sprint_{uuid4().hex[:12]}",
            "type": "sprint",
            "status": "Planned",
            "created_by": user_id,
            **sprint,
        })
        return dict(record)

    async def search(self, tenant_id, user_id, query, limit=20):
        self._enter("search", tenant_id, query=query)
        words = [w for w in query.lower().split() if w]
        matches = [
            dict(r) for r in self._items.get(tenant_id, {}).values()
            if any(w in str(r.get("title", "")).lower() for w in words)
        ]
        return {"items": matches[:limit], "total": len(matches)}

    async def report(self, tenant_id, user_id, scope_id=None):
        self._enter("report", tenant_id, scope_id=scope_id)
        items = [
            r for r in self._items.get(tenant_id, {}).values()
            if r.get("type") in ("story", "task")
            and (scope_id is None or r.get("sprint_id") == scope_id)
        ]
        by_status: Dict[str, int] = {}
        for r in items:
            by_status[r["status"]] = by_status.get(r["status"], 0) + 1
        return {"scope_id": scope_id, "total": len(items), "by_status": by_status}

    async def health_check(self) -> bool:
        return True
