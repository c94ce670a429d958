"""WorkFlowy operation facade.

Each public coroutine is one logical operation: authenticate, fetch a
fresh tree snapshot, read or mutate it, persist only when the tree is
dirty, and report the attempt to the structured logger. The whole body
runs inside ``with_retry`` under the policy of the operation's risk class;
nothing here retries on its own.

Every call gets its own session and snapshot, so concurrent operations
never share tree state.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Iterable, Protocol, TypeVar

from pydantic import ValidationError

from ..models import BatchNodeItem, ErrorClassification, ProjectionSpec, WorkFlowyError
from .errors import invalid_operation
from .projection import estimate_tokens, project, search as search_tree
from .retry import BATCH, QUICK, STANDARD, WRITE, RetryPolicy, with_retry
from .structured_logger import StructuredLogger
from .tree import DocumentTree, NodeRef

T = TypeVar("T")

DEFAULT_SEARCH_LIMIT = 10


class SessionLike(Protocol):
    async def __aenter__(self) -> Any: ...

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> Any: ...


class DocumentClient(Protocol):
    """What the facade needs from the document service."""

    async def authenticate(self, username: str | None, password: str | None) -> SessionLike: ...

    async def get_tree(self, session: Any) -> DocumentTree: ...


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _clip(text: str, limit: int = 50) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


class WorkFlowyClient:
    """Resilient, projection-aware WorkFlowy operations."""

    def __init__(
        self,
        document_client: DocumentClient,
        logger: StructuredLogger | None = None,
        username: str | None = None,
        password: str | None = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._client = document_client
        self._logger = logger or StructuredLogger()
        self._username = username
        self._password = password
        self._sleep = sleep
        self._rng = rng

    # -- plumbing ---------------------------------------------------------

    async def _retrying(
        self,
        operation: str,
        policy: RetryPolicy,
        attempt: Callable[[], Awaitable[T]],
    ) -> T:
        def on_retry(next_attempt: int, delay_s: float, classification: ErrorClassification) -> None:
            self._logger.retry(
                operation,
                next_attempt,
                policy.max_attempts,
                classification,
                {"delayMs": round(delay_s * 1000), "policy": policy.name},
            )

        try:
            return await with_retry(
                attempt,
                policy,
                on_retry=on_retry,
                sleep=self._sleep,
                rng=self._rng,
                operation_name=operation,
            )
        except WorkFlowyError as err:
            self._logger.error(
                f"Workflowy operation failed: {operation}",
                err,
                {"operation": operation, "attempts": err.attempts, "errorKind": err.kind.value},
            )
            raise

    async def _authenticate(self) -> SessionLike:
        async def attempt() -> SessionLike:
            start = time.perf_counter()
            self._logger.debug(
                "Creating authenticated client",
                {"username": "[PROVIDED]" if self._username else "[NOT_PROVIDED]"},
            )
            session = await self._client.authenticate(self._username, self._password)
            self._logger.performance("authentication", _elapsed_ms(start), {"success": True})
            return session

        return await self._retrying("authenticate", QUICK, attempt)

    async def _operate(
        self,
        operation: str,
        policy: RetryPolicy,
        body: Callable[[DocumentTree], Awaitable[tuple[T, dict[str, Any]]]],
        context: dict[str, Any] | None = None,
    ) -> T:
        """Run ``body`` against a fresh snapshot under ``policy``.

        ``body`` returns ``(result, extra_log_context)``.
        """
        context = dict(context or {})

        async def attempt() -> T:
            start = time.perf_counter()
            try:
                session = await self._authenticate()
                async with session:
                    tree = await self._client.get_tree(session)
                    result, extra = await body(tree)
            except Exception as exc:
                self._logger.record_api_call(operation, _elapsed_ms(start), False, {**context, "error": str(exc)})
                raise
            self._logger.record_api_call(operation, _elapsed_ms(start), True, {**context, **extra})
            return result

        return await self._retrying(operation, policy, attempt)

    @staticmethod
    async def _persist(tree: DocumentTree) -> dict[str, Any]:
        if tree.is_dirty():
            return await tree.persist()
        return {"saved": False, "operations": 0, "created": {}}

    @staticmethod
    def _parent_or_root(tree: DocumentTree, parent_id: str | None) -> NodeRef:
        return tree.root if parent_id is None else tree.require(parent_id)

    @staticmethod
    def _spec_context(spec: ProjectionSpec) -> dict[str, Any]:
        return {
            "maxDepth": spec.max_depth,
            "includeFields": ",".join(spec.include_fields),
            "previewLength": spec.preview_length,
        }

    # -- reads ------------------------------------------------------------

    async def get_root(self, spec: ProjectionSpec | None = None) -> list[dict[str, Any]]:
        """Projected top-level nodes of the outline."""
        spec = spec or ProjectionSpec()

        async def body(tree: DocumentTree) -> tuple[list[dict[str, Any]], dict[str, Any]]:
            items = [project(child, spec, 0, self._logger) for child in tree.root.children]
            return items, {"itemCount": len(items)}

        return await self._operate("getRootItems", STANDARD, body, self._spec_context(spec))

    async def get_children(self, parent_id: str, spec: ProjectionSpec | None = None) -> list[dict[str, Any]]:
        """Projected children of ``parent_id``."""
        spec = spec or ProjectionSpec()

        async def body(tree: DocumentTree) -> tuple[list[dict[str, Any]], dict[str, Any]]:
            parent = tree.require(parent_id)
            items = [project(child, spec, 0, self._logger) for child in parent.children]
            return items, {"itemCount": len(items)}

        return await self._operate(
            "getChildItems", STANDARD, body, {"parentId": parent_id, **self._spec_context(spec)}
        )

    async def get_by_id(self, node_id: str, spec: ProjectionSpec | None = None) -> dict[str, Any]:
        """One projected node (with its subtree down to ``spec.max_depth``)."""
        spec = spec or ProjectionSpec()

        async def body(tree: DocumentTree) -> tuple[dict[str, Any], dict[str, Any]]:
            return project(tree.require(node_id), spec, 0, self._logger), {}

        return await self._operate("getNodeById", STANDARD, body, {"nodeId": node_id, **self._spec_context(spec)})

    async def search(
        self,
        query: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
        spec: ProjectionSpec | None = None,
    ) -> list[dict[str, Any]]:
        """Nodes whose name contains ``query`` (case-insensitive), at most ``limit``."""
        spec = spec or ProjectionSpec()
        if limit < 1:
            raise invalid_operation("limit must be at least 1")

        async def body(tree: DocumentTree) -> tuple[list[dict[str, Any]], dict[str, Any]]:
            results = search_tree(tree.root, query, limit, spec, self._logger)
            return results, {"resultCount": len(results), "estimatedTokens": estimate_tokens(results)}

        return await self._operate(
            "search", STANDARD, body, {"query": query, "maxResults": limit, **self._spec_context(spec)}
        )

    # -- writes -----------------------------------------------------------

    async def create(self, parent_id: str | None, name: str, note: str | None = None) -> dict[str, Any]:
        """Create one node under ``parent_id`` (``None`` is the account root)."""

        async def body(tree: DocumentTree) -> tuple[dict[str, Any], dict[str, Any]]:
            node = self._parent_or_root(tree, parent_id).create_child(name=name, note=note)
            await self._persist(tree)
            return {"success": True, "id": node.id, "parentId": parent_id, "name": name}, {"nodeId": node.id}

        return await self._operate(
            "createNode", WRITE, body, {"parentId": parent_id, "name": _clip(name), "hasDescription": bool(note)}
        )

    async def update(self, node_id: str, name: str | None = None, note: str | None = None) -> dict[str, Any]:
        """Rename and/or re-note a node. Nothing is sent when both are ``None``."""

        async def body(tree: DocumentTree) -> tuple[dict[str, Any], dict[str, Any]]:
            node = tree.require(node_id)
            if name is not None:
                node.rename(name)
            if note is not None:
                node.set_note(note)
            ack = await self._persist(tree)
            return {"success": True, "id": node_id, "saved": ack["saved"]}, {}

        return await self._operate(
            "updateNode",
            WRITE,
            body,
            {"nodeId": node_id, "hasNameUpdate": name is not None, "hasDescriptionUpdate": note is not None},
        )

    async def delete(self, node_id: str) -> dict[str, Any]:
        """Delete a node and its whole subtree."""

        async def body(tree: DocumentTree) -> tuple[dict[str, Any], dict[str, Any]]:
            tree.require(node_id).delete()
            await self._persist(tree)
            return {"success": True, "id": node_id}, {}

        return await self._operate("deleteNode", WRITE, body, {"nodeId": node_id})

    async def set_completed(self, node_id: str, completed: bool) -> dict[str, Any]:
        """Mark a node complete or incomplete."""

        async def body(tree: DocumentTree) -> tuple[dict[str, Any], dict[str, Any]]:
            tree.require(node_id).set_completed(completed)
            ack = await self._persist(tree)
            return {"success": True, "id": node_id, "completed": completed, "saved": ack["saved"]}, {}

        return await self._operate("toggleComplete", WRITE, body, {"nodeId": node_id, "completed": completed})

    async def move(self, node_id: str, new_parent_id: str | None, priority: int | None = None) -> dict[str, Any]:
        """Move a node under ``new_parent_id``, optionally at ``priority``."""

        async def body(tree: DocumentTree) -> tuple[dict[str, Any], dict[str, Any]]:
            node = tree.require(node_id)
            node.move(self._parent_or_root(tree, new_parent_id), priority)
            await self._persist(tree)
            return {
                "success": True,
                "id": node_id,
                "parentId": new_parent_id,
                "priority": node.priority,
            }, {}

        return await self._operate(
            "moveNode", WRITE, body, {"nodeId": node_id, "newParentId": new_parent_id, "priority": priority}
        )

    async def batch_create(
        self,
        parent_id: str | None,
        items: Iterable[BatchNodeItem | dict[str, Any]],
    ) -> dict[str, Any]:
        """Create several children of ``parent_id`` and persist them together."""
        try:
            requests = [BatchNodeItem.model_validate(item) for item in items]
        except ValidationError as err:
            raise invalid_operation(f"Invalid batch item: {err}") from err
        if not requests:
            raise invalid_operation("batch_create needs at least one item")

        async def body(tree: DocumentTree) -> tuple[dict[str, Any], dict[str, Any]]:
            start = time.perf_counter()
            parent = self._parent_or_root(tree, parent_id)
            created = [parent.create_child(name=r.name, note=r.note) for r in requests]
            await self._persist(tree)
            nodes = [{"id": ref.id, "name": ref.name, "note": ref.note} for ref in created]
            return {
                "success": True,
                "nodesCreated": len(nodes),
                "nodes": nodes,
                "parentId": parent_id,
                "timing": f"{round(_elapsed_ms(start))}ms",
            }, {"nodesCreated": len(nodes)}

        return await self._operate("batchCreateNodes", BATCH, body, {"parentId": parent_id, "itemCount": len(requests)})

    # -- health -----------------------------------------------------------

    async def check_service_health(self) -> dict[str, Any]:
        """Probe authentication; reports unavailability instead of raising."""
        start = time.perf_counter()
        try:
            session = await self._authenticate()
            async with session:
                pass
        except WorkFlowyError as err:
            return {"available": False, "error": str(err), "kind": err.kind.value}
        return {"available": True, "responseTime": round(_elapsed_ms(start))}
