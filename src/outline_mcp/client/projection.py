"""Projection of outline subtrees into bounded, field-filtered records.

A projected node is a plain dict holding only the requested fields plus an
``items`` list of projected children, cut off at ``max_depth``. Metadata
fields (parent, siblings, hierarchy, timestamps, mirror/sharing flags) are
hydrated per field: a hydrator that fails is logged and its field is left
out, everything else still comes back.

Nodes may be arena ``NodeRef`` handles or plain nested dicts shaped like
WorkFlowy's JSON export (``items`` lists). Only ``NodeRef`` can hydrate
relational metadata; dict nodes just copy whatever keys they carry.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Union

from ..models import STRUCTURAL_FIELDS, InvalidOperationError, ProjectionSpec
from .structured_logger import StructuredLogger
from .tree import NodeRef

PREVIEW_MARKER = "..."
PREVIEW_FIELDS = frozenset({"name", "note"})

CHARS_PER_TOKEN = 4
LARGE_RESULT_TOKENS = 20_000

_BASE_ATTRS = {
    "id": "id",
    "name": "name",
    "note": "note",
    "isCompleted": "is_completed",
}

_default_logger = StructuredLogger()

Node = Union[NodeRef, Mapping[str, Any]]


def truncate_preview(value: Any, preview_length: int | None) -> Any:
    """Cut strings longer than ``preview_length`` and append the marker."""
    if not preview_length or not isinstance(value, str) or len(value) <= preview_length:
        return value
    return value[:preview_length] + PREVIEW_MARKER


def estimate_tokens(payload: Any) -> int:
    """Rough token count of ``payload`` once serialized (4 chars per token)."""
    text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
    return math.ceil(len(text) / CHARS_PER_TOKEN)


# ---------------------------------------------------------------------------
# Metadata hydration
# ---------------------------------------------------------------------------


def _visible_parent(node: NodeRef) -> NodeRef | None:
    parent = node.parent
    if parent is None or parent.is_root:
        return None
    return parent


def _hierarchy(node: NodeRef) -> list[str]:
    names: list[str] = []
    current = _visible_parent(node)
    while current is not None:
        names.append(current.name)
        current = _visible_parent(current)
    names.reverse()
    return names


def _siblings(node: NodeRef) -> list[dict[str, Any]]:
    parent = node.parent
    if parent is None:
        return []
    return [
        {"id": s.id, "name": s.name, "priority": s.priority}
        for s in parent.children
        if s != node
    ]


def _sibling_count(node: NodeRef) -> int:
    parent = node.parent
    return 0 if parent is None else len(parent.children)


def _parent_id(node: NodeRef) -> str | None:
    parent = _visible_parent(node)
    return parent.id if parent is not None else None


def _parent_name(node: NodeRef) -> str | None:
    parent = _visible_parent(node)
    return parent.name if parent is not None else None


METADATA_HYDRATORS: dict[str, Callable[[NodeRef], Any]] = {
    "parentId": _parent_id,
    "parentName": _parent_name,
    "priority": lambda n: n.priority,
    "lastModifiedAt": lambda n: n.last_modified_at,
    "completedAt": lambda n: n.completed_at,
    "isMirror": lambda n: n.is_mirror,
    "originalId": lambda n: n.original_id,
    "isSharedViaUrl": lambda n: n.is_shared_via_url,
    "sharedUrl": lambda n: n.shared_url,
    "hierarchy": _hierarchy,
    "siblings": _siblings,
    "siblingCount": _sibling_count,
}


@dataclass(frozen=True)
class HydrationResult:
    field: str
    ok: bool
    value: Any = None
    error: BaseException | None = None


def hydrate_field(node: NodeRef, field: str) -> HydrationResult:
    hydrator = METADATA_HYDRATORS.get(field)
    if hydrator is None:
        return HydrationResult(field, False, error=KeyError(field))
    try:
        return HydrationResult(field, True, hydrator(node))
    except Exception as exc:  # noqa: BLE001 - one field must not sink the node
        return HydrationResult(field, False, error=exc)


def hydrate_metadata(
    node: NodeRef,
    fields: tuple[str, ...],
    logger: StructuredLogger | None = None,
) -> dict[str, Any]:
    """Hydrate each requested metadata field independently.

    Failed fields are logged and omitted from the returned mapping.
    """
    log = logger or _default_logger
    hydrated: dict[str, Any] = {}
    for field in fields:
        result = hydrate_field(node, field)
        if result.ok:
            hydrated[field] = result.value
            continue
        log.warn(
            "Metadata hydration failed",
            {
                "nodeId": node.id,
                "field": field,
                "error": f"{type(result.error).__name__}: {result.error}",
            },
        )
    return hydrated


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


def _children_of(node: Node) -> list[Node]:
    if isinstance(node, NodeRef):
        return node.children
    return list(node.get("items") or node.get("children") or [])


def _name_of(node: Node) -> str:
    if isinstance(node, NodeRef):
        return node.name
    return str(node.get("name") or "")


def project(
    node: Node,
    spec: ProjectionSpec,
    current_depth: int = 0,
    logger: StructuredLogger | None = None,
) -> dict[str, Any]:
    """Project ``node`` (and children down to ``spec.max_depth``) into a dict.

    Never mutates the source node or tree.
    """
    projected: dict[str, Any] = {}

    hydrated: dict[str, Any] = {}
    if isinstance(node, NodeRef) and spec.wants_metadata:
        hydrated = hydrate_metadata(node, spec.metadata_fields, logger)

    for field in spec.include_fields:
        if field in STRUCTURAL_FIELDS:
            continue
        if isinstance(node, NodeRef):
            if field in _BASE_ATTRS:
                value = getattr(node, _BASE_ATTRS[field])
            elif field in hydrated:
                value = hydrated[field]
            else:
                continue
        else:
            if field not in node:
                continue
            value = node[field]
        if field in PREVIEW_FIELDS:
            value = truncate_preview(value, spec.preview_length)
        projected[field] = value

    children = _children_of(node)
    if current_depth < spec.max_depth and children:
        projected["items"] = [project(child, spec, current_depth + 1, logger) for child in children]
    else:
        projected["items"] = []
    return projected


def search(
    root: Node,
    query: str,
    limit: int,
    spec: ProjectionSpec,
    logger: StructuredLogger | None = None,
) -> list[dict[str, Any]]:
    """Depth-first, case-insensitive name search returning at most ``limit`` hits.

    Each hit is projected from depth 0, so its own subtree follows
    ``spec.max_depth`` no matter how deep the hit sits. A WARN record is
    emitted when the serialized result looks larger than
    ``LARGE_RESULT_TOKENS``.
    """
    if limit < 1:
        raise InvalidOperationError("limit must be at least 1")

    log = logger or _default_logger
    needle = query.lower()
    results: list[dict[str, Any]] = []
    stack: list[Node] = list(_children_of(root))
    examined = 0

    while stack and len(results) < limit:
        current = stack.pop()
        examined += 1
        if needle in _name_of(current).lower():
            results.append(project(current, spec, 0, logger))
        if len(results) < limit:
            stack.extend(_children_of(current))

    tokens = estimate_tokens(results)
    if tokens > LARGE_RESULT_TOKENS:
        log.warn(
            "Large search result detected",
            {
                "query": query,
                "estimatedTokens": tokens,
                "resultCount": len(results),
                "nodesExamined": examined,
            },
        )
    return results
