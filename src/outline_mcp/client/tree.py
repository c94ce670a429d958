"""In-memory WorkFlowy document tree.

The tree is a flat arena: every node is a ``DocumentNode`` record in one
list, parents and children refer to each other by arena index, and an id
index gives O(1) lookups. Index 0 is the virtual account root (WorkFlowy
has no real root node; top-level bullets hang off it).

Callers work through ``NodeRef`` handles. Mutations are applied to the
arena immediately and queued as pending operations; ``persist()`` hands
the queue to the transport and swaps temporary ids of created nodes for
the ids the server assigned.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

from ..models import InvalidOperationError
from .errors import not_found

ROOT_ID = "Root"
TEMP_ID_PREFIX = "tmp-"


@dataclass
class DocumentNode:
    id: str
    name: str = ""
    note: str | None = None
    is_completed: bool = False
    priority: int = 0
    last_modified_at: Any = None
    completed_at: Any = None
    is_mirror: bool = False
    original_id: str | None = None
    is_shared_via_url: bool = False
    shared_url: str | None = None
    parent: int | None = None
    children: list[int] = field(default_factory=list)
    deleted: bool = False


@dataclass(frozen=True)
class PendingOperation:
    """One queued mutation, replayed against the REST API on persist."""

    kind: str  # create | update | complete | uncomplete | move | delete
    node_id: str
    payload: dict[str, Any] = field(default_factory=dict)


# Receives the queue, returns {temporary_id: server_id} for created nodes.
Saver = Callable[[list[PendingOperation]], Awaitable[dict[str, str]]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _pick(record: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in record and record[key] is not None:
            return record[key]
    return default


class DocumentTree:
    """Arena-backed outline snapshot owned by one operation."""

    def __init__(self, saver: Saver | None = None) -> None:
        self._nodes: list[DocumentNode] = [DocumentNode(id=ROOT_ID)]
        self._index: dict[str, int] = {ROOT_ID: 0}
        self._pending: list[PendingOperation] = []
        self._saver = saver

    # -- construction -----------------------------------------------------

    @classmethod
    def from_export(cls, flat_nodes: Iterable[dict[str, Any]], saver: Saver | None = None) -> "DocumentTree":
        """Build from the flat ``/nodes-export`` node list.

        Nodes whose parent is absent from the payload become top-level, as
        does any node whose parent chain would lead back to itself.
        Sibling groups are ordered by WorkFlowy ``priority``.
        """
        tree = cls(saver)
        records = [n for n in flat_nodes if isinstance(n, dict) and n.get("id")]

        # Pass 1: allocate arena slots
        for record in records:
            if record["id"] in tree._index:
                continue
            tree._index[record["id"]] = len(tree._nodes)
            tree._nodes.append(cls._record_to_node(record))

        # Pass 2: link children to parents
        for record in records:
            idx = tree._index[record["id"]]
            node = tree._nodes[idx]
            if node.parent is not None:
                continue
            parent_id = record.get("parent_id") or record.get("parentId")
            parent_idx = tree._index.get(parent_id, 0) if parent_id else 0
            if parent_idx == idx or tree._is_ancestor(idx, parent_idx):
                parent_idx = 0
            node.parent = parent_idx
            tree._nodes[parent_idx].children.append(idx)

        # Pass 3: sort each sibling group by priority
        for node in tree._nodes:
            node.children.sort(key=lambda i: tree._nodes[i].priority)
        return tree

    @classmethod
    def from_nested(cls, items: Iterable[dict[str, Any]], saver: Saver | None = None) -> "DocumentTree":
        """Build from nested dicts carrying ``items`` (or ``children``) lists."""
        tree = cls(saver)

        def add(record: dict[str, Any], parent_idx: int, position: int) -> None:
            node = cls._record_to_node(record)
            if "priority" not in record:
                node.priority = position
            node.parent = parent_idx
            idx = len(tree._nodes)
            tree._nodes.append(node)
            tree._index.setdefault(node.id, idx)
            tree._nodes[parent_idx].children.append(idx)
            for pos, child in enumerate(record.get("items") or record.get("children") or []):
                add(child, idx, pos)

        for pos, item in enumerate(items):
            add(item, 0, pos)
        return tree

    @staticmethod
    def _record_to_node(record: dict[str, Any]) -> DocumentNode:
        completed_at = _pick(record, "completedAt", "completed_at")
        return DocumentNode(
            id=str(record["id"]),
            name=_pick(record, "name", "nm", default="") or "",
            note=_pick(record, "note", "no"),
            is_completed=bool(_pick(record, "isCompleted", "completed", "cp", default=completed_at is not None)),
            priority=int(_pick(record, "priority", default=0)),
            last_modified_at=_pick(record, "lastModifiedAt", "modifiedAt", "modified_at"),
            completed_at=completed_at,
            is_mirror=bool(_pick(record, "isMirror", "is_mirror", default=False)),
            original_id=_pick(record, "originalId", "original_id"),
            is_shared_via_url=bool(_pick(record, "isSharedViaUrl", "is_shared_via_url", default=False)),
            shared_url=_pick(record, "sharedUrl", "shared_url"),
        )

    # -- lookup -----------------------------------------------------------

    @property
    def root(self) -> "NodeRef":
        return NodeRef(self, 0)

    def get(self, node_id: str) -> "NodeRef | None":
        idx = self._index.get(node_id)
        if idx is None or self._nodes[idx].deleted:
            return None
        return NodeRef(self, idx)

    def require(self, node_id: str) -> "NodeRef":
        """Like ``get`` but raises ResourceNotFound for unknown ids."""
        ref = self.get(node_id)
        if ref is None:
            raise not_found(node_id)
        return ref

    def __len__(self) -> int:
        return sum(1 for n in self._nodes[1:] if not n.deleted)

    def __contains__(self, node_id: object) -> bool:
        return isinstance(node_id, str) and self.get(node_id) is not None

    # -- persistence ------------------------------------------------------

    def is_dirty(self) -> bool:
        return bool(self._pending)

    @property
    def pending(self) -> tuple[PendingOperation, ...]:
        return tuple(self._pending)

    async def persist(self) -> dict[str, Any]:
        """Flush queued mutations. Returns an acknowledgment dict."""
        if not self._pending:
            return {"saved": False, "operations": 0, "created": {}}
        if self._saver is None:
            raise RuntimeError("DocumentTree has no saver; it was not fetched through a session")

        operations = list(self._pending)
        id_map = await self._saver(operations) or {}
        for temp_id, real_id in id_map.items():
            idx = self._index.pop(temp_id, None)
            if idx is None:
                continue
            self._nodes[idx].id = real_id
            self._index[real_id] = idx
        self._pending.clear()
        return {"saved": True, "operations": len(operations), "created": dict(id_map)}

    # -- internals used by NodeRef ----------------------------------------

    def _node(self, idx: int) -> DocumentNode:
        return self._nodes[idx]

    def _queue(self, kind: str, node_id: str, **payload: Any) -> None:
        self._pending.append(PendingOperation(kind, node_id, payload))

    def _renumber(self, parent_idx: int) -> None:
        for position, child_idx in enumerate(self._nodes[parent_idx].children):
            self._nodes[child_idx].priority = position

    def _is_ancestor(self, maybe_ancestor: int, idx: int) -> bool:
        current = self._nodes[idx].parent
        while current is not None:
            if current == maybe_ancestor:
                return True
            current = self._nodes[current].parent
        return False

    def _attach(self, idx: int, parent_idx: int, priority: int | None) -> None:
        siblings = self._nodes[parent_idx].children
        if priority is None or priority >= len(siblings):
            siblings.append(idx)
        else:
            siblings.insert(max(priority, 0), idx)
        self._nodes[idx].parent = parent_idx
        self._renumber(parent_idx)

    def _detach(self, idx: int) -> None:
        parent_idx = self._nodes[idx].parent
        if parent_idx is None:
            return
        self._nodes[parent_idx].children.remove(idx)
        self._renumber(parent_idx)

    def _drop_subtree(self, idx: int) -> None:
        stack = [idx]
        while stack:
            current = stack.pop()
            node = self._nodes[current]
            node.deleted = True
            if self._index.get(node.id) == current:
                del self._index[node.id]
            stack.extend(node.children)


class NodeRef:
    """Typed handle onto one arena slot."""

    __slots__ = ("_tree", "_idx")

    def __init__(self, tree: DocumentTree, idx: int) -> None:
        self._tree = tree
        self._idx = idx

    def __eq__(self, other: object) -> bool:
        return isinstance(other, NodeRef) and other._tree is self._tree and other._idx == self._idx

    def __hash__(self) -> int:
        return hash((id(self._tree), self._idx))

    def __repr__(self) -> str:
        return f"NodeRef(id={self.id!r}, name={self.name!r})"

    @property
    def tree(self) -> DocumentTree:
        return self._tree

    @property
    def record(self) -> DocumentNode:
        return self._tree._node(self._idx)

    @property
    def is_root(self) -> bool:
        return self._idx == 0

    # read accessors

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def note(self) -> str | None:
        return self.record.note

    @property
    def is_completed(self) -> bool:
        return self.record.is_completed

    @property
    def priority(self) -> int:
        return self.record.priority

    @property
    def last_modified_at(self) -> Any:
        return self.record.last_modified_at

    @property
    def completed_at(self) -> Any:
        return self.record.completed_at

    @property
    def is_mirror(self) -> bool:
        return self.record.is_mirror

    @property
    def original_id(self) -> str | None:
        return self.record.original_id

    @property
    def is_shared_via_url(self) -> bool:
        return self.record.is_shared_via_url

    @property
    def shared_url(self) -> str | None:
        return self.record.shared_url

    @property
    def children(self) -> list["NodeRef"]:
        return [NodeRef(self._tree, i) for i in self.record.children]

    @property
    def parent(self) -> "NodeRef | None":
        parent_idx = self.record.parent
        return None if parent_idx is None else NodeRef(self._tree, parent_idx)

    # mutations

    def _live(self) -> DocumentNode:
        node = self.record
        if node.deleted:
            raise not_found(node.id)
        if self.is_root:
            raise InvalidOperationError("The account root cannot be modified")
        return node

    def _touch(self, node: DocumentNode) -> None:
        node.last_modified_at = _now()

    def rename(self, text: str) -> None:
        node = self._live()
        node.name = text
        self._touch(node)
        self._tree._queue("update", node.id, name=text)

    def set_note(self, text: str) -> None:
        node = self._live()
        node.note = text
        self._touch(node)
        self._tree._queue("update", node.id, note=text)

    def set_completed(self, completed: bool = True) -> None:
        node = self._live()
        if node.is_completed == completed:
            return
        node.is_completed = completed
        node.completed_at = _now() if completed else None
        self._touch(node)
        self._tree._queue("complete" if completed else "uncomplete", node.id)

    def move(self, new_parent: "NodeRef", priority: int | None = None) -> None:
        node = self._live()
        if new_parent._tree is not self._tree or new_parent.record.deleted:
            raise InvalidOperationError("Target parent does not belong to this tree")
        if new_parent._idx == self._idx or self._tree._is_ancestor(self._idx, new_parent._idx):
            raise InvalidOperationError(f"Cannot move node {node.id} into its own subtree")
        self._tree._detach(self._idx)
        self._tree._attach(self._idx, new_parent._idx, priority)
        self._touch(node)
        self._tree._queue(
            "move",
            node.id,
            parent_id=None if new_parent.is_root else new_parent.id,
            position="top" if priority == 0 else "bottom",
        )

    def delete(self) -> None:
        node = self._live()
        node_id = node.id
        self._tree._detach(self._idx)
        self._tree._drop_subtree(self._idx)
        self._tree._queue("delete", node_id)

    def create_child(self, name: str = "", note: str | None = None, priority: int | None = None) -> "NodeRef":
        if self.record.deleted:
            raise not_found(self.record.id)
        temp_id = f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"
        child = DocumentNode(id=temp_id, name=name, note=note, last_modified_at=_now())
        idx = len(self._tree._nodes)
        self._tree._nodes.append(child)
        self._tree._index[temp_id] = idx
        self._tree._attach(idx, self._idx, priority)
        self._tree._queue(
            "create",
            temp_id,
            parent_id=None if self.is_root else self.id,
            name=name,
            note=note,
            position="top" if priority == 0 else "bottom",
        )
        return NodeRef(self._tree, idx)
