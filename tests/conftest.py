"""Shared fixtures: a sample outline, an in-memory document client, a captured logger."""

from __future__ import annotations

import copy
import io
import json
from dataclasses import dataclass, field
from typing import Any

import pytest

from outline_mcp.client.api_client import WorkFlowyClient
from outline_mcp.client.structured_logger import LogLevel, StructuredLogger
from outline_mcp.client.tree import DocumentTree, PendingOperation

SAMPLE_OUTLINE: list[dict[str, Any]] = [
    {
        "id": "root-node-1",
        "name": "Project Management",
        "note": "Main project tracking node",
        "isCompleted": False,
        "items": [
            {
                "id": "child-1-1",
                "name": "Sprint Planning",
                "note": "Weekly sprint planning tasks",
                "isCompleted": False,
                "items": [
                    {
                        "id": "grandchild-1-1-1",
                        "name": "Sprint 1 Tasks",
                        "note": "First sprint detailed tasks",
                        "isCompleted": False,
                        "items": [
                            {
                                "id": "great-grandchild-1-1-1-1",
                                "name": "User Story 1",
                                "note": "As a user I want to...",
                                "isCompleted": True,
                                "items": [],
                            }
                        ],
                    },
                    {
                        "id": "grandchild-1-1-2",
                        "name": "Sprint 2 Tasks",
                        "note": "Second sprint planning",
                        "isCompleted": False,
                        "items": [],
                    },
                ],
            },
            {
                "id": "child-1-2",
                "name": "Code Reviews",
                "note": "Pending code reviews",
                "isCompleted": True,
                "items": [
                    {
                        "id": "grandchild-1-2-1",
                        "name": "PR #123 Review",
                        "note": "Feature branch review",
                        "isCompleted": True,
                        "items": [],
                    }
                ],
            },
        ],
    },
    {
        "id": "root-node-2",
        "name": "Personal Goals",
        "note": "2024 personal objectives",
        "isCompleted": False,
        "items": [
            {
                "id": "child-2-1",
                "name": "Learn TypeScript",
                "note": "Deep dive into TS features",
                "isCompleted": False,
                "items": [],
            }
        ],
    },
]


@pytest.fixture
def outline() -> list[dict[str, Any]]:
    return copy.deepcopy(SAMPLE_OUTLINE)


@pytest.fixture
def tree(outline: list[dict[str, Any]]) -> DocumentTree:
    return DocumentTree.from_nested(outline)


class FakeSession:
    def __init__(self) -> None:
        self.closed = False

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.closed = True


@dataclass
class FakeDocumentClient:
    """In-memory stand-in for the WorkFlowy transport.

    ``auth_failures`` / ``tree_failures`` / ``save_failures`` are consumed one
    per call; when a list is empty the call succeeds.
    """

    outline: list[dict[str, Any]]
    auth_failures: list[BaseException] = field(default_factory=list)
    tree_failures: list[BaseException] = field(default_factory=list)
    save_failures: list[BaseException] = field(default_factory=list)
    auth_calls: int = 0
    tree_calls: int = 0
    saved: list[list[PendingOperation]] = field(default_factory=list)
    sessions: list[FakeSession] = field(default_factory=list)
    credentials: list[tuple[str | None, str | None]] = field(default_factory=list)
    _next_id: int = 0

    async def authenticate(self, username: str | None, password: str | None) -> FakeSession:
        self.auth_calls += 1
        self.credentials.append((username, password))
        if self.auth_failures:
            raise self.auth_failures.pop(0)
        session = FakeSession()
        self.sessions.append(session)
        return session

    async def get_tree(self, session: FakeSession) -> DocumentTree:
        self.tree_calls += 1
        if self.tree_failures:
            raise self.tree_failures.pop(0)
        return DocumentTree.from_nested(copy.deepcopy(self.outline), saver=self._save)

    async def _save(self, operations: list[PendingOperation]) -> dict[str, str]:
        if self.save_failures:
            raise self.save_failures.pop(0)
        self.saved.append(list(operations))
        id_map: dict[str, str] = {}
        for op in operations:
            if op.kind == "create":
                self._next_id += 1
                id_map[op.node_id] = f"created-{self._next_id}"
        return id_map


@dataclass
class SleepRecorder:
    delays: list[float] = field(default_factory=list)

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_stream: io.StringIO) -> StructuredLogger:
    return StructuredLogger(LogLevel.DEBUG, "test", log_stream)


def read_log(stream: io.StringIO) -> list[dict[str, Any]]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


@pytest.fixture
def document_client(outline: list[dict[str, Any]]) -> FakeDocumentClient:
    return FakeDocumentClient(outline)


@pytest.fixture
def facade(
    document_client: FakeDocumentClient,
    logger: StructuredLogger,
    sleeper: SleepRecorder,
) -> WorkFlowyClient:
    return WorkFlowyClient(
        document_client,
        logger,
        username="test@example.com",
        password="testpass",
        sleep=sleeper,
        rng=lambda: 0.5,
    )
