"""WorkFlowy outline MCP server implementation using FastMCP."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastmcp import FastMCP

from .client import WorkFlowyClient, WorkFlowyClientCore, create_logger
from .config import ServerConfig, setup_logging
from .models import BatchNodeItem, ProjectionSpec

logger = logging.getLogger(__name__)

_client: WorkFlowyClient | None = None


def get_client() -> WorkFlowyClient:
    """Get the WorkFlowy facade built by the server lifespan."""
    if _client is None:
        raise RuntimeError("WorkFlowy client not initialized. Server not started properly.")
    return _client


def build_client(config: ServerConfig) -> WorkFlowyClient:
    """Wire transport, logger and facade from configuration."""
    return WorkFlowyClient(
        WorkFlowyClientCore(config.get_api_config()),
        create_logger(config.environment),
        username=config.username,
        password=config.password_value(),
    )


@asynccontextmanager
async def lifespan(_app: FastMCP):  # type: ignore[no-untyped-def]
    """Manage server lifecycle."""
    global _client

    logger.info("Starting WorkFlowy outline MCP server")
    config = ServerConfig()  # type: ignore[call-arg]
    _client = build_client(config)
    logger.info(f"WorkFlowy client initialized with base URL: {config.api_url}")

    yield

    logger.info("Shutting down WorkFlowy outline MCP server")
    _client = None


mcp = FastMCP(
    "WorkFlowy Outline MCP Server",
    version="0.1.0",
    instructions=(
        "Read, search and edit a WorkFlowy outline. Reads accept max_depth, "
        "include_fields and preview_length to keep responses small."
    ),
    lifespan=lifespan,
)


def _spec(
    max_depth: int = 0,
    include_fields: list[str] | None = None,
    preview_length: int | None = None,
) -> ProjectionSpec:
    return ProjectionSpec(max_depth=max_depth, include_fields=include_fields, preview_length=preview_length)


@mcp.tool(
    name="list_nodes",
    description=(
        "List nodes in Workflowy. With parent_id, lists that node's children; "
        "without it, lists the top-level nodes."
    ),
)
async def list_nodes(
    parent_id: str | None = None,
    max_depth: int = 0,
    include_fields: list[str] | None = None,
    preview_length: int | None = None,
) -> list[dict[str, Any]]:
    """List nodes with depth and field control.

    Args:
        parent_id: Parent whose children to list (omit for top-level nodes)
        max_depth: How many levels of children to include (0 = none)
        include_fields: Fields per node; metadata fields such as parentName,
            hierarchy, siblings or siblingCount are hydrated on demand
        preview_length: Truncate name/note to this many characters
    """
    client = get_client()
    spec = _spec(max_depth, include_fields, preview_length)
    if parent_id:
        return await client.get_children(parent_id, spec)
    return await client.get_root(spec)


@mcp.tool(name="get_node", description="Get a single Workflowy node by ID")
async def get_node(
    node_id: str,
    max_depth: int = 0,
    include_fields: list[str] | None = None,
    preview_length: int | None = None,
) -> dict[str, Any]:
    return await get_client().get_by_id(node_id, _spec(max_depth, include_fields, preview_length))


@mcp.tool(name="search_nodes", description="Search Workflowy nodes by name (case-insensitive)")
async def search_nodes(
    query: str,
    limit: int = 10,
    max_depth: int = 0,
    include_fields: list[str] | None = None,
    preview_length: int | None = None,
) -> list[dict[str, Any]]:
    """Search node names.

    Args:
        query: Text to look for in node names
        limit: Maximum number of matches to return
        max_depth: Levels of children to include under each match
        include_fields: Fields per node
        preview_length: Truncate name/note to this many characters
    """
    return await get_client().search(query, limit, _spec(max_depth, include_fields, preview_length))


@mcp.tool(name="create_node", description="Create a new node in Workflowy")
async def create_node(name: str, parent_id: str | None = None, note: str | None = None) -> dict[str, Any]:
    return await get_client().create(parent_id, name, note)


@mcp.tool(
    name="batch_create_nodes",
    description="Create several nodes under one parent in a single save",
)
async def batch_create_nodes(nodes: list[BatchNodeItem], parent_id: str | None = None) -> dict[str, Any]:
    """Create several sibling nodes.

    Args:
        nodes: Items with ``name`` and optional ``note``
        parent_id: Parent for all new nodes (omit for top level)
    """
    return await get_client().batch_create(parent_id, nodes)


@mcp.tool(name="update_node", description="Update an existing Workflowy node's name and/or note")
async def update_node(node_id: str, name: str | None = None, note: str | None = None) -> dict[str, Any]:
    return await get_client().update(node_id, name, note)


@mcp.tool(name="delete_node", description="Delete a Workflowy node and all its children")
async def delete_node(node_id: str) -> dict[str, Any]:
    return await get_client().delete(node_id)


@mcp.tool(name="toggle_complete", description="Mark a Workflowy node complete or incomplete")
async def toggle_complete(node_id: str, completed: bool) -> dict[str, Any]:
    return await get_client().set_completed(node_id, completed)


@mcp.tool(name="move_node", description="Move a Workflowy node to a new parent")
async def move_node(node_id: str, new_parent_id: str | None = None, priority: int | None = None) -> dict[str, Any]:
    """Move a node.

    Args:
        node_id: Node to move
        new_parent_id: Destination parent (omit for top level)
        priority: Position among the new siblings (0 = first; omit for last)
    """
    return await get_client().move(node_id, new_parent_id, priority)


@mcp.tool(name="service_health", description="Check whether Workflowy is reachable with the configured credentials")
async def service_health() -> dict[str, Any]:
    return await get_client().check_service_health()


def main() -> None:
    setup_logging(ServerConfig().log_level)  # type: ignore[call-arg]
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
