"""WorkFlowy API client - transport, sessions and tree snapshots.

This is the document-service collaborator the operation facade talks to:
``authenticate`` opens a ``Session`` against the REST API, ``get_tree``
fetches ``/nodes-export`` into a ``DocumentTree`` bound to that session,
and ``Session.push`` replays a tree's queued mutations.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
from typing import Any

import httpx

from ..models import APIConfiguration, ErrorKind
from .errors import authentication_failed, classify
from .tree import DocumentTree, PendingOperation


def _dewhiten_text(value: str | None) -> str | None:
    """Decode &amp;, &lt;, &gt; once; other entities stay literal."""
    if value is None or not isinstance(value, str):
        return value
    return value.replace("&amp;", "&").replace("&lt;", "<").replace("&gt;", ">")


def _whiten_text(value: str | None) -> str | None:
    """Inverse of ``_dewhiten_text`` for values written back to WorkFlowy."""
    if value is None:
        return None
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _node_id_from_path(path: str) -> str | None:
    """Id segment following ``nodes`` in an API path, if any."""
    segments = [s for s in path.split("/") if s]
    if "nodes" in segments:
        position = segments.index("nodes") + 1
        if position < len(segments):
            return segments[position]
    return None


async def _handle_response(response: httpx.Response, resource_id: str | None = None) -> dict[str, Any]:
    """Return the decoded JSON body or raise a classified ``WorkFlowyError``.

    A 404 reports ``resource_id`` as the missing resource; without one, the
    node id is read from the request path.
    """
    if response.status_code >= 400:
        try:
            error_data = response.json()
            message = error_data.get("error") or error_data.get("message") or "API request failed"
        except (json.JSONDecodeError, AttributeError):
            message = f"API error: {response.status_code}"

        err = httpx.HTTPStatusError(
            f"HTTP {response.status_code}: {message}",
            request=response.request,
            response=response,
        )
        classification = classify(err, f"{response.request.method} {response.request.url.path}")
        if classification.kind is ErrorKind.NOT_FOUND:
            classification = dataclasses.replace(
                classification,
                resource_id=resource_id or _node_id_from_path(response.request.url.path),
            )
        raise classification.to_error() from err

    if not response.content:
        return {}
    try:
        return response.json()  # type: ignore[no-any-return]
    except json.JSONDecodeError as err:
        raise classify(err, "decode response").to_error() from err


class Session:
    """Authenticated connection to the WorkFlowy REST API."""

    def __init__(self, http: httpx.AsyncClient, username: str | None, config: APIConfiguration) -> None:
        self.http = http
        self.username = username
        self.config = config

    async def close(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def push(self, operations: list[PendingOperation]) -> dict[str, str]:
        """Replay queued mutations in order.

        Created nodes get server ids; later operations in the same batch that
        reference a temporary id are rewritten to the server id. Returns the
        ``{temporary_id: server_id}`` mapping.
        """
        id_map: dict[str, str] = {}

        def resolve(node_id: str | None) -> str | None:
            if node_id is None:
                return None
            return id_map.get(node_id, node_id)

        for position, op in enumerate(operations):
            if position and self.config.rate_limit_delay:
                await asyncio.sleep(self.config.rate_limit_delay)

            node_id = resolve(op.node_id)
            if op.kind == "create":
                body: dict[str, Any] = {
                    "name": _whiten_text(op.payload.get("name")) or "",
                    "position": op.payload.get("position", "bottom"),
                }
                if op.payload.get("note") is not None:
                    body["note"] = _whiten_text(op.payload["note"])
                parent_id = resolve(op.payload.get("parent_id"))
                if parent_id is not None:
                    body["parent_id"] = parent_id
                data = await _handle_response(await self.http.post("/nodes/", json=body), parent_id)
                item_id = data.get("item_id") or data.get("id")
                if not item_id:
                    raise classify(
                        RuntimeError(f"Invalid response from create endpoint: {data}"),
                        "create node",
                    ).to_error()
                id_map[op.node_id] = str(item_id)
            elif op.kind == "update":
                body = {key: _whiten_text(value) for key, value in op.payload.items()}
                await _handle_response(await self.http.post(f"/nodes/{node_id}", json=body), node_id)
            elif op.kind in ("complete", "uncomplete"):
                await _handle_response(await self.http.post(f"/nodes/{node_id}/{op.kind}"), node_id)
            elif op.kind == "move":
                body = {"position": op.payload.get("position", "bottom")}
                parent_id = resolve(op.payload.get("parent_id"))
                if parent_id is not None:
                    body["parent_id"] = parent_id
                await _handle_response(await self.http.post(f"/nodes/{node_id}/move", json=body), node_id)
            elif op.kind == "delete":
                await _handle_response(await self.http.delete(f"/nodes/{node_id}"), node_id)
            else:
                raise ValueError(f"Unknown pending operation kind: {op.kind}")

        return id_map


class WorkFlowyClientCore:
    """Document-service client over the WorkFlowy REST API."""

    def __init__(
        self,
        config: APIConfiguration,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.base_url = config.base_url
        self._transport = transport

    def _http_client(self, password: str) -> httpx.AsyncClient:
        headers = {
            "Authorization": f"Bearer {password}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(self.config.timeout),
            follow_redirects=True,
            transport=self._transport,
        )

    async def authenticate(self, username: str | None, password: str | None) -> Session:
        """Open a session and verify the credentials with a cheap root listing.

        ``password`` is the WorkFlowy API key, sent as a bearer token.
        """
        if not password:
            raise authentication_failed(
                "Workflowy credentials not provided. Please set WORKFLOWY_USERNAME "
                "and WORKFLOWY_PASSWORD environment variables."
            )

        http = self._http_client(password)
        try:
            await _handle_response(await http.get("/nodes"))
        except BaseException:
            await http.aclose()
            raise
        return Session(http, username, self.config)

    async def get_tree(self, session: Session) -> DocumentTree:
        """Fetch the whole outline as an arena tree bound to ``session``."""
        data = await _handle_response(await session.http.get("/nodes-export"))
        nodes = data.get("nodes", []) or []
        for node in nodes:
            for key in ("name", "nm", "note", "no"):
                if key in node:
                    node[key] = _dewhiten_text(node.get(key))
        return DocumentTree.from_export(nodes, saver=session.push)
