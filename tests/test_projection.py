"""Bounded projection and per-field metadata hydration."""

from __future__ import annotations

import copy

import pytest

from outline_mcp.client import projection
from outline_mcp.client.projection import PREVIEW_MARKER, project, truncate_preview
from outline_mcp.client.tree import DocumentTree
from outline_mcp.models import BASIC_FIELDS, ProjectionSpec

from .conftest import read_log


def test_depth_zero_never_includes_children(tree):
    node = tree.require("root-node-1")
    assert node.children
    assert project(node, ProjectionSpec(max_depth=0))["items"] == []


def test_include_fields_selects_exact_keys(tree):
    result = project(tree.require("child-1-1"), ProjectionSpec(include_fields=["id", "name"]))
    assert set(result) == {"id", "name", "items"}


def test_default_fields(tree):
    result = project(tree.require("child-1-2"), ProjectionSpec())
    assert list(result) == [*BASIC_FIELDS, "items"]
    assert result["isCompleted"] is True


def test_field_order_follows_request_and_duplicates_drop(tree):
    spec = ProjectionSpec(include_fields=["name", "id", "name"])
    assert spec.include_fields == ("name", "id")
    assert list(project(tree.require("child-1-1"), spec)) == ["name", "id", "items"]


def test_preview_truncates_name_and_note():
    node = {"id": "n", "name": "hello world", "note": "abc", "items": []}
    result = project(node, ProjectionSpec(preview_length=5))
    assert result["name"] == "hello" + PREVIEW_MARKER
    assert result["name"] == "hello..."
    assert result["note"] == "abc"


def test_preview_leaves_other_fields_alone(tree):
    spec = ProjectionSpec(include_fields=["id", "parentId", "name"], preview_length=3)
    result = project(tree.require("grandchild-1-1-1"), spec)
    assert result["id"] == "grandchild-1-1-1"
    assert result["parentId"] == "child-1-1"
    assert result["name"] == "Spr..."


def test_truncate_preview_ignores_non_strings():
    assert truncate_preview(None, 2) is None
    assert truncate_preview(12345, 2) == 12345
    assert truncate_preview("abc", None) == "abc"


def test_depth_limit_cuts_grandchildren(tree):
    result = project(tree.require("root-node-1"), ProjectionSpec(max_depth=1, include_fields=["id"]))
    assert [c["id"] for c in result["items"]] == ["child-1-1", "child-1-2"]
    assert all(c["items"] == [] for c in result["items"])


def test_full_depth_reaches_leaves(tree):
    result = project(tree.require("root-node-1"), ProjectionSpec(max_depth=10, include_fields=["id"]))
    leaf = result["items"][0]["items"][0]["items"][0]
    assert leaf == {"id": "great-grandchild-1-1-1-1", "items": []}


def test_metadata_hydration(tree):
    spec = ProjectionSpec(
        include_fields=["id", "parentId", "parentName", "hierarchy", "siblings", "siblingCount", "priority"]
    )
    result = project(tree.require("grandchild-1-1-2"), spec)

    assert result["parentId"] == "child-1-1"
    assert result["parentName"] == "Sprint Planning"
    assert result["hierarchy"] == ["Project Management", "Sprint Planning"]
    assert result["siblings"] == [{"id": "grandchild-1-1-1", "name": "Sprint 1 Tasks", "priority": 0}]
    assert result["siblingCount"] == 2
    assert result["priority"] == 1


def test_top_level_node_has_no_visible_parent(tree):
    spec = ProjectionSpec(include_fields=["parentId", "parentName", "hierarchy", "siblingCount"])
    result = project(tree.require("root-node-2"), spec)
    assert result["parentId"] is None
    assert result["parentName"] is None
    assert result["hierarchy"] == []
    assert result["siblingCount"] == 2


def test_failing_hydrator_only_drops_its_field(tree, logger, log_stream, monkeypatch):
    def boom(node):
        raise RuntimeError("sibling lookup exploded")

    monkeypatch.setitem(projection.METADATA_HYDRATORS, "siblings", boom)
    spec = ProjectionSpec(include_fields=["id", "parentName", "siblings"])

    result = project(tree.require("child-1-2"), spec, logger=logger)

    assert result["parentName"] == "Project Management"
    assert "siblings" not in result
    warnings = [r for r in read_log(log_stream) if r["message"] == "Metadata hydration failed"]
    assert len(warnings) == 1
    assert warnings[0]["level"] == "WARN"
    assert warnings[0]["context"]["field"] == "siblings"
    assert warnings[0]["context"]["nodeId"] == "child-1-2"


def test_unknown_fields_are_ignored(tree):
    result = project(tree.require("child-1-1"), ProjectionSpec(include_fields=["id", "color", "items"]))
    assert set(result) == {"id", "items"}


def test_projection_does_not_mutate_tree(tree):
    node = tree.require("root-node-1")
    before = [(n.id, n.name, n.priority, list(n.children)) for n in tree._nodes]

    project(node, ProjectionSpec(max_depth=5, include_fields=["id", "name", "siblings", "hierarchy"], preview_length=2))

    assert [(n.id, n.name, n.priority, list(n.children)) for n in tree._nodes] == before
    assert not tree.is_dirty()


def test_projection_does_not_mutate_dict_nodes(outline):
    snapshot = copy.deepcopy(outline)
    project(outline[0], ProjectionSpec(max_depth=3, preview_length=4))
    assert outline == snapshot


def test_dict_nodes_only_copy_present_keys():
    node = {"id": "x", "name": "Plain", "children": [{"id": "y", "name": "Child"}]}
    result = project(node, ProjectionSpec(max_depth=1, include_fields=["id", "name", "note", "parentId"]))
    assert result == {"id": "x", "name": "Plain", "items": [{"id": "y", "name": "Child", "items": []}]}


@pytest.mark.parametrize("bad", [{"max_depth": -1}, {"preview_length": 0}])
def test_projection_spec_validation(bad):
    with pytest.raises(ValueError):
        ProjectionSpec(**bad)


def test_hierarchy_of_cyclic_export_terminates():
    tree = DocumentTree.from_export(
        [
            {"id": "a", "name": "A", "parent_id": "b", "priority": 1},
            {"id": "b", "name": "B", "parent_id": "a", "priority": 2},
        ]
    )
    result = project(tree.require("a"), ProjectionSpec(include_fields=["hierarchy", "parentId"]))
    assert result["hierarchy"] == ["B"]
    assert result["parentId"] == "b"
