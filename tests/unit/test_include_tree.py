from __future__ import annotations

import pytest

from sqla_relgraph import (
    EntityType,
    Graph,
    HasMany,
    IncludeNode,
    Registry,
    RelationshipKind,
    classify_relationship,
    parse_include_tree,
)


class TestParseIncludeTree:
    def test_string_and_list_agree(self) -> None:
        assert parse_include_tree(["a", "a.b"]) == parse_include_tree("a,a.b") == {"a": {"b": {}}}

    def test_prefix_merged_not_duplicated(self) -> None:
        tree = parse_include_tree("comments.author,comments,comments.article")
        assert list(tree) == ["comments"]
        assert tree["comments"] == {"author": {}, "article": {}}

    def test_deep_path_creates_intermediate_nodes(self) -> None:
        assert parse_include_tree("a.b.c") == {"a": {"b": {"c": {}}}}

    @pytest.mark.parametrize("paths", [None, "", "  ", [], ",,", [" , "]])
    def test_empty_input(self, paths: object) -> None:
        tree = parse_include_tree(paths)  # type: ignore[arg-type]
        assert isinstance(tree, IncludeNode)
        assert not tree

    def test_blank_entries_and_segments_dropped(self) -> None:
        assert parse_include_tree(" author , ,comments..author.") == {
            "author": {},
            "comments": {"author": {}},
        }

    def test_list_entries_may_hold_commas(self) -> None:
        assert parse_include_tree(["author,tags", "comments"]) == {
            "author": {},
            "tags": {},
            "comments": {},
        }

    def test_generator_input(self) -> None:
        tree = parse_include_tree(path for path in ("a", "b"))
        assert tree == {"a": {}, "b": {}}


class TestClassifyRelationship:
    @pytest.mark.parametrize(
        ("type_name", "name", "kind"),
        [
            ("articles", "author", RelationshipKind.BELONGS_TO),
            ("articles", "comments", RelationshipKind.HAS_MANY),
            ("articles", "tags", RelationshipKind.MANY_TO_MANY),
            ("articles", "attachments", RelationshipKind.REVERSE_POLYMORPHIC),
            ("attachments", "attachable", RelationshipKind.POLYMORPHIC),
            ("people", "company", RelationshipKind.BELONGS_TO),
        ],
    )
    def test_kinds(self, type_name: str, name: str, kind: RelationshipKind) -> None:
        assert classify_relationship(type_name, name) is kind

    def test_unknown_name(self) -> None:
        assert classify_relationship("articles", "reviewers") is RelationshipKind.UNKNOWN

    def test_foreign_key_name_is_not_a_relationship(self) -> None:
        assert classify_relationship("articles", "author_id") is RelationshipKind.UNKNOWN

    def test_unknown_type(self) -> None:
        assert classify_relationship("ghosts", "author") is RelationshipKind.UNKNOWN

    def test_via_without_polymorphic_target(self) -> None:
        graph = Graph(
            Registry(
                EntityType("notes"),
                EntityType("posts", relationships={"notes": HasMany("notes", via="owner")}),
            )
        )
        assert classify_relationship("posts", "notes", graph=graph) is RelationshipKind.UNKNOWN
