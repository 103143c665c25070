from __future__ import annotations

import logging
from collections.abc import Iterable

from .datastructures import IncludeNode
from .graph import Graph, RelationshipKind, ReversePolymorphicEdge, resolve_graph


logger = logging.getLogger(__name__)


def _entries(paths: str | Iterable[str] | None) -> list[str]:
    if paths is None:
        return []
    if isinstance(paths, str):
        return paths.split(",")

    out: list[str] = []
    for path in paths:
        out.extend(path.split(","))
    return out


def parse_include_tree(paths: str | Iterable[str] | None) -> IncludeNode:
    """Parse include paths into a tree, merging shared prefixes.

    Accepts a comma-separated string, an iterable of paths (each may itself
    hold commas) or ``None``. Blank entries and empty dotted segments are
    dropped, so ``"a,,a..b"`` is the same tree as ``"a.b"``.

    Example:
        >>> parse_include_tree("author,comments,comments.author")
        <IncludeNode '' {'author': {}, 'comments': {'author': {}}}>
        >>> parse_include_tree(["a", "a.b"]) == parse_include_tree("a,a.b") == {"a": {"b": {}}}
        True
    """
    root = IncludeNode()
    for entry in _entries(paths):
        parts = [part.strip() for part in entry.split(".")]
        parts = [part for part in parts if part]
        if parts:
            root.insert(parts)

    return root


def classify_relationship(
    type_name: str, name: str, graph: Graph | None = None
) -> RelationshipKind:
    """Tell which kind of relationship handles include *name* on *type_name*.

    A belongsTo field alias wins over a relationship-map entry of the same
    name. Misses, unregistered types and ``via`` relationships whose target
    declares no matching polymorphic relation are ``UNKNOWN``; the caller
    logs and skips them.
    """
    graph = resolve_graph(graph)
    if type_name not in graph:
        logger.debug("Cannot classify %r: type %r is not registered", name, type_name)
        return RelationshipKind.UNKNOWN

    edge = graph.find_edge(type_name, name)
    if edge is None:
        return RelationshipKind.UNKNOWN

    if isinstance(edge, ReversePolymorphicEdge) and graph.resolve_via(edge) is None:
        logger.debug("%s.%s reads through undeclared polymorphic %r", type_name, name, edge.via)
        return RelationshipKind.UNKNOWN

    return edge.kind
