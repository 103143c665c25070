from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from functools import lru_cache
from typing import Any

import sqlalchemy as sa

from .datastructures import Resource
from .graph import BelongsToEdge, Graph, PolymorphicEdge


logger = logging.getLogger(__name__)

FieldSelection = Mapping[str, Sequence[str]]


def unique_values(rows: Iterable[Mapping[str, Any]], key: str) -> list[Any]:
    """Distinct non-null ``row[key]`` values in first-seen order."""
    seen: set[Any] = set()
    out: list[Any] = []
    for row in rows:
        value = row.get(key)
        if value is None or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


def group_by_polymorphic_type(
    rows: Iterable[Mapping[str, Any]], type_field: str, id_field: str
) -> dict[str, list[Any]]:
    """Group distinct ids by discriminator value, skipping rows missing either part.

    Example:
        >>> group_by_polymorphic_type(
        ...     [{"t": "posts", "i": 1}, {"t": "posts", "i": 1}, {"t": None, "i": 2}], "t", "i"
        ... )
        {'posts': [1]}
    """
    grouped: dict[str, list[Any]] = {}
    for row in rows:
        type_name = row.get(type_field)
        id_ = row.get(id_field)
        if not type_name or id_ is None:
            continue
        ids = grouped.setdefault(type_name, [])
        if id_ not in ids:
            ids.append(id_)
    return grouped


@lru_cache(maxsize=512)
def _structural_fields(graph: Graph, type_name: str) -> tuple[str, ...]:
    """Columns needed to link *type_name*'s own relationships (cached)."""
    out: list[str] = []
    for edge in graph.get(type_name):
        if isinstance(edge, BelongsToEdge):
            out.append(edge.foreign_key)
        elif isinstance(edge, PolymorphicEdge):
            out.extend((edge.type_field, edge.id_field))
    return tuple(dict.fromkeys(out))


@lru_cache(maxsize=512)
def _hidden_fields(graph: Graph, type_name: str) -> frozenset[str]:
    """Columns rendered as relationships instead of attributes (cached)."""
    hidden = {graph.registry.get_id_field(type_name)}
    for edge in graph.get(type_name):
        if isinstance(edge, BelongsToEdge) and edge.name:
            hidden.add(edge.foreign_key)
        elif isinstance(edge, PolymorphicEdge):
            hidden.update((edge.type_field, edge.id_field))
    return frozenset(hidden)


def select_columns(
    graph: Graph,
    type_name: str,
    fields: FieldSelection | None = None,
    required: Iterable[str] = (),
) -> list[sa.Column[Any]]:
    """Columns to select for *type_name* under a sparse field selection.

    Without a selection for the type every column is returned. With one, the
    id, the requested fields, the type's own foreign-key and discriminator
    columns and any *required* linking columns are selected. Unknown requested
    names are ignored.
    """
    table = graph.registry.get_table(type_name)
    requested = fields.get(type_name) if fields else None
    if requested is None:
        return list(table.c)

    names = dict.fromkeys((
        graph.registry.get_id_field(type_name),
        *requested,
        *_structural_fields(graph, type_name),
        *required,
    ))
    unknown = [name for name in names if name not in table.c]
    if unknown:
        logger.debug("Ignoring unknown fields %s for %s", unknown, type_name)

    return [table.c[name] for name in names if name in table.c]


def to_resource(
    graph: Graph,
    type_name: str,
    row: Mapping[str, Any],
    fields: FieldSelection | None = None,
) -> Resource:
    """Transform a row into a ``Resource`` with its to-one linkage filled in.

    Foreign keys exposed under an alias and polymorphic columns become
    relationships; everything else (restricted to the selection, if any)
    becomes an attribute.
    """
    id_field = graph.registry.get_id_field(type_name)
    hidden = _hidden_fields(graph, type_name)
    requested = fields.get(type_name) if fields else None
    allowed = set(requested) if requested is not None else None

    attributes = {
        key: value
        for key, value in row.items()
        if key not in hidden and (allowed is None or key in allowed)
    }

    relationships: dict[str, dict[str, Any]] = {}
    for edge in graph.get(type_name):
        if isinstance(edge, BelongsToEdge) and edge.name:
            fk = row.get(edge.foreign_key)
            relationships[edge.name] = {
                "data": {"type": edge.target, "id": str(fk)} if fk is not None else None
            }
        elif isinstance(edge, PolymorphicEdge):
            target_type = row.get(edge.type_field)
            target_id = row.get(edge.id_field)
            relationships[edge.name] = {
                "data": {"type": target_type, "id": str(target_id)}
                if target_type and target_id is not None
                else None
            }

    return Resource(
        type=type_name,
        id=str(row[id_field]),
        attributes=attributes,
        relationships=relationships,
        row=dict(row),
    )


def _iter_froms(query: sa.Select[Any]) -> Iterator[sa.FromClause]:
    """Yield the tables and aliases of *query*, flattening joins left to right."""
    for root in query.get_final_froms():
        stack: list[sa.FromClause] = [root]
        while stack:
            node = stack.pop()
            if isinstance(node, sa.Join):
                stack.extend((node.right, node.left))
            else:
                yield node


def get_table_names(query: sa.Select[Any]) -> Sequence[str]:
    """Names of the tables and join aliases *query* already selects from.

    ``apply_join_plan`` skips steps whose alias is listed here, so applying
    several plans that share a prefix joins the shared aliases once.
    """
    names = (getattr(node, "name", None) for node in _iter_froms(query))
    return list(dict.fromkeys(name for name in names if name))


def _find_from_by_name(query: sa.Select[Any], name: str) -> sa.FromClause | None:
    return next((node for node in _iter_froms(query) if getattr(node, "name", None) == name), None)


def resolve_col(query: sa.Select[Any], ref: str) -> sa.ColumnElement[Any]:
    """Return the column ``ref`` names on a join alias of *query*.

    *ref* is ``"<join alias>.<column>"``, the shape of ``JoinPlan.qualified_field``::

        query = apply_join_plan(sa.select(articles), plan)
        query = query.where(resolve_col(query, plan.qualified_field) == "Acme")

    Raises:
        ValueError: If *ref* has no dot, or *query* lacks the alias or its column.
    """
    alias_name, sep, col_name = ref.partition(".")
    if not sep:
        raise ValueError(f"Expected 'alias.column', got {ref!r}")

    source = _find_from_by_name(query, alias_name)
    if source is None or not hasattr(source, "c"):
        raise ValueError(
            f"Join alias {alias_name!r} not found in query; present: {get_table_names(query)}"
        )
    if col_name not in source.c:
        raise ValueError(
            f"Join alias {alias_name!r} has no column {col_name!r}. Available: {list(source.c.keys())}"
        )
    return source.c[col_name]
