"""Join-chain resolution for cross-table filtering.

A dotted path such as ``"people.companies.name"`` read from ``articles`` is
turned into a ``JoinPlan``: one ``JoinStep`` per hop plus the final field.
Planning is pure and fails fast; nothing here executes SQL except
``create_required_indexes``, which is setup tooling.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, NamedTuple

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from .errors import (
    CircularReferenceError,
    FieldNotIndexedError,
    InvalidPathError,
    RelationshipNotFoundError,
    SchemaNotFoundError,
)
from .graph import (
    BelongsToEdge,
    Cardinality,
    Edge,
    Graph,
    HasManyEdge,
    ManyToManyEdge,
    PolymorphicEdge,
    RelationshipKind,
    ReversePolymorphicEdge,
    resolve_graph,
)
from .tools import _find_from_by_name, _hidden_fields, _structural_fields, get_table_names, resolve_col


if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection


logger = logging.getLogger(__name__)

Hop = tuple[Edge, str]


def make_alias(from_type: str, to_type: str) -> str:
    """Alias of the join from *from_type* to *to_type*.

    Only the adjacent pair is encoded, so the same pair reached at two
    depths of one query shares an alias.

    Example:
        >>> make_alias("articles", "people")
        'articles_to_people_people'
    """
    return f"{from_type}_to_{to_type}_{to_type}"


class Discriminator(NamedTuple):
    """``alias.column = 'value'`` constraint of a polymorphic join."""

    alias: str
    column: str
    value: str


@dataclass(frozen=True, slots=True)
class JoinStep:
    """A single ``LEFT JOIN target_table AS join_alias ON join_condition``.

    The condition is kept both rendered (``join_condition``) and structured
    (``source_alias.source_column = join_alias.target_column`` plus an
    optional ``discriminator``) so it can be attached to a SQLAlchemy query.
    """

    target_type: str
    target_table: str
    join_alias: str
    join_condition: str
    cardinality: Cardinality
    relationship_type: RelationshipKind
    source_alias: str
    source_column: str
    target_column: str
    is_polymorphic: bool = False
    discriminator: Discriminator | None = None


@dataclass(frozen=True, slots=True)
class JoinPlan:
    root_type: str
    root_table: str
    steps: tuple[JoinStep, ...]
    target_field: str

    @property
    def target_type(self) -> str:
        return self.steps[-1].target_type

    @property
    def target_alias(self) -> str:
        return self.steps[-1].join_alias

    @property
    def qualified_field(self) -> str:
        return f"{self.target_alias}.{self.target_field}"

    @property
    def join_condition(self) -> str:
        """Every step condition AND-ed in traversal order."""
        return " AND ".join(step.join_condition for step in self.steps)

    @property
    def is_one_to_many(self) -> bool:
        """True when the joins can multiply root rows (callers may need DISTINCT)."""
        return any(step.cardinality == "many" for step in self.steps)

    def target_column(self, query: sa.Select[Any]) -> sa.ColumnElement[Any]:
        """The joined target field of *query*, for use in ``WHERE``."""
        return resolve_col(query, self.qualified_field)


@lru_cache(maxsize=1028)
def _bfs_search(graph: Graph, start: str, end: str, visited: tuple[str, ...]) -> tuple[Hop, ...]:
    """Find the shortest route of edges from *start* to *end*.

    Breadth-first over ``graph.neighbours`` so ties go to join-chain priority
    order. Types in *visited* are never entered.

    Returns:
        ``(edge, target_type)`` hops, or an empty tuple if *end* is unreachable.
    """
    queue: deque[tuple[str, tuple[Hop, ...]]] = deque([(start, ())])
    seen: set[str] = {start, *visited}

    while queue:
        current, path = queue.popleft()
        for edge, target in graph.neighbours(current):
            if target == end:
                return (*path, (edge, target))
            if target in seen or target not in graph:
                continue
            seen.add(target)
            queue.append((target, (*path, (edge, target))))

    return ()


def _render_edge(graph: Graph, edge: Edge, target: str, prev_alias: str) -> list[JoinStep]:
    """Turn one graph edge into join steps starting at *prev_alias*."""
    registry = graph.registry
    target_id = registry.get_id_field(target)

    match edge:
        case BelongsToEdge(source=source, foreign_key=fk):
            alias = make_alias(source, target)
            return [
                JoinStep(
                    target_type=target,
                    target_table=registry.get_table_name(target),
                    join_alias=alias,
                    join_condition=f"{prev_alias}.{fk} = {alias}.{target_id}",
                    cardinality="one",
                    relationship_type=edge.kind,
                    source_alias=prev_alias,
                    source_column=fk,
                    target_column=target_id,
                )
            ]

        case HasManyEdge(source=source, foreign_key=fk):
            alias = make_alias(source, target)
            source_id = registry.get_id_field(source)
            return [
                JoinStep(
                    target_type=target,
                    target_table=registry.get_table_name(target),
                    join_alias=alias,
                    join_condition=f"{prev_alias}.{source_id} = {alias}.{fk}",
                    cardinality="many",
                    relationship_type=edge.kind,
                    source_alias=prev_alias,
                    source_column=source_id,
                    target_column=fk,
                )
            ]

        case ManyToManyEdge(source=source, through=through, foreign_key=fk, other_key=other):
            pivot_alias = make_alias(source, through)
            alias = make_alias(through, target)
            source_id = registry.get_id_field(source)
            return [
                JoinStep(
                    target_type=through,
                    target_table=registry.get_table_name(through),
                    join_alias=pivot_alias,
                    join_condition=f"{prev_alias}.{source_id} = {pivot_alias}.{fk}",
                    cardinality="many",
                    relationship_type=edge.kind,
                    source_alias=prev_alias,
                    source_column=source_id,
                    target_column=fk,
                ),
                JoinStep(
                    target_type=target,
                    target_table=registry.get_table_name(target),
                    join_alias=alias,
                    join_condition=f"{pivot_alias}.{other} = {alias}.{target_id}",
                    cardinality="one",
                    relationship_type=edge.kind,
                    source_alias=pivot_alias,
                    source_column=other,
                    target_column=target_id,
                ),
            ]

        case ReversePolymorphicEdge(source=source):
            via = graph.resolve_via(edge)
            if via is None:
                raise RelationshipNotFoundError(source, target)
            alias = make_alias(source, target)
            source_id = registry.get_id_field(source)
            return [
                JoinStep(
                    target_type=target,
                    target_table=registry.get_table_name(target),
                    join_alias=alias,
                    join_condition=(
                        f"{alias}.{via.type_field} = '{source}' "
                        f"AND {alias}.{via.id_field} = {prev_alias}.{source_id}"
                    ),
                    cardinality="many",
                    relationship_type=edge.kind,
                    source_alias=prev_alias,
                    source_column=source_id,
                    target_column=via.id_field,
                    is_polymorphic=True,
                    discriminator=Discriminator(alias, via.type_field, source),
                )
            ]

        case PolymorphicEdge(source=source, type_field=type_field, id_field=id_field):
            alias = make_alias(source, target)
            return [
                JoinStep(
                    target_type=target,
                    target_table=registry.get_table_name(target),
                    join_alias=alias,
                    join_condition=(
                        f"{prev_alias}.{id_field} = {alias}.{target_id} "
                        f"AND {prev_alias}.{type_field} = '{target}'"
                    ),
                    cardinality="one",
                    relationship_type=edge.kind,
                    source_alias=prev_alias,
                    source_column=id_field,
                    target_column=target_id,
                    is_polymorphic=True,
                    discriminator=Discriminator(prev_alias, type_field, target),
                )
            ]

    raise TypeError(f"Unsupported edge {edge!r}")  # pragma: no cover


def _split_path(path: str) -> tuple[list[str], str]:
    if not path or not path.strip():
        raise InvalidPathError(path, "path is empty")

    parts = path.strip().split(".")
    if any(not part for part in parts):
        raise InvalidPathError(path, "path contains an empty segment")

    if len(parts) < 2:
        raise InvalidPathError(path, "expected '<relationship>[.<relationship>...].<field>'")

    *segments, field_name = parts
    return segments, field_name


def resolve_join_chain(from_type: str, path: str, graph: Graph | None = None) -> JoinPlan:
    """Plan the joins needed to reach *path* from *from_type*.

    Every leading segment of *path* names a related type and the last one a
    field on the final type, e.g. ``resolve_join_chain("articles",
    "people.companies.name")``. For each segment a direct edge is preferred
    (reverse-polymorphic, many-to-many, hasMany, belongsTo, polymorphic);
    if there is none the shortest indirect route is used.

    Args:
        from_type: Root type of the query.
        path: Dotted path, relationship segments followed by a field name.
        graph: Relationship graph, defaults to ``Graph.default()``.

    Returns:
        A ``JoinPlan`` with one step per hop (two for many-to-many).

    Raises:
        InvalidPathError: If the path is empty or has no relationship segment.
        SchemaNotFoundError: If a segment names an unregistered type.
        CircularReferenceError: If a segment revisits a type on the path.
        RelationshipNotFoundError: If a segment is unreachable.
        FieldNotFoundError: If the final field does not exist.
        FieldNotIndexedError: If the final field is not ``indexed=True``.
    """
    graph = resolve_graph(graph)
    registry = graph.registry
    segments, field_name = _split_path(path)

    root_table = registry.get_table_name(from_type)
    current = from_type
    current_alias = root_table
    visited: tuple[str, ...] = (from_type,)
    steps: list[JoinStep] = []

    for segment in segments:
        if segment in visited:
            raise CircularReferenceError((*visited, segment))
        if segment not in registry:
            raise SchemaNotFoundError(segment)

        edge = graph.find_edge_to(current, segment)
        hops: tuple[Hop, ...] = (
            ((edge, segment),) if edge is not None else _bfs_search(graph, current, segment, visited)
        )
        if not hops:
            raise RelationshipNotFoundError(current, segment)

        for hop_edge, target in hops:
            rendered = _render_edge(graph, hop_edge, target, current_alias)
            steps.extend(rendered)
            current_alias = rendered[-1].join_alias
            if isinstance(hop_edge, ManyToManyEdge):
                visited = (*visited, hop_edge.through)
            visited = (*visited, target)

        current = segment

    field = registry.get_field(current, field_name)
    if not field.indexed:
        raise FieldNotIndexedError(current, field_name)

    logger.debug(
        "Resolved %s.%s into %d join step(s): %s",
        from_type,
        path,
        len(steps),
        [step.join_alias for step in steps],
    )
    return JoinPlan(
        root_type=from_type,
        root_table=root_table,
        steps=tuple(steps),
        target_field=field_name,
    )


def apply_join_plan(
    query: sa.Select[Any],
    plan: JoinPlan,
    *,
    root: sa.FromClause | None = None,
    graph: Graph | None = None,
) -> sa.Select[Any]:
    """Attach every step of *plan* to *query* as its own ``LEFT OUTER JOIN``.

    Aliases already present in the query's FROM tree are reused, not joined
    again, so several plans sharing a prefix can be applied to one query.

    Args:
        query: Select whose FROM contains the root table.
        plan: Plan from :func:`resolve_join_chain`.
        root: Root selectable when it is not the registry's table (e.g. an ORM
            model's table or an alias named after the root table).
        graph: Relationship graph, defaults to ``Graph.default()``.

    Example:
        >>> plan = resolve_join_chain("articles", "people.name")
        >>> query = apply_join_plan(sa.select(articles), plan)
        >>> query = query.where(plan.target_column(query) == "Ada")
    """
    graph = resolve_graph(graph)
    registry = graph.registry
    present = set(get_table_names(query))
    froms: dict[str, sa.FromClause] = {
        plan.root_table: root if root is not None else registry.get_table(plan.root_type)
    }

    for step in plan.steps:
        existing = _find_from_by_name(query, step.join_alias) if step.join_alias in present else None
        if existing is not None:
            froms[step.join_alias] = existing
            continue

        target = registry.get_table(step.target_type).alias(step.join_alias)
        froms[step.join_alias] = target
        onclause: sa.ColumnElement[bool] = (
            froms[step.source_alias].c[step.source_column] == target.c[step.target_column]
        )
        if step.discriminator is not None:
            alias, column, value = step.discriminator
            onclause = sa.and_(onclause, froms[alias].c[column] == value)

        query = query.outerjoin(target, onclause)
        present.add(step.join_alias)

    return query


class IndexRequirement(NamedTuple):
    type: str
    field: str
    reason: str


def required_indexes(
    type_name: str, search_schema: Mapping[str, Mapping[str, Any]] | None
) -> list[IndexRequirement]:
    """List the fields cross-table filters of *type_name* need indexed.

    *search_schema* maps filter names to definitions; ``actual_field`` and
    every entry of ``one_of`` holding a dotted path are inspected. The
    requirement targets the type named by the last relationship segment.
    Does not touch the database.

    Example:
        >>> required_indexes("articles", {"company": {"actual_field": "people.companies.name"}})
        [IndexRequirement(type='companies', field='name', reason='Cross-table search from articles.company')]
    """
    requirements: dict[tuple[str, str], IndexRequirement] = {}

    def add(path: str, reason: str) -> None:
        parts = path.split(".")
        if len(parts) < 2 or not all(parts):
            return
        requirements.setdefault((parts[-2], parts[-1]), IndexRequirement(parts[-2], parts[-1], reason))

    for filter_name, definition in (search_schema or {}).items():
        actual_field = definition.get("actual_field")
        if isinstance(actual_field, str):
            add(actual_field, f"Cross-table search from {type_name}.{filter_name}")

        one_of: Sequence[str] = definition.get("one_of") or ()
        for path in one_of:
            add(path, f"Cross-table one_of search from {type_name}.{filter_name}")

    return list(requirements.values())


def _indexed_columns(sync_conn: sa.Connection, table_name: str) -> set[tuple[str, ...]]:
    inspector = sa.inspect(sync_conn)
    return {tuple(ix["column_names"]) for ix in inspector.get_indexes(table_name)}


async def create_required_indexes(
    connection: AsyncConnection,
    requirements: Iterable[IndexRequirement],
    graph: Graph | None = None,
) -> list[str]:
    """Create ``idx_<table>_<field>_search`` for every requirement lacking an index.

    Runs on the caller's connection and transaction. A failure on one index is
    logged and does not stop the others.

    Returns:
        Names of the indexes that were created.
    """
    graph = resolve_graph(graph)
    registry = graph.registry
    created: list[str] = []

    for requirement in requirements:
        registry.get_field(requirement.type, requirement.field)
        table = registry.get_table(requirement.type)
        name = f"idx_{table.name}_{requirement.field}_search"

        try:
            if (requirement.field,) in await connection.run_sync(_indexed_columns, table.name):
                logger.debug("Index on %s.%s already exists", table.name, requirement.field)
                continue

            index = sa.Index(name, table.c[requirement.field])
            try:
                await connection.run_sync(index.create)
            finally:
                # keep the shared MetaData free of tooling-only indexes
                table.indexes.discard(index)
        except SQLAlchemyError as exc:
            logger.warning("Failed to create index on %s.%s: %s", table.name, requirement.field, exc)
            continue

        logger.info("Created index %s on %s.%s", name, table.name, requirement.field)
        created.append(name)

    return created


def relgraph_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    return {fn.__name__: fn.cache_info() for fn in (_bfs_search, _hidden_fields, _structural_fields)}


def relgraph_cache_clear() -> None:
    """Clear all internal LRU caches."""
    for fn in (_bfs_search, _hidden_fields, _structural_fields):
        fn.cache_clear()
