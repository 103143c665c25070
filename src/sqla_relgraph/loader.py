"""Batch loading of include trees.

Each relationship level costs a fixed number of queries (one, two for
many-to-many, one per discriminator value for polymorphic) no matter how many
parent records there are.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, NamedTuple


if sys.version_info >= (3, 11):
    from typing import TypedDict, Unpack
else:
    from typing_extensions import TypedDict, Unpack

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from .datastructures import IncludedResourceSet, IncludeNode, Resource, ResourceKey
from .errors import IncludeLoadError, UnknownRelationshipError, UnsupportedFeatureError
from .graph import (
    BelongsToEdge,
    Edge,
    Graph,
    HasManyEdge,
    ManyToManyEdge,
    PolymorphicEdge,
    ReversePolymorphicEdge,
    resolve_graph,
)
from .includes import parse_include_tree
from .schema import IncludeConfig
from .tools import FieldSelection, group_by_polymorphic_type, select_columns, to_resource, unique_values


logger = logging.getLogger(__name__)

DEFAULT_INCLUDE_LIMIT: Final[int] = 20
MAX_INCLUDE_LIMIT: Final[int] = 1000
ROW_NUMBER_KEY: Final[str] = "_relgraph_rn"

# Minimum server versions with ROW_NUMBER() OVER (PARTITION BY ...).
_WINDOW_FUNCTION_SUPPORT: Final[dict[str, tuple[int, ...]]] = {
    "postgresql": (),
    "mssql": (),
    "mysql": (8, 0),
    "mariadb": (10, 2),
    "sqlite": (3, 25),
}

Executor = AsyncConnection | AsyncSession
Batch = dict[ResourceKey, Resource]


@dataclass(frozen=True, slots=True)
class Capabilities:
    """What the connected database can do beyond plain ``SELECT ... IN``."""

    window_functions: bool = True
    dialect: str = "unknown"
    version: tuple[int, ...] = ()

    @classmethod
    def from_dialect(cls, dialect: sa.Dialect) -> Capabilities:
        name = "mariadb" if getattr(dialect, "is_mariadb", False) else dialect.name
        info: Iterable[Any] = dialect.server_version_info or ()
        if not info and name == "sqlite":
            info = getattr(dialect.dbapi, "sqlite_version_info", ())
        version = tuple(part for part in info if isinstance(part, int))

        minimum = _WINDOW_FUNCTION_SUPPORT.get(name)
        supported = minimum is not None and (not minimum or version >= minimum)
        return cls(window_functions=supported, dialect=name, version=version)


class IncludeOptions(TypedDict, total=False):
    fields: FieldSelection | None
    graph: Graph | None
    capabilities: Capabilities | None


class IncludeResult(NamedTuple):
    included: list[Resource]
    records: list[Resource]


def _as_mapping(record: Any) -> Mapping[str, Any]:
    """Accept ``Row`` objects as well as plain mappings."""
    return record._mapping if hasattr(record, "_mapping") else record  # noqa: SLF001


def _get_dialect(executor: Executor) -> sa.Dialect:
    if isinstance(executor, AsyncSession):
        return executor.get_bind().dialect
    return executor.dialect


def _order_clauses(table: sa.Table, order_by: Sequence[str]) -> list[sa.UnaryExpression[Any]]:
    """Translate ``("-created_at", "title")`` into ORDER BY clauses of *table*."""
    clauses: list[sa.UnaryExpression[Any]] = []
    for entry in order_by:
        name = entry.removeprefix("-")
        if name not in table.c:
            logger.warning("Ignoring unknown order_by field %r for %s", name, table.name)
            continue
        column = table.c[name]
        clauses.append(column.desc() if entry.startswith("-") else column.asc())
    return clauses


class BatchLoader:
    """Loads one include tree for one set of root records.

    A loader owns the included set and the processed-path guard of a single
    top-level call. Relationship branches run one after another on the same
    executor, which is never committed or rolled back here.

    Example:
        >>> loader = BatchLoader(connection, fields={"people": ["name"]})
        >>> result = await loader.load(rows, "articles", "author,comments.author")
        >>> [r.key for r in result.included]
        [('people', '10'), ('comments', '1'), ...]
    """

    __slots__ = ("_capabilities", "executor", "fields", "graph", "included", "processed")

    def __init__(
        self,
        executor: Executor,
        *,
        fields: FieldSelection | None = None,
        graph: Graph | None = None,
        capabilities: Capabilities | None = None,
    ) -> None:
        self.executor = executor
        self.fields = fields
        self.graph = resolve_graph(graph)
        self.included = IncludedResourceSet()
        self.processed: set[tuple[str, str]] = set()
        self._capabilities = capabilities

    @property
    def capabilities(self) -> Capabilities:
        if self._capabilities is None:
            self._capabilities = Capabilities.from_dialect(_get_dialect(self.executor))
        return self._capabilities

    async def load(
        self,
        records: Iterable[Any],
        type_name: str,
        include: IncludeNode | str | Iterable[str] | None,
    ) -> IncludeResult:
        self.graph.registry.get_entity(type_name)
        tree = include if isinstance(include, IncludeNode) else parse_include_tree(include)
        resources = [
            to_resource(self.graph, type_name, _as_mapping(record), self.fields) for record in records
        ]
        if tree and resources:
            await self._process_level(resources, type_name, tree, "")

        return IncludeResult(included=list(self.included.values()), records=resources)

    async def _process_level(
        self, parents: Sequence[Resource], type_name: str, node: IncludeNode, prefix: str
    ) -> None:
        for name, child in node.items():
            path = f"{prefix}.{name}" if prefix else name
            if (type_name, path) in self.processed:
                logger.debug("Skipping already processed include %r on %s", path, type_name)
                continue
            self.processed.add((type_name, path))

            edge = self.graph.find_edge(type_name, name)
            available = [e.name for e in self.graph.get(type_name) if e.name]
            if edge is None:
                logger.warning(
                    "%s; skipping include %r", UnknownRelationshipError(type_name, name, available), path
                )
                continue

            problem = self._missing_schema(edge)
            if problem is not None:
                logger.warning(
                    "%s: %s; skipping include %r",
                    UnknownRelationshipError(type_name, name, available),
                    problem,
                    path,
                )
                for parent in parents:
                    parent.relationships[name] = {"data": None if edge.cardinality == "one" else []}
                continue

            try:
                loaded = await self._load_edge(edge, parents, path)
            except SQLAlchemyError as exc:
                raise IncludeLoadError(type_name, name, path) from exc

            if not child:
                continue

            for target_type, batch in loaded.items():
                if batch:
                    await self._process_level(list(batch.values()), target_type, child, path)

    def _missing_schema(self, edge: Edge) -> str | None:
        """Describe a type or column *edge* needs that the registry lacks.

        Polymorphic targets are checked per discriminator value while loading.
        """
        required: list[tuple[str, tuple[str, ...]]]
        match edge:
            case BelongsToEdge() | ReversePolymorphicEdge():
                required = [(edge.target, ())]
            case HasManyEdge():
                required = [(edge.target, (edge.foreign_key,))]
            case ManyToManyEdge():
                required = [(edge.through, (edge.foreign_key, edge.other_key)), (edge.target, ())]
            case _:
                return None

        registry = self.graph.registry
        for type_name, columns in required:
            if type_name not in registry:
                return f"type {type_name!r} is not registered"
            table = registry.get_table(type_name)
            missing = [column for column in columns if column not in table.c]
            if missing:
                return f"{type_name!r} has no column {', '.join(map(repr, missing))}"
        return None

    async def _load_edge(
        self, edge: Edge, parents: Sequence[Resource], path: str
    ) -> dict[str, Batch]:
        logger.debug(
            "Loading %s %s.%s for %d parent(s)", edge.kind.value, edge.source, path, len(parents)
        )
        match edge:
            case BelongsToEdge():
                return await self._load_belongs_to(edge, parents)
            case HasManyEdge():
                return await self._load_has_many(edge, parents)
            case ManyToManyEdge():
                return await self._load_many_to_many(edge, parents)
            case PolymorphicEdge():
                return await self._load_polymorphic(edge, parents)
            case ReversePolymorphicEdge():
                return await self._load_reverse_polymorphic(edge, parents, path)

        raise TypeError(f"Unsupported edge {edge!r}")  # pragma: no cover

    async def _fetch(self, query: sa.Select[Any]) -> Sequence[Mapping[str, Any]]:
        result = await self.executor.execute(query)
        return result.mappings().all()

    def _include(self, type_name: str, row: Mapping[str, Any]) -> Resource:
        """Return the included resource for *row*, transforming it only once."""
        id_ = row[self.graph.registry.get_id_field(type_name)]
        existing = self.included.get_resource(type_name, id_)
        if existing is not None:
            return existing
        return self.included.add(to_resource(self.graph, type_name, row, self.fields))

    def _order_and_limit(
        self,
        query: sa.Select[Any],
        config: IncludeConfig | None,
        partition_by: sa.ColumnElement[Any],
        order: Sequence[sa.ColumnElement[Any]],
        tiebreak: sa.ColumnElement[Any],
    ) -> sa.Select[Any]:
        """Order *query* and keep at most ``config.limit`` rows per *partition_by* value.

        The limit only applies with ``strategy="window"``; without window
        function support the ordered, unlimited query is returned.
        """
        ordered = query.order_by(*order) if order else query
        if config is None or config.strategy != "window":
            return ordered

        capabilities = self.capabilities
        if not capabilities.window_functions:
            error = UnsupportedFeatureError(
                "Window functions", capabilities.dialect, capabilities.version
            )
            logger.warning("%s; loading without a per-parent limit", error)
            return ordered

        limit = config.limit if config.limit is not None else DEFAULT_INCLUDE_LIMIT
        limit = min(limit, MAX_INCLUDE_LIMIT)
        row_number = (
            sa.func.row_number()
            .over(partition_by=partition_by, order_by=[*order, tiebreak])
            .label(ROW_NUMBER_KEY)
        )
        inner = query.add_columns(row_number).subquery()
        keys = [column.key for column in query.selected_columns]
        return (
            sa.select(*(inner.c[key] for key in keys))
            .where(inner.c[ROW_NUMBER_KEY] <= limit)
            .order_by(inner.c[partition_by.key], inner.c[ROW_NUMBER_KEY])
        )

    async def _load_belongs_to(
        self, edge: BelongsToEdge, parents: Sequence[Resource]
    ) -> dict[str, Batch]:
        registry = self.graph.registry
        ids = unique_values((parent.row for parent in parents), edge.foreign_key)
        batch: Batch = {}

        if ids:
            table = registry.get_table(edge.target)
            query = sa.select(*select_columns(self.graph, edge.target, self.fields)).where(
                table.c[registry.get_id_field(edge.target)].in_(ids)
            )
            for row in await self._fetch(query):
                resource = self._include(edge.target, row)
                batch[resource.key] = resource

        for parent in parents:
            fk = parent.row.get(edge.foreign_key)
            target = batch.get((edge.target, str(fk))) if fk is not None else None
            parent.relationships[edge.name or edge.foreign_key] = {
                "data": target.identifier() if target is not None else None
            }

        return {edge.target: batch}

    async def _load_has_many(
        self, edge: HasManyEdge, parents: Sequence[Resource]
    ) -> dict[str, Batch]:
        registry = self.graph.registry
        source_id = registry.get_id_field(edge.source)
        ids = unique_values((parent.row for parent in parents), source_id)
        batch: Batch = {}
        grouped: dict[Any, list[Resource]] = {}

        if ids:
            table = registry.get_table(edge.target)
            fk = table.c[edge.foreign_key]
            order = _order_clauses(table, edge.include.order_by if edge.include else ())
            query = sa.select(
                *select_columns(self.graph, edge.target, self.fields, required=(edge.foreign_key,))
            ).where(fk.in_(ids))
            query = self._order_and_limit(
                query, edge.include, fk, order, table.c[registry.get_id_field(edge.target)]
            )
            for row in await self._fetch(query):
                resource = self._include(edge.target, row)
                batch[resource.key] = resource
                grouped.setdefault(row[edge.foreign_key], []).append(resource)

        for parent in parents:
            members = grouped.get(parent.row.get(source_id), [])
            parent.relationships[edge.name] = {"data": [member.identifier() for member in members]}

        return {edge.target: batch}

    async def _load_many_to_many(
        self, edge: ManyToManyEdge, parents: Sequence[Resource]
    ) -> dict[str, Batch]:
        registry = self.graph.registry
        source_id = registry.get_id_field(edge.source)
        ids = unique_values((parent.row for parent in parents), source_id)
        batch: Batch = {}
        membership: dict[Any, list[Any]] = {}

        if ids:
            pivot = registry.get_table(edge.through)
            fk, other = pivot.c[edge.foreign_key], pivot.c[edge.other_key]
            pivot_query = self._order_and_limit(
                sa.select(fk, other).where(fk.in_(ids)), edge.include, fk, [fk], other
            )
            pivot_rows = await self._fetch(pivot_query)

            for row in pivot_rows:
                members = membership.setdefault(row[edge.foreign_key], [])
                if row[edge.other_key] not in members:
                    members.append(row[edge.other_key])

            other_ids = unique_values(pivot_rows, edge.other_key)
            if other_ids:
                table = registry.get_table(edge.target)
                order = _order_clauses(table, edge.include.order_by if edge.include else ())
                query = sa.select(*select_columns(self.graph, edge.target, self.fields)).where(
                    table.c[registry.get_id_field(edge.target)].in_(other_ids)
                )
                for row in await self._fetch(query.order_by(*order) if order else query):
                    resource = self._include(edge.target, row)
                    batch[resource.key] = resource

        position = {key: index for index, key in enumerate(batch)}
        for parent in parents:
            keys = [
                (edge.target, str(other_id))
                for other_id in membership.get(parent.row.get(source_id), [])
                if (edge.target, str(other_id)) in batch
            ]
            keys.sort(key=position.__getitem__)
            parent.relationships[edge.name] = {"data": [batch[key].identifier() for key in keys]}

        return {edge.target: batch}

    async def _load_polymorphic(
        self, edge: PolymorphicEdge, parents: Sequence[Resource]
    ) -> dict[str, Batch]:
        registry = self.graph.registry
        groups = group_by_polymorphic_type(
            (parent.row for parent in parents), edge.type_field, edge.id_field
        )
        batches: dict[str, Batch] = {}

        for target_type, ids in groups.items():
            if target_type not in edge.allowed_types or target_type not in registry:
                logger.warning(
                    "Skipping %s.%s target type %r: allowed types are %s",
                    edge.source,
                    edge.name,
                    target_type,
                    list(edge.allowed_types),
                )
                continue

            table = registry.get_table(target_type)
            query = sa.select(*select_columns(self.graph, target_type, self.fields)).where(
                table.c[registry.get_id_field(target_type)].in_(ids)
            )
            batch = batches.setdefault(target_type, {})
            for row in await self._fetch(query):
                resource = self._include(target_type, row)
                batch[resource.key] = resource

        for parent in parents:
            target_type = parent.row.get(edge.type_field)
            target_id = parent.row.get(edge.id_field)
            target = (
                batches.get(target_type, {}).get((target_type, str(target_id)))
                if target_type and target_id is not None
                else None
            )
            parent.relationships[edge.name] = {
                "data": target.identifier() if target is not None else None
            }

        return batches

    async def _load_reverse_polymorphic(
        self, edge: ReversePolymorphicEdge, parents: Sequence[Resource], path: str
    ) -> dict[str, Batch]:
        registry = self.graph.registry
        via = self.graph.resolve_via(edge)
        if via is None:
            available = [e.name for e in self.graph.get(edge.target) if isinstance(e, PolymorphicEdge)]
            logger.warning(
                "%s; skipping include %r",
                UnknownRelationshipError(edge.target, edge.via, available),
                path,
            )
            return {}

        source_id = registry.get_id_field(edge.source)
        ids = unique_values((parent.row for parent in parents), source_id)
        batch: Batch = {}
        grouped: dict[Any, list[Resource]] = {}

        if ids:
            table = registry.get_table(edge.target)
            owner_id = table.c[via.id_field]
            order = _order_clauses(table, edge.include.order_by if edge.include else ())
            query = sa.select(
                *select_columns(
                    self.graph, edge.target, self.fields, required=(via.type_field, via.id_field)
                )
            ).where(table.c[via.type_field] == edge.source, owner_id.in_(ids))
            query = self._order_and_limit(
                query, edge.include, owner_id, order, table.c[registry.get_id_field(edge.target)]
            )
            for row in await self._fetch(query):
                resource = self._include(edge.target, row)
                batch[resource.key] = resource
                grouped.setdefault(row[via.id_field], []).append(resource)

        for parent in parents:
            members = grouped.get(parent.row.get(source_id), [])
            parent.relationships[edge.name] = {"data": [member.identifier() for member in members]}

        return {edge.target: batch}


async def resolve_includes(
    executor: Executor,
    records: Iterable[Any],
    type_name: str,
    include: IncludeNode | str | Iterable[str] | None,
    **options: Unpack[IncludeOptions],
) -> IncludeResult:
    """Eagerly load *include* for *records* of *type_name*.

    Args:
        executor: ``AsyncConnection`` or ``AsyncSession`` carrying the caller's
            transaction; every batch query runs on it.
        records: Rows (mappings or ``Row`` objects) of *type_name*.
        type_name: Registered type of *records*.
        include: Parsed ``IncludeNode`` or include paths, e.g. ``"author,comments.author"``.

    Keyword Args:
        fields: Sparse field selection, ``{"people": ["name"]}``. Identifier,
            foreign-key and discriminator columns are always selected.
        graph: Relationship graph, defaults to ``Graph.default()``.
        capabilities: Database capabilities; detected from the dialect when omitted.

    Returns:
        ``IncludeResult(included, records)``: the deduplicated related
        resources and *records* as linked resources.

    Unknown include names are logged and skipped. A relationship whose target,
    pivot type or key column is missing from the registry is logged too, and
    its linkage is left ``None`` or empty.

    Raises:
        SchemaNotFoundError: If *type_name* is not registered.
        IncludeLoadError: If a batch query fails; the original error is chained.
    """
    loader = BatchLoader(executor, **options)
    return await loader.load(records, type_name, include)
