from __future__ import annotations

import enum
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import ClassVar, Literal, final

from .datastructures import frozendict
from .schema import BelongsToPolymorphic, HasMany, IncludeConfig, Registry


Cardinality = Literal["one", "many"]


class RelationshipKind(enum.Enum):
    BELONGS_TO = "belongsTo"
    HAS_MANY = "hasMany"
    MANY_TO_MANY = "manyToMany"
    POLYMORPHIC = "polymorphic"
    REVERSE_POLYMORPHIC = "reversePolymorphic"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class BelongsToEdge:
    """``source.foreign_key`` references ``target``'s id.

    ``name`` is the field alias; edges without one can be joined through but
    not included.
    """

    kind: ClassVar[RelationshipKind] = RelationshipKind.BELONGS_TO
    cardinality: ClassVar[Cardinality] = "one"

    source: str
    target: str
    name: str | None
    foreign_key: str


@dataclass(frozen=True, slots=True)
class HasManyEdge:
    kind: ClassVar[RelationshipKind] = RelationshipKind.HAS_MANY
    cardinality: ClassVar[Cardinality] = "many"

    source: str
    target: str
    name: str
    foreign_key: str
    include: IncludeConfig | None = None


@dataclass(frozen=True, slots=True)
class ManyToManyEdge:
    """``source`` reaches ``target`` through rows of the ``through`` pivot type."""

    kind: ClassVar[RelationshipKind] = RelationshipKind.MANY_TO_MANY
    cardinality: ClassVar[Cardinality] = "many"

    source: str
    target: str
    name: str
    through: str
    foreign_key: str
    other_key: str
    include: IncludeConfig | None = None


@dataclass(frozen=True, slots=True)
class PolymorphicEdge:
    """``source`` points at one of ``allowed_types`` via ``(type_field, id_field)``."""

    kind: ClassVar[RelationshipKind] = RelationshipKind.POLYMORPHIC
    cardinality: ClassVar[Cardinality] = "one"

    source: str
    name: str
    type_field: str
    id_field: str
    allowed_types: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ReversePolymorphicEdge:
    """Every ``target`` row whose polymorphic relation ``via`` points back at ``source``.

    ``via`` is only resolved when the edge is used, so a misdeclared ``via``
    degrades into an unknown relationship instead of a schema load error.
    """

    kind: ClassVar[RelationshipKind] = RelationshipKind.REVERSE_POLYMORPHIC
    cardinality: ClassVar[Cardinality] = "many"

    source: str
    target: str
    name: str
    via: str
    include: IncludeConfig | None = None


Edge = BelongsToEdge | HasManyEdge | ManyToManyEdge | PolymorphicEdge | ReversePolymorphicEdge

# Order in which structural to-many edges win over plain foreign keys.
_TO_MANY_PRIORITY: tuple[type[Edge], ...] = (ReversePolymorphicEdge, ManyToManyEdge, HasManyEdge)


def _compile_relationship(source: str, name: str, rel: HasMany | BelongsToPolymorphic) -> Edge:
    if isinstance(rel, BelongsToPolymorphic):
        return PolymorphicEdge(
            source=source,
            name=name,
            type_field=rel.type_field or f"{name}_type",
            id_field=rel.id_field or f"{name}_id",
            allowed_types=rel.types,
        )

    if rel.via:
        return ReversePolymorphicEdge(
            source=source, target=rel.target, name=name, via=rel.via, include=rel.include
        )

    if rel.through:
        if not rel.foreign_key or not rel.other_key:
            raise ValueError(
                f"Missing foreign_key or other_key in many-to-many relationship "
                f"{name!r} for type {source!r}"
            )
        return ManyToManyEdge(
            source=source,
            target=rel.target,
            name=name,
            through=rel.through,
            foreign_key=rel.foreign_key,
            other_key=rel.other_key,
            include=rel.include,
        )

    if not rel.foreign_key:
        raise ValueError(f"Missing foreign_key in hasMany relationship {name!r} for type {source!r}")

    return HasManyEdge(
        source=source,
        target=rel.target,
        name=name,
        foreign_key=rel.foreign_key,
        include=rel.include,
    )


def get_edges(registry: Registry) -> Mapping[str, Sequence[Edge]]:
    """Compile every declared relationship of *registry* into typed edges.

    Edges keep declaration order: foreign-key fields first, then the
    relationship map.

    Raises:
        ValueError: If a to-many relationship lacks its key columns.
    """
    compiled: dict[str, tuple[Edge, ...]] = {}
    for entity in registry:
        edges: list[Edge] = [
            BelongsToEdge(
                source=entity.name,
                target=f.belongs_to,
                name=f.alias,
                foreign_key=f.name,
            )
            for f in entity.fields
            if f.belongs_to
        ]
        edges.extend(
            _compile_relationship(entity.name, name, rel)
            for name, rel in entity.relationships.items()
        )
        compiled[entity.name] = tuple(edges)

    return frozendict(compiled)


@final
class Graph:
    """Typed, read-only view of the relationship graph of a ``Registry``.

    Lookups never touch the database and never raise: a missing edge is
    reported as ``None`` and the caller decides whether that is fatal.

    A process-wide default can be installed once at startup with
    :func:`init_graph`; every public entry point accepts ``graph=`` to
    override it.
    """

    __slots__ = ("_edges", "registry")

    _default: ClassVar[Graph | None] = None

    def __init__(self, registry: Registry) -> None:
        self.registry = registry
        self._edges = get_edges(registry)

    @classmethod
    def default(cls) -> Graph:
        if cls._default is None:
            raise RuntimeError("Graph is not initialized, call init_graph() first")

        return cls._default

    @classmethod
    def reset(cls) -> None:
        """Drop the default graph (primarily for tests)."""
        cls._default = None

    @property
    def edges(self) -> Mapping[str, Sequence[Edge]]:
        return self._edges

    def get(self, type_name: str) -> Sequence[Edge]:
        return self._edges.get(type_name, ())

    def __getitem__(self, type_name: str) -> Sequence[Edge]:
        return self._edges[type_name]

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._edges

    def find_belongs_to(self, type_name: str, target: str) -> BelongsToEdge | None:
        return next(
            (
                edge
                for edge in self.get(type_name)
                if isinstance(edge, BelongsToEdge) and edge.target == target
            ),
            None,
        )

    def find_has_many(
        self, type_name: str, target: str
    ) -> HasManyEdge | ManyToManyEdge | ReversePolymorphicEdge | None:
        """Find a to-many edge to *target*, preferring reverse-polymorphic,
        then many-to-many, then plain foreign key; ties go to declaration order.
        """
        edges = self.get(type_name)
        for edge_cls in _TO_MANY_PRIORITY:
            for edge in edges:
                if (
                    isinstance(edge, edge_cls)
                    and edge.target == target  # type: ignore[union-attr]
                    and self._is_traversable(edge)
                ):
                    return edge  # type: ignore[return-value]

        return None

    def find_polymorphic(self, type_name: str, relation_name: str) -> PolymorphicEdge | None:
        return next(
            (
                edge
                for edge in self.get(type_name)
                if isinstance(edge, PolymorphicEdge) and edge.name == relation_name
            ),
            None,
        )

    def resolve_via(self, edge: ReversePolymorphicEdge) -> PolymorphicEdge | None:
        """Return the polymorphic edge on the target that *edge* reads through."""
        return self.find_polymorphic(edge.target, edge.via)

    def _is_traversable(self, edge: Edge) -> bool:
        return not isinstance(edge, ReversePolymorphicEdge) or self.resolve_via(edge) is not None

    def find_polymorphic_to(self, type_name: str, target: str) -> PolymorphicEdge | None:
        return next(
            (
                edge
                for edge in self.get(type_name)
                if isinstance(edge, PolymorphicEdge) and target in edge.allowed_types
            ),
            None,
        )

    def find_edge_to(self, type_name: str, target: str) -> Edge | None:
        """Best direct edge from *type_name* to *target* for a join chain."""
        return (
            self.find_has_many(type_name, target)
            or self.find_belongs_to(type_name, target)
            or self.find_polymorphic_to(type_name, target)
        )

    def find_edge(self, type_name: str, name: str) -> Edge | None:
        """Find the edge an include name refers to.

        Field aliases of belongsTo edges are checked before the relationship map.
        """
        edges = self.get(type_name)
        for edge in edges:
            if isinstance(edge, BelongsToEdge) and edge.name == name:
                return edge

        return next(
            (edge for edge in edges if not isinstance(edge, BelongsToEdge) and edge.name == name),
            None,
        )

    def neighbours(self, type_name: str) -> Iterator[tuple[Edge, str]]:
        """Yield ``(edge, target_type)`` pairs in join-chain priority order."""
        edges = self.get(type_name)
        for edge_cls in (*_TO_MANY_PRIORITY, BelongsToEdge):
            for edge in edges:
                if isinstance(edge, edge_cls) and self._is_traversable(edge):
                    yield edge, edge.target  # type: ignore[union-attr]

        for edge in edges:
            if isinstance(edge, PolymorphicEdge):
                for target in edge.allowed_types:
                    yield edge, target

    def __repr__(self) -> str:
        return f"<{type(self).__name__} types={list(self._edges)!r}>"


def resolve_graph(graph: Graph | None) -> Graph:
    return graph if graph is not None else Graph.default()


def init_graph(registry: Registry) -> Graph:
    """Compile *registry* and install it as the default graph.

    Call once during application startup.

    The join-chain and field caches are keyed on graph instances, so a replaced
    default stays referenced by them until ``relgraph_cache_clear()`` runs.

    Example:
        >>> graph = init_graph(Registry(*entity_types))
        >>> Graph.default() is graph
        True
    """
    graph = Graph(registry)
    Graph._default = graph  # noqa: SLF001
    return graph
