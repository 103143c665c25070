"""Relationship graph resolution for SQLAlchemy.

sqla_relgraph answers two questions about a declared resource schema: how to
reach a field on a related type as a chain of joins (``resolve_join_chain``),
and how to eagerly load a tree of relationships for a set of records with a
fixed number of queries per level (``resolve_includes``). Declare the schema
with ``Registry`` and install it once at startup with ``init_graph``.
"""

from ._version import __version__, __version_tuple__
from .datastructures import IncludedResourceSet, IncludeNode, Resource, frozendict
from .errors import (
    CircularReferenceError,
    FieldNotFoundError,
    FieldNotIndexedError,
    IncludeLoadError,
    InvalidPathError,
    RelationshipNotFoundError,
    RelgraphError,
    SchemaNotFoundError,
    UnknownRelationshipError,
    UnsupportedFeatureError,
)
from .graph import Graph, RelationshipKind, get_edges, init_graph
from .includes import classify_relationship, parse_include_tree
from .joins import (
    IndexRequirement,
    JoinPlan,
    JoinStep,
    apply_join_plan,
    create_required_indexes,
    make_alias,
    relgraph_cache_clear,
    relgraph_cache_info,
    required_indexes,
    resolve_join_chain,
)
from .loader import (
    DEFAULT_INCLUDE_LIMIT,
    MAX_INCLUDE_LIMIT,
    BatchLoader,
    Capabilities,
    IncludeResult,
    resolve_includes,
)
from .schema import BelongsToPolymorphic, EntityType, Field, HasMany, IncludeConfig, Registry
from .tools import get_table_names, resolve_col


__all__ = (
    "DEFAULT_INCLUDE_LIMIT",
    "MAX_INCLUDE_LIMIT",
    "BatchLoader",
    "BelongsToPolymorphic",
    "Capabilities",
    "CircularReferenceError",
    "EntityType",
    "Field",
    "FieldNotFoundError",
    "FieldNotIndexedError",
    "Graph",
    "HasMany",
    "IncludeConfig",
    "IncludeLoadError",
    "IncludeNode",
    "IncludeResult",
    "IncludedResourceSet",
    "IndexRequirement",
    "InvalidPathError",
    "JoinPlan",
    "JoinStep",
    "Registry",
    "RelationshipKind",
    "RelationshipNotFoundError",
    "RelgraphError",
    "Resource",
    "SchemaNotFoundError",
    "UnknownRelationshipError",
    "UnsupportedFeatureError",
    "__version__",
    "__version_tuple__",
    "apply_join_plan",
    "classify_relationship",
    "create_required_indexes",
    "frozendict",
    "get_edges",
    "get_table_names",
    "init_graph",
    "make_alias",
    "parse_include_tree",
    "relgraph_cache_clear",
    "relgraph_cache_info",
    "required_indexes",
    "resolve_col",
    "resolve_includes",
    "resolve_join_chain",
)
