from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any


class RelgraphError(Exception):
    """Base class for every error raised by sqla_relgraph."""


class SchemaNotFoundError(RelgraphError, LookupError):
    def __init__(self, type_name: str) -> None:
        self.type_name = type_name
        super().__init__(f"Type {type_name!r} is not registered")


class FieldNotFoundError(RelgraphError, LookupError):
    def __init__(self, type_name: str, field_name: str) -> None:
        self.type_name = type_name
        self.field_name = field_name
        super().__init__(f"Field {field_name!r} not found in type {type_name!r}")


class FieldNotIndexedError(RelgraphError, ValueError):
    """Raised when a cross-table filter targets a field without ``indexed=True``."""

    def __init__(self, type_name: str, field_name: str) -> None:
        self.type_name = type_name
        self.field_name = field_name
        super().__init__(
            f"Field '{type_name}.{field_name}' is not indexed. "
            f"Add 'indexed: true' (Field(..., indexed=True)) to allow cross-table search"
        )


class RelationshipNotFoundError(RelgraphError, LookupError):
    def __init__(self, from_type: str, to_type: str) -> None:
        self.from_type = from_type
        self.to_type = to_type
        super().__init__(f"No searchable relationship from {from_type!r} to {to_type!r}")


class CircularReferenceError(RelgraphError, ValueError):
    """Raised when a join chain revisits a type.

    ``cycle`` holds every type on the offending path, the repeated type last.
    """

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        super().__init__(f"Circular reference detected in path: {' -> '.join(self.cycle)}")


class InvalidPathError(RelgraphError, ValueError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Invalid cross-table path {path!r}: {reason}")


class UnsupportedFeatureError(RelgraphError):
    def __init__(self, feature: str, dialect: str, version: Sequence[Any] = ()) -> None:
        self.feature = feature
        self.dialect = dialect
        self.version = tuple(version)
        version_str = ".".join(str(part) for part in self.version) or "unknown version"
        super().__init__(f"{feature} not supported by {dialect} ({version_str})")


class UnknownRelationshipError(RelgraphError):
    """Describes an include name that no relationship handles.

    Never raised by the loader: it is only formatted into a warning, and the
    branch is skipped.
    """

    def __init__(self, type_name: str, name: str, available: Sequence[str] = ()) -> None:
        self.type_name = type_name
        self.name = name
        self.available = tuple(available)
        super().__init__(
            f"Unknown relationship {name!r} on {type_name!r} "
            f"(available: {', '.join(self.available) or 'none'})"
        )


class IncludeLoadError(RelgraphError):
    """A batch query failed while resolving includes.

    ``context`` carries the failing ``type``, ``relationship`` and ``path``.
    """

    def __init__(self, type_name: str, relationship: str, path: str) -> None:
        self.context: Mapping[str, str] = {
            "type": type_name,
            "relationship": relationship,
            "path": path,
        }
        super().__init__(
            f"Failed to load relationship {relationship!r} for {type_name!r} at {path!r}"
        )
