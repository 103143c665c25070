"""Schema registry: declared entity types, their fields and relationships.

A ``Registry`` is built once at startup from ``EntityType`` declarations and is
read-only afterwards. It also owns one ``sa.Table`` per type, so batch queries
and join plans can be rendered with SQLAlchemy Core.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Literal

import sqlalchemy as sa

from .datastructures import frozendict
from .errors import FieldNotFoundError, SchemaNotFoundError


_COLUMN_TYPES: Final[dict[str, Callable[[], sa.types.TypeEngine[Any]]]] = {
    "id": sa.Integer,
    "integer": sa.Integer,
    "string": lambda: sa.String(255),
    "text": sa.Text,
    "boolean": sa.Boolean,
    "number": sa.Float,
    "date": sa.Date,
    "datetime": sa.DateTime,
}

IncludeStrategy = Literal["standard", "window"]


@dataclass(frozen=True, slots=True)
class Field:
    """A column of an entity type.

    ``belongs_to`` names the referenced type and ``alias`` the relationship
    name the foreign key is exposed under (``as`` in schema terms).
    """

    name: str
    type: str = "string"
    belongs_to: str | None = None
    alias: str | None = None
    indexed: bool = False
    nullable: bool = True


@dataclass(frozen=True, slots=True)
class IncludeConfig:
    """Per-relationship loading options.

    ``limit`` is a per-parent limit and only applies with ``strategy="window"``.
    ``order_by`` entries are field names, prefixed with ``-`` for descending.
    """

    order_by: tuple[str, ...] = ()
    limit: int | None = None
    strategy: IncludeStrategy = "standard"

    def __post_init__(self) -> None:
        object.__setattr__(self, "order_by", tuple(self.order_by))


@dataclass(frozen=True, slots=True)
class HasMany:
    """To-many relationship declaration.

    * plain: ``HasMany("comments", foreign_key="article_id")``
    * pivot: ``HasMany("tags", through="article_tags", foreign_key="article_id",
      other_key="tag_id")``
    * reverse polymorphic: ``HasMany("attachments", via="attachable")``
    """

    target: str
    foreign_key: str | None = None
    through: str | None = None
    other_key: str | None = None
    via: str | None = None
    include: IncludeConfig | None = None


@dataclass(frozen=True, slots=True)
class BelongsToPolymorphic:
    types: tuple[str, ...]
    type_field: str | None = None
    id_field: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "types", tuple(self.types))


Relationship = HasMany | BelongsToPolymorphic


@dataclass(frozen=True, slots=True)
class EntityType:
    name: str
    fields: tuple[Field, ...] = ()
    relationships: Mapping[str, Relationship] = field(default_factory=dict)
    table_name: str | None = None
    id_field: str = "id"

    def __post_init__(self) -> None:
        object.__setattr__(self, "fields", tuple(self.fields))
        object.__setattr__(self, "relationships", frozendict(self.relationships))


class Registry:
    """In-memory registry of entity types.

    Every accessor is cheap and side-effect free; nothing here talks to the
    database. Unknown types raise ``SchemaNotFoundError``.

    Example:
        >>> registry = Registry(
        ...     EntityType("people", fields=(Field("name", indexed=True),)),
        ...     EntityType(
        ...         "articles",
        ...         fields=(Field("author_id", "integer", belongs_to="people", alias="author"),),
        ...     ),
        ... )
        >>> registry.get_table_name("articles")
        'articles'
    """

    __slots__ = ("_entities", "_fields", "_tables", "metadata")

    def __init__(self, *entities: EntityType) -> None:
        self.metadata = sa.MetaData()
        self._entities: Mapping[str, EntityType] = frozendict(
            {entity.name: entity for entity in entities}
        )
        self._fields: Mapping[str, Mapping[str, Field]] = frozendict({
            entity.name: frozendict({f.name: f for f in entity.fields}) for entity in entities
        })
        self._tables: Mapping[str, sa.Table] = frozendict({
            entity.name: self._build_table(entity) for entity in entities
        })

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._entities

    def __iter__(self) -> Iterator[EntityType]:
        return iter(self._entities.values())

    @property
    def types(self) -> Sequence[str]:
        return tuple(self._entities)

    def get_entity(self, type_name: str) -> EntityType:
        try:
            return self._entities[type_name]
        except KeyError:
            raise SchemaNotFoundError(type_name) from None

    def get_fields(self, type_name: str) -> Sequence[Field]:
        return self.get_entity(type_name).fields

    def get_field(self, type_name: str, field_name: str) -> Field:
        """Return the declared field, treating the id column as an implicit field."""
        entity = self.get_entity(type_name)
        declared = self._fields[type_name].get(field_name)
        if declared is not None:
            return declared

        if field_name == entity.id_field:
            return Field(field_name, "id", indexed=True, nullable=False)

        raise FieldNotFoundError(type_name, field_name)

    def get_relationships(self, type_name: str) -> Mapping[str, Relationship]:
        return self.get_entity(type_name).relationships

    def get_table_name(self, type_name: str) -> str:
        entity = self.get_entity(type_name)
        return entity.table_name or entity.name

    def get_id_field(self, type_name: str) -> str:
        return self.get_entity(type_name).id_field

    def get_table(self, type_name: str) -> sa.Table:
        try:
            return self._tables[type_name]
        except KeyError:
            raise SchemaNotFoundError(type_name) from None

    def _build_table(self, entity: EntityType) -> sa.Table:
        columns: list[sa.Column[Any]] = []
        if entity.id_field not in {f.name for f in entity.fields}:
            columns.append(sa.Column(entity.id_field, sa.Integer, primary_key=True))

        for f in entity.fields:
            is_pk = f.name == entity.id_field
            columns.append(
                sa.Column(
                    f.name,
                    _column_type(f.type),
                    primary_key=is_pk,
                    nullable=False if is_pk else f.nullable,
                    index=f.indexed and not is_pk,
                )
            )

        # Columns referenced by polymorphic relationships must exist even when
        # the schema relies on the ``<name>_type`` / ``<name>_id`` defaults.
        declared = {c.name for c in columns}
        for name, rel in entity.relationships.items():
            if isinstance(rel, BelongsToPolymorphic):
                type_field = rel.type_field or f"{name}_type"
                id_field = rel.id_field or f"{name}_id"
                if type_field not in declared:
                    columns.append(sa.Column(type_field, sa.String(255)))
                if id_field not in declared:
                    columns.append(sa.Column(id_field, sa.Integer))
                declared |= {type_field, id_field}

        return sa.Table(entity.table_name or entity.name, self.metadata, *columns)


def _column_type(type_name: str) -> sa.types.TypeEngine[Any]:
    try:
        return _COLUMN_TYPES[type_name]()
    except KeyError:
        raise ValueError(
            f"Unknown field type {type_name!r}. Available: {sorted(_COLUMN_TYPES)}"
        ) from None
