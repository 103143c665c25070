from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar


K = TypeVar("K")
V = TypeVar("V")

ResourceKey = tuple[str, str]


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Used for the compiled relationship graph so that a ``Graph`` can be shared
    between requests and used as an ``lru_cache`` key without anyone mutating
    the edges underneath it.

    Example:
        >>> fd = frozendict({"articles": ()})
        >>> fd["articles"]
        ()
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash = hash(frozenset(self._dict.items()))

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        return self._hash


class IncludeNode(Mapping[str, "IncludeNode"]):
    """One node of an include tree: relationship name -> child node.

    The root node has an empty ``name``. Nodes compare equal to plain nested
    dicts, so ``parse_include_tree("a,a.b") == {"a": {"b": {}}}``.
    """

    __slots__ = ("_children", "name")

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._children: dict[str, IncludeNode] = {}

    def insert(self, parts: Iterable[str]) -> None:
        """Insert a split dotted path, merging with existing prefixes."""
        current = self
        for part in parts:
            child = current._children.get(part)  # noqa: SLF001
            if child is None:
                child = current._children[part] = IncludeNode(part)  # noqa: SLF001
            current = child

    def __getitem__(self, key: str) -> IncludeNode:
        return self._children[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._children)

    def __len__(self) -> int:
        return len(self._children)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, IncludeNode):
            return self._children == other._children

        if isinstance(other, dict):
            return self._children == other

        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def to_dict(self) -> dict[str, Any]:
        return {name: child.to_dict() for name, child in self._children.items()}

    def paths(self, prefix: str = "") -> list[str]:
        """Return every leaf path below this node in insertion order."""
        out: list[str] = []
        for name, child in self._children.items():
            path = f"{prefix}.{name}" if prefix else name
            if child:
                out.extend(child.paths(path))
            else:
                out.append(path)
        return out

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} {self.to_dict()!r}>"


@dataclass(slots=True, eq=False)
class Resource:
    """A record transformed into a resource object.

    ``row`` keeps the selected columns so the loader can read foreign keys
    when it recurses from this resource.
    """

    type: str
    id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    relationships: dict[str, dict[str, Any]] = field(default_factory=dict)
    row: Mapping[str, Any] = field(default_factory=dict, repr=False)

    @property
    def key(self) -> ResourceKey:
        return (self.type, self.id)

    def identifier(self) -> dict[str, str]:
        return {"type": self.type, "id": self.id}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type, "id": self.id, "attributes": dict(self.attributes)}
        if self.relationships:
            out["relationships"] = {name: dict(rel) for name, rel in self.relationships.items()}
        return out


class IncludedResourceSet(Mapping[ResourceKey, Resource]):
    """Resources keyed by ``(type, id)``; the first resource added for a key wins."""

    __slots__ = ("_resources",)

    def __init__(self) -> None:
        self._resources: dict[ResourceKey, Resource] = {}

    def add(self, resource: Resource) -> Resource:
        """Store *resource* unless its key is taken; return the stored entry."""
        return self._resources.setdefault(resource.key, resource)

    def get_resource(self, type_name: str, id_: Any) -> Resource | None:
        return self._resources.get((type_name, str(id_)))

    def __getitem__(self, key: ResourceKey) -> Resource:
        return self._resources[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._resources

    def __iter__(self) -> Iterator[ResourceKey]:
        return iter(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {list(self._resources)!r}>"
