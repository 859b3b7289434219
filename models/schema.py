"""
Wrangler Schema Definition
==========================
Declares the attributes of one model kind: default value, whether the
attribute is secondary-indexed, required, silent (no change signals)
and enumerable (persisted into the record).

Definitions are plain dicts:

    Schema({
        "username": {"indexed": True, "required": True},
        "email": {"default": "email address"},
        "visits": 0,                       # plain value → default
    })

Adding an attribute that already exists raises unless forced, either per
attribute ({"force": True, ...}) or with add(..., force=True). A schema
is frozen when a Factory takes ownership of it; after that it can no
longer change.
"""

import copy
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from models.errors import ValidationError

_ATTR_KEYS = {"default", "indexed", "index", "required", "silent",
              "enumerable", "force", "value"}


def validate_name(name: Any, what: str = "Attribute") -> str:
    """Attribute/kind names: non-empty str, no private prefix, no NUL."""
    if not isinstance(name, str) or not name:
        raise ValidationError(f"{what} name must be a non-empty string, got {name!r}")
    if name.startswith("_"):
        raise ValidationError(f"{what} name '{name}' uses the private '_' prefix")
    if "\x00" in name:
        raise ValidationError(f"{what} name {name!r} contains a NUL character")
    return name


@dataclass(frozen=True)
class SchemaAttribute:
    """Definition of a single model attribute."""
    name: str
    default: Any = None
    indexed: bool = False
    required: bool = False
    silent: bool = False
    enumerable: Optional[bool] = None

    def __post_init__(self):
        if self.enumerable is None:
            object.__setattr__(self, "enumerable", not self.silent)

    def default_value(self) -> Any:
        """Fresh copy of the default so instances never share mutable state."""
        return copy.deepcopy(self.default)

    def to_dict(self) -> dict:
        d: dict = {"indexed": self.indexed, "required": self.required,
                   "silent": self.silent, "enumerable": self.enumerable}
        if self.default is not None:
            d["default"] = self.default
        return d

    @classmethod
    def from_definition(cls, name: str, definition: Any) -> "SchemaAttribute":
        """Build from a dict definition or a plain default value."""
        validate_name(name)
        if isinstance(definition, SchemaAttribute):
            return definition
        if not isinstance(definition, dict) or not (set(definition) & _ATTR_KEYS):
            return cls(name=name, default=definition)

        unknown = set(definition) - _ATTR_KEYS
        if unknown:
            raise ValidationError(
                f"Attribute '{name}' has unknown options: {sorted(unknown)}"
            )
        default = definition.get("default", definition.get("value"))
        return cls(
            name=name,
            default=default,
            indexed=bool(definition.get("indexed", definition.get("index", False))),
            required=bool(definition.get("required", False)),
            silent=bool(definition.get("silent", False)),
            enumerable=definition.get("enumerable"),
        )


class Schema:
    """
    Model schema: an ordered mapping of attribute name → SchemaAttribute.
    """

    def __init__(self, definition: Optional[Union[dict, Iterable[SchemaAttribute]]] = None):
        self._attributes: Dict[str, SchemaAttribute] = {}
        self._frozen = False
        if definition:
            self.add(definition)

    @classmethod
    def from_dict(cls, definition: dict) -> "Schema":
        return cls(definition)

    # ─── Mutation (before freeze) ───────────────────────────────────

    def add(self, definition: Union[dict, Iterable[SchemaAttribute]],
            force: bool = False) -> "Schema":
        """Add attribute(s). Existing names raise unless forced."""
        self._check_mutable()
        if isinstance(definition, dict):
            items = list(definition.items())
        elif isinstance(definition, Iterable):
            items = []
            for attr in definition:
                if not isinstance(attr, SchemaAttribute):
                    raise ValidationError(f"Expected SchemaAttribute, got {attr!r}")
                items.append((attr.name, attr))
        else:
            raise ValidationError("New attributes must be defined as a dict")

        parsed = []
        for name, value in items:
            forced = force or (isinstance(value, dict) and bool(value.get("force")))
            if name in self._attributes and not forced:
                raise ValidationError(
                    f"adding key: '{name}' -- schema attribute already defined"
                )
            parsed.append(SchemaAttribute.from_definition(name, value))

        for attr in parsed:
            self._attributes[attr.name] = attr
        return self

    def remove(self, names: Union[str, Iterable[str]]) -> "Schema":
        """Remove attribute(s). Unknown names raise."""
        self._check_mutable()
        if isinstance(names, str):
            names = [names]
        names = list(names)
        for name in names:
            if name not in self._attributes:
                raise ValidationError(
                    f"removing key: '{name}' -- key does not exist on the schema"
                )
        for name in names:
            del self._attributes[name]
        return self

    def freeze(self) -> "Schema":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def _check_mutable(self) -> None:
        if self._frozen:
            raise ValidationError("Schema is frozen: it is owned by a Factory")

    # ─── Lookup ─────────────────────────────────────────────────────

    def get(self, name: str) -> Optional[SchemaAttribute]:
        return self._attributes.get(name)

    def names(self) -> List[str]:
        return list(self._attributes)

    def attributes(self) -> List[SchemaAttribute]:
        return list(self._attributes.values())

    def indexed_names(self) -> List[str]:
        return [a.name for a in self._attributes.values() if a.indexed]

    def required_names(self) -> List[str]:
        return [a.name for a in self._attributes.values() if a.required]

    def __contains__(self, name: object) -> bool:
        return name in self._attributes

    def __iter__(self) -> Iterator[SchemaAttribute]:
        return iter(list(self._attributes.values()))

    def __len__(self) -> int:
        return len(self._attributes)

    # ─── Serialization ──────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {name: attr.to_dict() for name, attr in self._attributes.items()}

    def __repr__(self) -> str:
        return f"Schema({self.names()})"
