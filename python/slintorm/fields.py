"""Field descriptors for schema-described models."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields as dataclass_fields
from typing import Any

from slintorm.errors import ConfigurationError

CURRENT_TIMESTAMP = "CURRENT_TIMESTAMP"

_OPTIONAL_TOKENS = {"undefined", "null", "none", "optional"}
_DATE_TOKENS = {"date", "datetime", "timestamp"}
_TOKEN_SPLIT = re.compile(r"[|\[\],<>\s]+")

# Directive keys used by generated schema files, mapped to FieldMeta attributes
_META_ALIASES = {
    "primaryKey": "primary_key",
    "primary": "primary_key",
    "autoIncrement": "auto",
    "defaultExpression": "default_expression",
    "defaultFn": "default_expression",
    "enumValues": "enum_values",
    "enum": "enum_values",
    "generatedExpression": "generated_expression",
    "generatedAlways": "generated_expression",
    "onUpdateNow": "on_update_now",
    "foreignKeyTarget": "foreign_key_target",
    "foreignKey": "foreign_key_target",
    "softDelete": "soft_delete",
    "jsonDefault": "json_default",
}

_BOOL_ATTRS = {
    "nullable", "unique", "index", "auto", "primary_key",
    "on_update_now", "json", "array", "soft_delete",
}
_INT_ATTRS = {"length", "precision", "scale"}


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "0", "false", "no", "off")
    return bool(value)


def _coerce_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Expected an integer, got {value!r}") from e


def parse_enum_values(raw: Any) -> tuple[str, ...]:
    """Parse enum values from ``"(a,b)"``, ``"'a','b'"``, ``"a,b"`` or a list."""
    if raw is None:
        return ()
    if isinstance(raw, (list, tuple)):
        return tuple(str(v) for v in raw)
    cleaned = str(raw).strip().lstrip("(").rstrip(")")
    values = []
    for part in cleaned.split(","):
        part = part.strip()
        if len(part) >= 2 and part[0] == part[-1] and part[0] in "'\"":
            part = part[1:-1]
        if part:
            values.append(part)
    return tuple(values)


@dataclass
class FieldMeta:
    """Column metadata attached to a field.

    Every attribute is optional; ``None``/``False`` means "not declared".
    """

    nullable: bool = False
    unique: bool = False
    index: bool = False
    auto: bool = False
    primary_key: bool = False
    default: Any = None
    default_expression: str | None = None
    length: int | None = None
    precision: int | None = None
    scale: int | None = None
    enum_values: tuple[str, ...] = ()
    check: str | None = None
    comment: str | None = None
    collate: str | None = None
    generated_expression: str | None = None
    on_update_now: bool = False
    json: bool = False
    json_default: Any = None
    foreign_key_target: str | None = None
    array: bool = False
    soft_delete: bool = False
    has_default: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        # An explicit None default is only recorded through from_dict
        if self.default is not None:
            self.has_default = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> FieldMeta:
        """Build metadata from a directive mapping.

        Accepts both snake_case attribute names and the camelCase directive
        keys written by schema generators (``primaryKey``, ``enum``,
        ``generatedAlways``, ``"not null"`` ...). Unknown keys are ignored.
        """
        meta = cls()
        if not data:
            return meta

        known = {f.name for f in dataclass_fields(cls)}
        for key, value in data.items():
            if key == "not null":
                meta.nullable = not _coerce_bool(value)
                continue
            attr = _META_ALIASES.get(key, key)
            if attr not in known or attr == "has_default":
                continue
            if attr in _BOOL_ATTRS:
                value = _coerce_bool(value)
            elif attr in _INT_ATTRS:
                value = _coerce_int(value)
            elif attr == "enum_values":
                value = parse_enum_values(value)
            elif attr == "default":
                meta.has_default = True
            setattr(meta, attr, value)

        if meta.auto:
            meta.primary_key = True
        return meta


@dataclass
class FieldDescriptor:
    """A declared model field: semantic type string plus metadata.

    Example:
        >>> FieldDescriptor("string | undefined", FieldMeta(length=100)).is_optional
        True
    """

    type: str
    meta: FieldMeta = field(default_factory=FieldMeta)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | str) -> FieldDescriptor:
        if isinstance(data, str):
            return cls(type=data)
        return cls(type=str(data.get("type") or "string"), meta=FieldMeta.from_dict(data.get("meta")))

    @property
    def _tokens(self) -> list[str]:
        return [t for t in _TOKEN_SPLIT.split(self.type.lower()) if t]

    @property
    def is_boolean(self) -> bool:
        lowered = self.type.lower()
        return "boolean" in lowered or "bool" in self._tokens

    @property
    def is_optional(self) -> bool:
        return any(t in _OPTIONAL_TOKENS for t in self._tokens) or self.type.rstrip().endswith("?")

    @property
    def is_nullable(self) -> bool:
        return self.meta.nullable or self.is_optional

    @property
    def is_date(self) -> bool:
        base = [t for t in self._tokens if t not in _OPTIONAL_TOKENS]
        return len(base) == 1 and base[0] in _DATE_TOKENS

    @property
    def is_primary(self) -> bool:
        return self.meta.primary_key or self.meta.auto


def semantic_sql_type(type_name: str) -> str:
    """Map a semantic type name to a generic SQL type.

    string -> TEXT, number/int/float -> INTEGER, boolean -> BOOLEAN,
    anything mentioning date/time -> DATETIME, otherwise TEXT.
    """
    t = type_name.lower().strip()
    if "string" in t:
        return "TEXT"
    if "number" in t or "int" in t or "float" in t:
        return "INTEGER"
    if "boolean" in t or "bool" in t:
        return "BOOLEAN"
    if "date" in t or "time" in t:
        return "DATETIME"
    return "TEXT"


def to_bool(value: Any) -> bool:
    """Coerce a stored boolean: ``1``, ``True`` and ``"1"`` are true."""
    return value is True or value == 1 or value == "1"


def map_booleans(row: Mapping[str, Any], fields: Mapping[str, FieldDescriptor]) -> dict[str, Any]:
    """Return a copy of ``row`` with boolean-typed fields coerced to bool."""
    result = dict(row)
    for name, descriptor in fields.items():
        if name in result and descriptor.is_boolean:
            result[name] = to_bool(result[name])
    return result
