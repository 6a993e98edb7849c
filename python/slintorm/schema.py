"""Typed schema description: models, their fields and relations."""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from slintorm.errors import ConfigurationError, SchemaNotFoundError
from slintorm.fields import FieldDescriptor, FieldMeta
from slintorm.relationships import RelationDescriptor, RelationKind

_RELATION_PREFIXES = ("relation ", "relationship ")


def _implicit_id() -> FieldDescriptor:
    return FieldDescriptor("number", FieldMeta(auto=True, primary_key=True))


def _legacy_relation(model: str, name: str, meta: Mapping[str, Any]) -> RelationDescriptor | None:
    """Lift a ``"relation onetomany": "Post"`` directive into a relation."""
    for key, target in meta.items():
        if not isinstance(key, str):
            continue
        for prefix in _RELATION_PREFIXES:
            if key.startswith(prefix):
                return RelationDescriptor.from_dict(
                    {
                        "fieldName": name,
                        "kind": key[len(prefix):],
                        "targetModel": target,
                        "meta": meta,
                    },
                    source_model=model,
                )
    return None


@dataclass(frozen=True)
class ModelSchema:
    """Table name, primary key, fields and relations of one model."""

    name: str
    table: str
    primary_key: str = "id"
    fields: dict[str, FieldDescriptor] = field(default_factory=dict)
    relations: tuple[RelationDescriptor, ...] = ()

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> ModelSchema:
        """Parse one model of a schema description.

        An auto-increment ``id`` field is synthesised when no field is
        declared primary or auto.

        Raises:
            ConfigurationError: If more than one field is declared primary.
        """
        fields: dict[str, FieldDescriptor] = {}
        relations: list[RelationDescriptor] = []
        for field_name, raw in (data.get("fields") or {}).items():
            meta = raw.get("meta") if isinstance(raw, Mapping) else None
            legacy = _legacy_relation(name, field_name, meta or {})
            if legacy is not None:
                relations.append(legacy)
                continue
            fields[field_name] = FieldDescriptor.from_dict(raw)

        primaries = [n for n, f in fields.items() if f.is_primary]
        if len(primaries) > 1:
            raise ConfigurationError(
                f"Model {name} declares more than one primary key: {', '.join(primaries)}"
            )
        if not primaries:
            fields = {"id": _implicit_id(), **fields}
            primaries = ["id"]

        relations = [
            RelationDescriptor.from_dict(r, source_model=name) for r in data.get("relations") or []
        ] + relations

        return cls(
            name=name,
            table=str(data.get("table") or name.lower()),
            primary_key=str(data.get("primaryKey") or primaries[0]),
            fields=fields,
            relations=tuple(relations),
        )

    def relation(self, field_name: str) -> RelationDescriptor | None:
        for rel in self.relations:
            if rel.field_name == field_name:
                return rel
        return None

    @property
    def columns(self) -> list[str]:
        return list(self.fields)


class Schema(Mapping[str, ModelSchema]):
    """Read-only mapping of model name to :class:`ModelSchema`.

    Example:
        >>> schema = Schema.from_dict({"User": {"fields": {"name": {"type": "string"}}}})
        >>> schema["User"].table
        'user'
    """

    def __init__(self, models: Mapping[str, ModelSchema] | None = None) -> None:
        self._models: dict[str, ModelSchema] = dict(models or {})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Schema:
        return cls({name: ModelSchema.from_dict(name, model) for name, model in data.items()})

    @classmethod
    def from_json(cls, text: str) -> Schema:
        return cls.from_dict(json.loads(text))

    @classmethod
    def load(cls, path: str | Path) -> Schema:
        """Load a schema description from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise SchemaNotFoundError(f"Schema file not found: {path}")
        return cls.from_json(path.read_text(encoding="utf-8"))

    def __getitem__(self, name: str) -> ModelSchema:
        return self._models[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def __repr__(self) -> str:
        return f"<Schema {list(self._models)}>"

    def resolve(self, name: str) -> ModelSchema:
        """Find a model by name, capitalised name, singular name or table.

        Raises:
            SchemaNotFoundError: If nothing matches.
        """
        if not name:
            raise SchemaNotFoundError("modelName not found")
        candidates = [name, name[0].upper() + name[1:]]
        candidates += [c[:-1] for c in candidates if c.endswith("s")]
        for candidate in candidates:
            if candidate in self._models:
                return self._models[candidate]
        model = self.model_for_table(name)
        if model is None:
            raise SchemaNotFoundError(f"Model {name!r} not found in schema")
        return model

    def model_for_table(self, table: str) -> ModelSchema | None:
        for model in self._models.values():
            if model.table == table:
                return model
        return None

    def relations_to(self, model_name: str) -> list[RelationDescriptor]:
        """Relations declared on other models that point at ``model_name``."""
        return [
            rel
            for model in self._models.values()
            for rel in model.relations
            if rel.target_model == model_name
        ]

    def junction_tables(self) -> dict[str, RelationDescriptor]:
        """Junction tables named by many-to-many relations, keyed by table."""
        return {
            rel.through: rel
            for model in self._models.values()
            for rel in model.relations
            if rel.kind is RelationKind.MANY_TO_MANY and rel.through
        }
