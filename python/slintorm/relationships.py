"""Relationship descriptors and the batched loaders used for preloading."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from slintorm.engine import ExecuteFn
from slintorm.errors import ConfigurationError

if TYPE_CHECKING:
    from slintorm.dialects import Dialect
    from slintorm.schema import ModelSchema

logger = logging.getLogger("slintorm.relationships")

Row = dict[str, Any]


class RelationKind(str, Enum):
    """Cardinality of a declared relation."""

    ONE_TO_MANY = "onetomany"
    MANY_TO_ONE = "manytoone"
    ONE_TO_ONE = "onetoone"
    MANY_TO_MANY = "manytomany"

    @classmethod
    def parse(cls, value: str | RelationKind) -> RelationKind:
        """Parse ``one-to-many``, ``one_to_many``, ``OneToMany``...

        Example:
            >>> RelationKind.parse("many-to-one")
            <RelationKind.MANY_TO_ONE: 'manytoone'>
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).lower().replace("-", "").replace("_", "").replace(" ", "")
        try:
            return cls(normalized)
        except ValueError as e:
            raise ConfigurationError(f"Unknown relation kind: {value!r}") from e

    @property
    def is_collection(self) -> bool:
        return self in (RelationKind.ONE_TO_MANY, RelationKind.MANY_TO_MANY)


def default_foreign_key(kind: RelationKind, source_model: str, target_model: str) -> str:
    """Foreign key column assumed when a relation does not name one."""
    if kind is RelationKind.MANY_TO_ONE:
        return f"{target_model.lower()}Id"
    if kind in (RelationKind.ONE_TO_MANY, RelationKind.MANY_TO_MANY):
        return f"{source_model.lower()}Id"
    return "id"


@dataclass(frozen=True)
class RelationMeta:
    """Referential actions for the foreign key backing a relation."""

    on_delete: str | None = None
    on_update: str | None = None
    match: str | None = None
    deferrable: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> RelationMeta:
        if not data:
            return cls()
        deferrable = data.get("deferrable", False)
        if isinstance(deferrable, str):
            deferrable = deferrable.lower() not in ("", "false", "0", "no")
        return cls(
            on_delete=data.get("onDelete", data.get("on_delete")),
            on_update=data.get("onUpdate", data.get("on_update")),
            match=data.get("match"),
            deferrable=bool(deferrable),
        )


@dataclass(frozen=True)
class RelationDescriptor:
    """A relation declared on ``source_model`` and exposed as ``field_name``.

    ``foreign_key`` names the column carrying the link. For many-to-many
    relations it is the junction column pointing at the source, while
    ``related_key`` points at the target and ``through`` names the junction
    table.
    """

    source_model: str
    field_name: str
    kind: RelationKind
    target_model: str
    foreign_key: str
    related_key: str | None = None
    through: str | None = None
    meta: RelationMeta = field(default_factory=RelationMeta)

    def __post_init__(self) -> None:
        if not self.foreign_key:
            raise ConfigurationError(
                f"Relation {self.source_model}.{self.field_name} requires a foreign key"
            )
        if self.kind is RelationKind.MANY_TO_MANY and not (self.through and self.related_key):
            raise ConfigurationError(
                f"Many-to-many relation {self.source_model}.{self.field_name} "
                "requires 'through' and 'relatedKey'"
            )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], source_model: str | None = None) -> RelationDescriptor:
        """Build a relation from its schema-description mapping."""
        meta = data.get("meta") or {}
        kind = RelationKind.parse(data["kind"])
        source = str(data.get("sourceModel") or source_model or "")
        target = str(data.get("targetModel") or data.get("target_model") or "")
        related_key = data.get("relatedKey") or data.get("related_key") or meta.get("relatedKey")
        if related_key is None and kind is RelationKind.MANY_TO_MANY:
            related_key = f"{target.lower()}Id"
        return cls(
            source_model=source,
            field_name=str(data.get("fieldName") or data.get("field_name") or ""),
            kind=kind,
            target_model=target,
            foreign_key=str(
                data.get("foreignKey")
                or data.get("foreign_key")
                or meta.get("foreignKey")
                or default_foreign_key(kind, source, target)
            ),
            related_key=related_key,
            through=data.get("through") or meta.get("through"),
            meta=RelationMeta.from_dict(meta),
        )

    @property
    def cache_key(self) -> str:
        return f"{self.source_model}:{self.field_name}"


# ========== Preloading ==========


@dataclass
class PreloadContext:
    """Request-scoped record of the relations resolved by one preload call.

    Every visited ``"<model>:<relationField>"`` key maps the lookup values
    already fetched to their related rows. Revisiting a key (a cyclic
    chain such as ``profile.user.profile``) fetches only lookup values that
    were not resolved before, so cycles terminate without repeat queries.
    """

    resolved: dict[str, dict[Any, list[Row]]] = field(default_factory=dict)

    def visited(self, relation: RelationDescriptor) -> bool:
        return relation.cache_key in self.resolved

    async def load(self, loader: RelationLoader, keys: Sequence[Any]) -> dict[Any, list[Row]]:
        """Return related rows for ``keys``, querying only unseen keys."""
        cache = self.resolved.setdefault(loader.relation.cache_key, {})
        missing = [k for k in keys if k not in cache]
        if missing:
            fetched = await loader.fetch(missing)
            for key in missing:
                cache[key] = fetched.get(key, [])
        else:
            logger.debug("Preload %s served from cache", loader.relation.cache_key)
        return {k: cache[k] for k in keys}


def _group_by(rows: Sequence[Row], column: str) -> dict[Any, list[Row]]:
    grouped: dict[Any, list[Row]] = {}
    for row in rows:
        grouped.setdefault(row.get(column), []).append(row)
    return grouped


class RelationLoader:
    """Fetches the related rows of one relation for a batch of parents.

    Subclasses decide which parent value is used as the lookup key and how
    the related table is queried; every loader issues ``IN (...)`` queries
    over the whole batch, never one query per parent.
    """

    collection: ClassVar[bool] = False

    def __init__(
        self,
        relation: RelationDescriptor,
        source: ModelSchema,
        target: ModelSchema,
        execute: ExecuteFn,
        dialect: Dialect,
    ) -> None:
        self.relation = relation
        self.source = source
        self.target = target
        self.execute = execute
        self.dialect = dialect

    def lookup_key(self, row: Mapping[str, Any]) -> Any:
        return row.get(self.source.primary_key)

    async def fetch(self, keys: Sequence[Any]) -> dict[Any, list[Row]]:
        raise NotImplementedError

    def empty(self) -> Any:
        return [] if self.collection else None

    def value_for(self, related: list[Row]) -> Any:
        if self.collection:
            return related
        return related[0] if related else None

    async def _select_in(self, table: str, column: str, keys: Sequence[Any], columns: str = "*") -> list[Row]:
        sql = (
            f"SELECT {columns} FROM {self.dialect.quote(table)} "
            f"WHERE {self.dialect.quote(column)} IN ({self.dialect.placeholders(len(keys))})"
        )
        result = await self.execute(sql, list(keys))
        return [dict(r) for r in result.rows or []]


class OneToManyLoader(RelationLoader):
    """Children carry ``foreign_key`` pointing at the parent's primary key."""

    collection = True

    async def fetch(self, keys: Sequence[Any]) -> dict[Any, list[Row]]:
        rows = await self._select_in(self.target.table, self.relation.foreign_key, keys)
        return _group_by(rows, self.relation.foreign_key)


class OwnerSideLoader(RelationLoader):
    """The parent row carries ``foreign_key`` pointing at the target's primary key."""

    def lookup_key(self, row: Mapping[str, Any]) -> Any:
        return row.get(self.relation.foreign_key)

    async def fetch(self, keys: Sequence[Any]) -> dict[Any, list[Row]]:
        rows = await self._select_in(self.target.table, self.target.primary_key, keys)
        return _group_by(rows, self.target.primary_key)


class ReverseLoader(RelationLoader):
    """The related row carries ``foreign_key`` pointing back at the parent."""

    async def fetch(self, keys: Sequence[Any]) -> dict[Any, list[Row]]:
        rows = await self._select_in(self.target.table, self.relation.foreign_key, keys)
        return _group_by(rows, self.relation.foreign_key)


class ManyToManyLoader(RelationLoader):
    """Resolves targets through the junction table in two queries.

    Targets reached through several junction rows are returned once per
    parent, in junction order.
    """

    collection = True

    async def fetch(self, keys: Sequence[Any]) -> dict[Any, list[Row]]:
        fk = self.relation.foreign_key
        rk = self.relation.related_key or ""
        columns = f"{self.dialect.quote(fk)}, {self.dialect.quote(rk)}"
        pairs = await self._select_in(self.relation.through or "", fk, keys, columns)

        related_keys: list[Any] = []
        for pair in pairs:
            value = pair.get(rk)
            if value is not None and value not in related_keys:
                related_keys.append(value)
        if not related_keys:
            return {}

        targets = await self._select_in(self.target.table, self.target.primary_key, related_keys)
        by_pk = {row.get(self.target.primary_key): row for row in targets}

        result: dict[Any, list[Row]] = {}
        seen: dict[Any, set[Any]] = {}
        for pair in pairs:
            parent_key, related_key = pair.get(fk), pair.get(rk)
            if related_key not in by_pk or related_key in seen.setdefault(parent_key, set()):
                continue
            seen[parent_key].add(related_key)
            result.setdefault(parent_key, []).append(by_pk[related_key])
        return result


def parent_owns_foreign_key(
    relation: RelationDescriptor,
    source: ModelSchema,
    target: ModelSchema,
    rows: Sequence[Mapping[str, Any]] = (),
) -> bool:
    """Decide which side of a single-valued relation carries the foreign key.

    The declared fields decide: the parent owns the key when it declares
    it, the child owns it when only the target declares it. Rows are
    consulted only when neither model declares the column.
    """
    fk = relation.foreign_key
    if fk in source.fields and fk != source.primary_key:
        return True
    if fk in target.fields:
        return False
    return any(fk in row for row in rows)


def _single_valued_loader(relation, source, target, execute, dialect, rows) -> RelationLoader:
    if parent_owns_foreign_key(relation, source, target, rows):
        return OwnerSideLoader(relation, source, target, execute, dialect)
    return ReverseLoader(relation, source, target, execute, dialect)


_LOADERS: dict[RelationKind, Callable[..., RelationLoader]] = {
    RelationKind.ONE_TO_MANY: lambda rel, src, tgt, ex, d, rows: OneToManyLoader(rel, src, tgt, ex, d),
    RelationKind.MANY_TO_MANY: lambda rel, src, tgt, ex, d, rows: ManyToManyLoader(rel, src, tgt, ex, d),
    RelationKind.MANY_TO_ONE: _single_valued_loader,
    RelationKind.ONE_TO_ONE: _single_valued_loader,
}


def loader_for(
    relation: RelationDescriptor,
    source: ModelSchema,
    target: ModelSchema,
    execute: ExecuteFn,
    dialect: Dialect,
    rows: Sequence[Mapping[str, Any]] = (),
) -> RelationLoader:
    """Pick the loader matching the relation's kind and ownership."""
    return _LOADERS[relation.kind](relation, source, target, execute, dialect, rows)
