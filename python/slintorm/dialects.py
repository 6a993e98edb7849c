"""Per-engine SQL conventions: placeholders, identifier quoting, ILIKE."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Dialect:
    """SQL conventions of one database engine.

    Example:
        >>> get_dialect("postgres").placeholder(0)
        '$1'
        >>> get_dialect("mysql").quote("users")
        '`users`'
    """

    name: str
    numbered_params: bool = False
    quote_char: str = '"'
    native_ilike: bool = False
    native_enum: bool = False
    json_type: str = "TEXT"
    date_type: str = "DATETIME"
    supports_alter_constraints: bool = True
    allows_forward_references: bool = False

    def placeholder(self, index: int) -> str:
        """Bind placeholder for a zero-based parameter index."""
        return f"${index + 1}" if self.numbered_params else "?"

    def placeholders(self, count: int, start: int = 0) -> str:
        """Comma-separated placeholders for ``count`` parameters."""
        return ", ".join(self.placeholder(start + i) for i in range(count))

    def quote(self, identifier: str) -> str:
        """Quote an identifier, part by part for dotted names."""
        if identifier == "*":
            return identifier
        q = self.quote_char
        parts = []
        for part in identifier.split("."):
            if part == "*":
                parts.append(part)
            else:
                parts.append(q + part.replace(q, q + q) + q)
        return ".".join(parts)

    def renumber(self, sql: str, start: int = 0) -> str:
        """Rewrite ``?`` markers as this dialect's placeholders.

        Numbering continues from ``start``. Markers inside single-quoted
        string literals are left alone.
        """
        if not self.numbered_params:
            return sql
        result: list[str] = []
        index = start
        in_string = False
        i = 0
        while i < len(sql):
            ch = sql[i]
            if ch == "'":
                if in_string and i + 1 < len(sql) and sql[i + 1] == "'":
                    result.append("''")
                    i += 2
                    continue
                in_string = not in_string
                result.append(ch)
            elif ch == "?" and not in_string:
                result.append(self.placeholder(index))
                index += 1
            else:
                result.append(ch)
            i += 1
        return "".join(result)

    def case_insensitive_like(self, column: str, index: int) -> str:
        """Case-insensitive LIKE predicate binding one parameter."""
        col = self.quote(column)
        if self.native_ilike:
            return f"{col} ILIKE {self.placeholder(index)}"
        if self.name == "sqlite":
            return f"LOWER({col}) LIKE LOWER({self.placeholder(index)})"
        # MySQL's default collations already compare case-insensitively
        return f"{col} LIKE {self.placeholder(index)}"


SQLITE = Dialect(
    name="sqlite",
    json_type="TEXT",
    date_type="INTEGER",
    supports_alter_constraints=False,
    allows_forward_references=True,
)

POSTGRES = Dialect(
    name="postgres",
    numbered_params=True,
    native_ilike=True,
    native_enum=True,
    json_type="JSONB",
    date_type="TIMESTAMP",
)

MYSQL = Dialect(
    name="mysql",
    quote_char="`",
    json_type="JSON",
    date_type="DATETIME",
)

DIALECTS: dict[str, Dialect] = {
    "sqlite": SQLITE,
    "postgres": POSTGRES,
    "mysql": MYSQL,
}

_ALIASES = {
    "sqlite3": "sqlite",
    "postgresql": "postgres",
    "pg": "postgres",
    "mariadb": "mysql",
}


def get_dialect(name: str | Dialect | None) -> Dialect:
    """Look up a dialect by engine name.

    Unknown or missing names fall back to the SQLite conventions.
    """
    if isinstance(name, Dialect):
        return name
    if not name:
        return SQLITE
    key = name.lower()
    key = _ALIASES.get(key, key)
    return DIALECTS.get(key, SQLITE)
