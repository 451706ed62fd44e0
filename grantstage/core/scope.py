"""
Grant scopes: global, database, or database.table.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .errors import InvalidScope


class ScopeKind(str, Enum):
    GLOBAL = "global"
    DATABASE = "database"
    TABLE = "table"


@dataclass(frozen=True)
class Scope:
    kind: ScopeKind
    database: Optional[str] = None
    table: Optional[str] = None

    def __post_init__(self):
        try:
            kind = ScopeKind(self.kind)
        except ValueError:
            raise InvalidScope(f"unknown scope kind '{self.kind}'")
        object.__setattr__(self, "kind", kind)

        if kind == ScopeKind.GLOBAL:
            # Global scope never carries names
            object.__setattr__(self, "database", None)
            object.__setattr__(self, "table", None)
        elif kind == ScopeKind.DATABASE:
            if not self.database or not self.database.strip():
                raise InvalidScope("database scope requires a database name")
            object.__setattr__(self, "table", None)
        else:
            if not self.database or not self.database.strip():
                raise InvalidScope("table scope requires a database name")
            if not self.table or not self.table.strip():
                raise InvalidScope("table scope requires a table name")

    @classmethod
    def global_scope(cls) -> 'Scope':
        return cls(ScopeKind.GLOBAL)

    @classmethod
    def for_database(cls, database: str) -> 'Scope':
        return cls(ScopeKind.DATABASE, database=database)

    @classmethod
    def for_table(cls, database: str, table: str) -> 'Scope':
        return cls(ScopeKind.TABLE, database=database, table=table)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Scope':
        """Build a scope from {"type"|"kind": ..., "database": ..., "table": ...}."""
        kind = data.get("kind") or data.get("type")
        if kind is None:
            # Loose payloads without a kind are classified by their columns
            return scope_from_columns(data.get("database"), data.get("table"))
        return cls(kind, database=data.get("database"), table=data.get("table"))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.kind.value}
        if self.database:
            data["database"] = self.database
        if self.table:
            data["table"] = self.table
        return data

    def __str__(self):
        return format_scope(self)


def format_scope(scope: Scope) -> str:
    """Render the target descriptor used inside GRANT/REVOKE statements."""
    if scope.kind == ScopeKind.DATABASE:
        return f"{scope.database}.*"
    if scope.kind == ScopeKind.TABLE:
        return f"{scope.database}.{scope.table}"
    return "*.*"


def scope_from_columns(database: Optional[str], table: Optional[str]) -> Scope:
    """Classify a system.grants row by its database/table columns."""
    if database and table:
        return Scope.for_table(database, table)
    if database:
        return Scope.for_database(database)
    # Table without database does not occur in practice; treat as global
    return Scope.global_scope()
