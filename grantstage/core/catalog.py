"""
Privilege catalog - the static tree of grantable ClickHouse capabilities.

The tree is built once at import, validated, and indexed. Lookups never
mutate it. A child is never grantable at a scope its parent forbids.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from .errors import CatalogError, InvalidScopeKind, UnknownPermission
from .scope import Scope, ScopeKind

GLOBAL = ScopeKind.GLOBAL
DATABASE = ScopeKind.DATABASE
TABLE = ScopeKind.TABLE


@dataclass(frozen=True)
class PermissionNode:
    id: str
    name: str
    sql_privilege: str
    allowed_scopes: Tuple[ScopeKind, ...]
    children: Tuple['PermissionNode', ...] = ()
    description: Optional[str] = None
    # Sibling ids this grant also implies; used only for GRANT suppression
    covers: Tuple[str, ...] = ()

    def allows(self, kind: ScopeKind) -> bool:
        return ScopeKind(kind) in self.allowed_scopes

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "sql_privilege": self.sql_privilege,
            "allowed_scopes": [k.value for k in self.allowed_scopes],
            "description": self.description,
        }
        if self.covers:
            data["covers"] = list(self.covers)
        if self.children:
            data["children"] = [c.to_dict() for c in self.children]
        return data


def _perm(id: str, name: str, sql_privilege: str, allowed_scopes, children=None,
          description: str = None, covers=None) -> PermissionNode:
    return PermissionNode(
        id=id,
        name=name,
        sql_privilege=sql_privilege,
        allowed_scopes=tuple(allowed_scopes),
        children=tuple(children or ()),
        description=description,
        covers=tuple(covers or ()),
    )


_DT = (DATABASE, TABLE)
_ALL = (GLOBAL, DATABASE, TABLE)
_GD = (GLOBAL, DATABASE)

COLUMN_OPERATIONS = [
    _perm("ALTER_ADD_COLUMN", "ADD COLUMN", "ALTER ADD COLUMN", _DT, description="Add new columns to tables"),
    _perm("ALTER_DROP_COLUMN", "DROP COLUMN", "ALTER DROP COLUMN", _DT, description="Remove columns from tables"),
    _perm("ALTER_MODIFY_COLUMN", "MODIFY COLUMN", "ALTER MODIFY COLUMN", _DT,
          description="Modify column types or defaults"),
    _perm("ALTER_COMMENT_COLUMN", "COMMENT COLUMN", "ALTER COMMENT COLUMN", _DT,
          description="Add or modify column comments"),
    _perm("ALTER_CLEAR_COLUMN", "CLEAR COLUMN", "ALTER CLEAR COLUMN", _DT,
          description="Clear column data in partitions"),
    _perm("ALTER_RENAME_COLUMN", "RENAME COLUMN", "ALTER RENAME COLUMN", _DT, description="Rename columns"),
]

ALTER_INDEX_CHILDREN = [
    _perm("ALTER_ORDER_BY", "ORDER BY", "ALTER ORDER BY", _DT, description="Modify table sorting key"),
    _perm("ALTER_SAMPLE_BY", "SAMPLE BY", "ALTER SAMPLE BY", _DT, description="Modify table sampling key"),
    _perm("ALTER_ADD_INDEX", "ADD INDEX", "ALTER ADD INDEX", _DT, description="Add secondary indexes"),
    _perm("ALTER_DROP_INDEX", "DROP INDEX", "ALTER DROP INDEX", _DT, description="Remove secondary indexes"),
    _perm("ALTER_MATERIALIZE_INDEX", "MATERIALIZE INDEX", "ALTER MATERIALIZE INDEX", _DT,
          description="Materialize index data"),
    _perm("ALTER_CLEAR_INDEX", "CLEAR INDEX", "ALTER CLEAR INDEX", _DT,
          description="Clear index data in partitions"),
]

ALTER_CONSTRAINT_CHILDREN = [
    _perm("ALTER_ADD_CONSTRAINT", "ADD CONSTRAINT", "ALTER ADD CONSTRAINT", _DT, description="Add table constraints"),
    _perm("ALTER_DROP_CONSTRAINT", "DROP CONSTRAINT", "ALTER DROP CONSTRAINT", _DT,
          description="Remove table constraints"),
]

ALTER_TTL_CHILDREN = [
    _perm("ALTER_MATERIALIZE_TTL", "MATERIALIZE TTL", "ALTER MATERIALIZE TTL", _DT,
          description="Apply TTL rules to existing data"),
]

# Column operations are direct children of ALTER TABLE; ALTER COLUMN covers them without parenting them
ALTER_TABLE_CHILDREN = [
    _perm("ALTER_UPDATE", "UPDATE", "ALTER UPDATE", _DT, description="Perform ALTER TABLE UPDATE"),
    _perm("ALTER_DELETE", "DELETE", "ALTER DELETE", _DT, description="Perform ALTER TABLE DELETE"),
    _perm("ALTER_COLUMN", "COLUMN", "ALTER COLUMN", _DT,
          description="Umbrella grant implying every column operation (see covers)",
          covers=[p.id for p in COLUMN_OPERATIONS]),
    *COLUMN_OPERATIONS,
    _perm("ALTER_INDEX", "INDEX", "ALTER INDEX", _DT, ALTER_INDEX_CHILDREN, "Index operations"),
    _perm("ALTER_CONSTRAINT", "CONSTRAINT", "ALTER CONSTRAINT", _DT, ALTER_CONSTRAINT_CHILDREN,
          "Constraint operations"),
    _perm("ALTER_TTL", "TTL", "ALTER TTL", _DT, ALTER_TTL_CHILDREN, "TTL operations"),
    _perm("ALTER_SETTINGS", "SETTINGS", "ALTER SETTINGS", _DT, description="Modify table settings"),
    _perm("ALTER_MOVE_PARTITION", "MOVE PARTITION", "ALTER MOVE PARTITION", _DT,
          description="Move partitions between disks"),
    _perm("ALTER_FETCH_PARTITION", "FETCH PARTITION", "ALTER FETCH PARTITION", _DT,
          description="Fetch partitions from replica"),
    _perm("ALTER_FREEZE_PARTITION", "FREEZE PARTITION", "ALTER FREEZE PARTITION", _DT,
          description="Create partition backups"),
]

ALTER_LIVE_VIEW_CHILDREN = [
    _perm("ALTER_LIVE_VIEW_REFRESH", "REFRESH", "ALTER LIVE VIEW REFRESH", _DT, description="Refresh live view"),
    _perm("ALTER_LIVE_VIEW_MODIFY_QUERY", "MODIFY QUERY", "ALTER LIVE VIEW MODIFY QUERY", _DT,
          description="Modify live view query"),
]

CREATE_CHILDREN = [
    _perm("CREATE_DATABASE", "DATABASE", "CREATE DATABASE", _GD, description="Create databases"),
    _perm("CREATE_TABLE", "TABLE", "CREATE TABLE", _GD, description="Create tables"),
    _perm("CREATE_VIEW", "VIEW", "CREATE VIEW", _GD, description="Create views"),
    _perm("CREATE_DICTIONARY", "DICTIONARY", "CREATE DICTIONARY", _GD, description="Create dictionaries"),
    _perm("CREATE_FUNCTION", "FUNCTION", "CREATE FUNCTION", (GLOBAL,), description="Create functions"),
]

DROP_CHILDREN = [
    _perm("DROP_DATABASE", "DATABASE", "DROP DATABASE", _GD, description="Drop databases"),
    _perm("DROP_TABLE", "TABLE", "DROP TABLE", _ALL, description="Drop tables"),
    _perm("DROP_VIEW", "VIEW", "DROP VIEW", _ALL, description="Drop views"),
    _perm("DROP_DICTIONARY", "DICTIONARY", "DROP DICTIONARY", _GD, description="Drop dictionaries"),
    _perm("DROP_FUNCTION", "FUNCTION", "DROP FUNCTION", (GLOBAL,), description="Drop functions"),
]

PERMISSION_HIERARCHY: List[PermissionNode] = [
    # Data access
    _perm("SELECT", "SELECT", "SELECT", _ALL, description="Read data from tables"),
    _perm("INSERT", "INSERT", "INSERT", _ALL, description="Insert data into tables"),

    # Table/view ALTER
    _perm("ALTER", "ALTER", "ALTER", _DT, [
        _perm("ALTER_TABLE", "TABLE", "ALTER TABLE", _DT, ALTER_TABLE_CHILDREN, "Table modifications"),
        _perm("ALTER_LIVE_VIEW", "LIVE VIEW", "ALTER LIVE VIEW", _DT, ALTER_LIVE_VIEW_CHILDREN,
              "Live view modifications"),
    ], "Modify tables and views"),

    # Administrative ALTER (no table scope)
    _perm("ALTER_DATABASE", "ALTER DATABASE", "ALTER DATABASE", _GD, description="Modify database settings"),
    _perm("ALTER_USER", "ALTER USER", "ALTER USER", (GLOBAL,), description="Modify user accounts"),
    _perm("ALTER_ROLE", "ALTER ROLE", "ALTER ROLE", (GLOBAL,), description="Modify roles"),
    _perm("ALTER_QUOTA", "ALTER QUOTA", "ALTER QUOTA", (GLOBAL,), description="Modify quotas"),
    _perm("ALTER_ROW_POLICY", "ALTER ROW POLICY", "ALTER ROW POLICY", (GLOBAL,), description="Modify row policies"),
    _perm("ALTER_SETTINGS_PROFILE", "ALTER SETTINGS PROFILE", "ALTER SETTINGS PROFILE", (GLOBAL,),
          description="Modify settings profiles"),

    # Schema
    _perm("CREATE", "CREATE", "CREATE", _GD, CREATE_CHILDREN, "Create database objects"),
    _perm("DROP", "DROP", "DROP", _ALL, DROP_CHILDREN, "Drop database objects"),
    _perm("TRUNCATE", "TRUNCATE", "TRUNCATE", _ALL, description="Truncate tables"),

    # Other
    _perm("OPTIMIZE", "OPTIMIZE", "OPTIMIZE", _ALL, description="Optimize table parts"),
    _perm("SHOW", "SHOW", "SHOW", _ALL, description="View table structure"),
    _perm("KILL_QUERY", "KILL QUERY", "KILL QUERY", (GLOBAL,), description="Terminate running queries"),
    _perm("SYSTEM", "SYSTEM", "SYSTEM", (GLOBAL,), description="System administration"),
]


class PermissionCatalog:
    """Indexed, read-only view over a permission tree."""

    def __init__(self, roots: List[PermissionNode]):
        self._roots = tuple(roots)
        self._nodes: Dict[str, PermissionNode] = {}
        self._parents: Dict[str, Optional[str]] = {}
        self._order: List[str] = []
        for root in self._roots:
            self._index(root, None)
        self._covered_by: Dict[str, List[str]] = {}
        for node_id in self._order:
            for covered in self._nodes[node_id].covers:
                if covered not in self._nodes:
                    raise CatalogError(f"Permission '{node_id}' covers unknown id '{covered}'")
                self._covered_by.setdefault(covered, []).append(node_id)

    def _index(self, node: PermissionNode, parent: Optional[PermissionNode]):
        if node.id in self._nodes:
            raise CatalogError(f"Duplicate permission id '{node.id}'")
        if not node.allowed_scopes:
            raise CatalogError(f"Permission '{node.id}' has no allowed scopes")
        if parent is not None:
            forbidden = set(node.allowed_scopes) - set(parent.allowed_scopes)
            if forbidden:
                kinds = ", ".join(sorted(k.value for k in forbidden))
                raise CatalogError(
                    f"Permission '{node.id}' allows {kinds} which parent '{parent.id}' forbids"
                )

        self._nodes[node.id] = node
        self._parents[node.id] = parent.id if parent else None
        self._order.append(node.id)
        for child in node.children:
            self._index(child, node)

    @property
    def roots(self) -> Tuple[PermissionNode, ...]:
        return self._roots

    def __contains__(self, permission_id: str) -> bool:
        return permission_id in self._nodes

    def __iter__(self) -> Iterator[PermissionNode]:
        return (self._nodes[i] for i in self._order)

    def __len__(self) -> int:
        return len(self._order)

    def get(self, permission_id: str) -> Optional[PermissionNode]:
        return self._nodes.get(permission_id)

    def lookup(self, permission_id: str) -> PermissionNode:
        node = self._nodes.get(permission_id)
        if node is None:
            raise UnknownPermission(permission_id)
        return node

    def parent_of(self, permission_id: str) -> Optional[str]:
        if permission_id not in self._nodes:
            raise UnknownPermission(permission_id)
        return self._parents[permission_id]

    def suppressors_of(self, permission_id: str) -> List[str]:
        """Ids whose presence in a desired set makes a GRANT of this id redundant."""
        parent = self.parent_of(permission_id)
        covering = self._covered_by.get(permission_id, [])
        return ([parent] if parent else []) + list(covering)

    def ancestors_of(self, permission_id: str) -> List[str]:
        """Parent, grandparent, ... up to the root."""
        ancestors = []
        current = self.parent_of(permission_id)
        while current is not None:
            ancestors.append(current)
            current = self._parents[current]
        return ancestors

    def descendants_of(self, permission_id: str) -> List[str]:
        """All ids below a node, pre-order."""
        ids = []
        for child in self.lookup(permission_id).children:
            ids.append(child.id)
            ids.extend(self.descendants_of(child.id))
        return ids

    def all_ids(self) -> List[str]:
        return list(self._order)

    def resolve_scope(self, permission_id: str, raw: Union[Scope, Mapping[str, Any]]) -> Scope:
        """Validate a raw scope against the capability's allowed scope kinds."""
        node = self.lookup(permission_id)
        scope = raw if isinstance(raw, Scope) else Scope.from_dict(raw)
        if not node.allows(scope.kind):
            raise InvalidScopeKind(permission_id, scope.kind.value, [k.value for k in node.allowed_scopes])
        return scope

    def from_access_type(self, access_type: str) -> str:
        """Map a system.grants access_type ("ALTER TABLE") to a permission id."""
        return re.sub(r"\s+", "_", access_type.strip())

    def to_dict(self) -> List[Dict[str, Any]]:
        return [root.to_dict() for root in self._roots]


# Process-wide catalog
CATALOG = PermissionCatalog(PERMISSION_HIERARCHY)
