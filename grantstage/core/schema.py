"""
Core records shared by the planner, queue and audit trail.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .scope import Scope


class ChangeType(str, Enum):
    CREATE = "CREATE"
    ALTER = "ALTER"
    DROP = "DROP"
    GRANT = "GRANT"
    REVOKE = "REVOKE"


class EntityType(str, Enum):
    USER = "USER"
    ROLE = "ROLE"
    QUOTA = "QUOTA"
    ROW_POLICY = "ROW_POLICY"
    SETTINGS_PROFILE = "SETTINGS_PROFILE"


class GrantSource(str, Enum):
    DIRECT = "direct"
    ROLE = "role"


@dataclass(frozen=True)
class GrantedPermission:
    permission_id: str
    scope: Scope

    def to_dict(self) -> Dict[str, Any]:
        return {"permission_id": self.permission_id, "scope": self.scope.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GrantedPermission':
        permission_id = data.get("permission_id") or data.get("permissionId")
        return cls(permission_id=permission_id, scope=Scope.from_dict(data.get("scope") or {}))


@dataclass(frozen=True)
class ExtendedGrantedPermission:
    permission_id: str
    scope: Scope
    source: GrantSource
    source_role: Optional[str] = None

    @property
    def grant(self) -> GrantedPermission:
        return GrantedPermission(self.permission_id, self.scope)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "permission_id": self.permission_id,
            "scope": self.scope.to_dict(),
            "source": self.source.value,
        }
        if self.source_role:
            data["source_role"] = self.source_role
        return data


@dataclass(frozen=True)
class RoleAssignment:
    role_name: str
    admin_option: bool = False


@dataclass
class PendingChange:
    change_type: ChangeType
    entity_type: EntityType
    entity_name: str
    description: str
    statements: List[str]
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    # Assigned by the queue on add()
    id: str = ""
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for display and export."""
        data = asdict(self)
        data['change_type'] = self.change_type.value
        data['entity_type'] = self.entity_type.value
        data['created_at'] = self.created_at.isoformat() if self.created_at else None
        return data


@dataclass
class ChangeExecutionResult:
    change_id: str
    success: bool
    error: Optional[str] = None
    failed_statement: Optional[str] = None
    statements_executed: int = 0


@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    timestamp: datetime
    actor: str
    change_type: str
    entity_type: str
    entity_name: str
    description: str
    statements: List[str] = field(default_factory=list)
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    success: bool = True
    error_message: str = ""

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data
