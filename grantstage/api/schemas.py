"""
Request and response models for the grantstage API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..core.diff import UserAttributes
from ..core.planner import (
    QuotaDraft,
    RoleDraft,
    RowPolicyDraft,
    SettingsProfileDraft,
    UserDraft,
)
from ..core.schema import GrantedPermission, RoleAssignment
from ..core.scope import Scope
from ..core.statements import HOST_KINDS, HostRestriction


class ScopeModel(BaseModel):
    type: str = "global"
    database: Optional[str] = None
    table: Optional[str] = None

    @field_validator('type')
    @classmethod
    def type_must_be_valid(cls, v):
        valid_types = ['global', 'database', 'table']
        if v not in valid_types:
            raise ValueError(f'type must be one of: {valid_types}')
        return v

    def to_scope(self) -> Scope:
        return Scope.from_dict(self.model_dump())


class GrantModel(BaseModel):
    permission_id: str
    scope: ScopeModel = Field(default_factory=ScopeModel)

    @field_validator('permission_id')
    @classmethod
    def permission_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('permission_id cannot be empty')
        return v.strip()

    def to_grant(self) -> GrantedPermission:
        return GrantedPermission(self.permission_id, self.scope.to_scope())


def to_grants(models: List[GrantModel]) -> List[GrantedPermission]:
    return [m.to_grant() for m in models]


class ScopeResolveRequest(BaseModel):
    permission_id: str
    scope: ScopeModel


class ScopeResolveResponse(BaseModel):
    permission_id: str
    scope: Dict[str, Any]
    formatted: str


class GrantDiffRequest(BaseModel):
    entity_name: str
    original: List[GrantModel] = []
    desired: List[GrantModel] = []


class StatementsResponse(BaseModel):
    statements: List[str]


class RoleAssignmentModel(BaseModel):
    role_name: str
    admin_option: bool = False


class UserRequest(BaseModel):
    name: str
    password: Optional[str] = None
    host_type: str = "ANY"
    host_values: List[str] = []
    default_database: Optional[str] = None
    settings_profile: Optional[str] = None
    readonly: bool = False
    grantees: str = "ANY"
    roles: List[RoleAssignmentModel] = []
    grants: List[GrantModel] = []

    @field_validator('host_type')
    @classmethod
    def host_type_must_be_valid(cls, v):
        v = v.upper()
        if v not in HOST_KINDS:
            raise ValueError(f'host_type must be one of: {list(HOST_KINDS)}')
        return v

    def to_draft(self) -> UserDraft:
        return UserDraft(
            name=self.name,
            attributes=UserAttributes(
                password=self.password or None,
                host=HostRestriction.parse(self.host_type, ",".join(self.host_values)),
                default_database=self.default_database or None,
                settings_profile=self.settings_profile or None,
                readonly=self.readonly,
                grantees=self.grantees or "ANY",
            ),
            roles=[RoleAssignment(r.role_name, r.admin_option) for r in self.roles],
            grants=to_grants(self.grants),
        )


class UserUpdateRequest(BaseModel):
    desired: UserRequest
    # When omitted, the current state is read from the server
    original: Optional[UserRequest] = None


class RoleRequest(BaseModel):
    name: str
    grants: List[GrantModel] = []

    def to_draft(self) -> RoleDraft:
        return RoleDraft(name=self.name, grants=to_grants(self.grants))


class RoleUpdateRequest(BaseModel):
    grants: List[GrantModel] = []
    original_grants: Optional[List[GrantModel]] = None


class QuotaRequest(BaseModel):
    name: str
    duration: str = "1 HOUR"
    limits: Dict[str, Optional[int]] = {}
    assignees: List[str] = []

    def to_draft(self) -> QuotaDraft:
        return QuotaDraft(name=self.name, duration=self.duration, limits=dict(self.limits),
                          assignees=list(self.assignees))


class RowPolicyRequest(BaseModel):
    name: str
    database: str
    table: str
    filter_clause: str
    restrictive: bool = False
    assignees: List[str] = []

    def to_draft(self) -> RowPolicyDraft:
        return RowPolicyDraft(name=self.name, database=self.database, table=self.table,
                              filter_clause=self.filter_clause, restrictive=self.restrictive,
                              assignees=list(self.assignees))


class SettingModel(BaseModel):
    name: str
    value: str


class SettingsProfileRequest(BaseModel):
    name: str
    settings: List[SettingModel] = []

    def to_draft(self) -> SettingsProfileDraft:
        return SettingsProfileDraft(name=self.name, settings=[(s.name, s.value) for s in self.settings])


class PendingChangeResponse(BaseModel):
    id: str
    change_type: str
    entity_type: str
    entity_name: str
    description: str
    statements: List[str]
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class StageResponse(BaseModel):
    staged: bool
    change: Optional[PendingChangeResponse] = None
    message: str


class ChangeListResponse(BaseModel):
    changes: List[PendingChangeResponse]
    count: int
    is_executing: bool


class ExecutionResultModel(BaseModel):
    change_id: str
    success: bool
    error: Optional[str] = None
    failed_statement: Optional[str] = None
    statements_executed: int = 0


class ExecutionSummaryModel(BaseModel):
    succeeded: int
    attempted: int
    total: int
    failed_change_id: Optional[str] = None
    failed_statement: Optional[str] = None
    error: Optional[str] = None
    message: str


class ExecuteRequest(BaseModel):
    actor: Optional[str] = None


class ExecuteResponse(BaseModel):
    results: List[ExecutionResultModel]
    summary: ExecutionSummaryModel
    remaining: int


class AuditEntryResponse(BaseModel):
    id: str
    timestamp: datetime
    actor: str
    change_type: str
    entity_type: str
    entity_name: str
    description: str
    statements: List[str]
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    success: bool
    error_message: str = ""


class AuditListResponse(BaseModel):
    entries: List[AuditEntryResponse]
    count: int


class AuditStatsResponse(BaseModel):
    total: int
    succeeded: int
    failed: int
    by_actor: Dict[str, int]
    by_change_type: Dict[str, int]
    recent_by_day: Dict[str, int]


class ImportValidationResponse(BaseModel):
    valid: bool
    error: Optional[str] = None
    diff: Optional[Dict[str, Dict[str, List[Dict[str, Any]]]]] = None


class PresetRequest(BaseModel):
    name: str
    grants: List[GrantModel] = []

    @field_validator('name')
    @classmethod
    def name_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('name cannot be empty')
        return v.strip()


class PresetUpdateRequest(BaseModel):
    grants: List[GrantModel] = []


class HealthResponse(BaseModel):
    status: str
    version: str
    clickhouse: bool
    audit_backend: str
    config_issues: List[str] = []
