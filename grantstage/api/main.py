"""
HTTP surface for planning, staging, executing and auditing access-control changes.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .schemas import (
    AuditEntryResponse,
    AuditListResponse,
    AuditStatsResponse,
    ChangeListResponse,
    ExecuteRequest,
    ExecuteResponse,
    ExecutionResultModel,
    ExecutionSummaryModel,
    GrantDiffRequest,
    HealthResponse,
    ImportValidationResponse,
    PendingChangeResponse,
    PresetRequest,
    PresetUpdateRequest,
    QuotaRequest,
    RoleRequest,
    RoleUpdateRequest,
    RowPolicyRequest,
    ScopeResolveRequest,
    ScopeResolveResponse,
    SettingsProfileRequest,
    StageResponse,
    StatementsResponse,
    UserRequest,
    UserUpdateRequest,
    to_grants,
)
from ..core import config, planner
from ..core.audit import AuditLogFilters, AuditRecorder, create_audit_store
from ..core.catalog import CATALOG, PermissionCatalog
from ..core.diff import diff_grants
from ..core.effective_grants import EffectiveGrantsResolver
from ..core.errors import (
    ChangeValidationError,
    QueueBusyError,
    ResolutionError,
    StatementExecutionError,
    UnknownPermission,
)
from ..core.export_import import ENTITY_SCOPES, calculate_diff, export_permissions, validate_import
from ..core.planner import RoleDraft
from ..core.presets import PresetStore
from ..core.queue import StagedChangeQueue, summarize_results
from ..core.schema import PendingChange
from ..core.scope import format_scope
from ..core.sources import ClickHouseAccessSource
from ..core.transport import ClickHouseHttpTransport
from ..util.logging import audit_event, redact_statements


def _change_response(change: PendingChange) -> PendingChangeResponse:
    # Passwords stay in the queued statements but never leave in a response
    data = change.to_dict()
    data["statements"] = redact_statements(data["statements"])
    return PendingChangeResponse(**data)


def create_app(transport=None, source=None, recorder: AuditRecorder = None, queue: StagedChangeQueue = None,
               presets: PresetStore = None, catalog: PermissionCatalog = CATALOG) -> FastAPI:
    """Build the app with injected collaborators; defaults come from config."""
    if transport is None:
        transport = ClickHouseHttpTransport()
    if source is None:
        source = ClickHouseAccessSource(transport, catalog)
    if recorder is None:
        recorder = AuditRecorder(create_audit_store(transport))
    if queue is None:
        queue = StagedChangeQueue(transport, recorder)
    if presets is None:
        presets = PresetStore()
    resolver = EffectiveGrantsResolver(source)

    app = FastAPI(
        title="grantstage API",
        version=config.VERSION,
        description="Plan, stage, execute and audit ClickHouse access-control changes",
        docs_url="/docs" if config.debug_enabled() else None,
        redoc_url="/redoc" if config.debug_enabled() else None
    )
    app.state.transport = transport
    app.state.queue = queue
    app.state.recorder = recorder
    app.state.presets = presets

    # Error mapping

    @app.exception_handler(UnknownPermission)
    async def unknown_permission_handler(request: Request, exc: UnknownPermission):
        return JSONResponse(status_code=404, content={"detail": str(exc), "field": exc.field})

    @app.exception_handler(ChangeValidationError)
    async def validation_handler(request: Request, exc: ChangeValidationError):
        return JSONResponse(status_code=400, content={
            "detail": exc.message,
            "entity_name": exc.entity_name,
            "field": exc.field,
        })

    @app.exception_handler(QueueBusyError)
    async def busy_handler(request: Request, exc: QueueBusyError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ResolutionError)
    async def resolution_handler(request: Request, exc: ResolutionError):
        return JSONResponse(status_code=502, content={"detail": str(exc), "identity": exc.identity})

    @app.exception_handler(StatementExecutionError)
    async def statement_handler(request: Request, exc: StatementExecutionError):
        return JSONResponse(status_code=502, content={"detail": exc.message})

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Handle all unhandled exceptions."""
        logging.error(f"Unhandled exception: {exc}")
        content = {"detail": "Internal server error"}
        if config.debug_enabled():
            content["debug"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    def stage(change: Optional[PendingChange]) -> StageResponse:
        if change is None:
            return StageResponse(staged=False, message="No changes detected")
        change_id = queue.add(change)
        staged = queue.get(change_id)
        return StageResponse(staged=True, change=_change_response(staged),
                             message=f"Change staged: {staged.description}")

    # Health and catalog

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint():
        """Check system health."""
        ping = getattr(transport, "ping", None)
        reachable = bool(ping()) if ping else True
        issues = config.validate_config()
        return HealthResponse(
            status="healthy" if reachable and not issues else "degraded",
            version=config.VERSION,
            clickhouse=reachable,
            audit_backend=config.get_audit_backend(),
            config_issues=issues,
        )

    @app.get("/catalog", response_model=List[Dict[str, Any]])
    def get_catalog():
        return catalog.to_dict()

    @app.get("/catalog/{permission_id}")
    def get_permission(permission_id: str):
        node = catalog.lookup(permission_id)
        data = node.to_dict()
        data["parent"] = catalog.parent_of(permission_id)
        data["ancestors"] = catalog.ancestors_of(permission_id)
        data["descendants"] = catalog.descendants_of(permission_id)
        return data

    @app.post("/scope/resolve", response_model=ScopeResolveResponse)
    def resolve_scope(req: ScopeResolveRequest):
        scope = catalog.resolve_scope(req.permission_id, req.scope.to_scope())
        return ScopeResolveResponse(permission_id=req.permission_id, scope=scope.to_dict(),
                                    formatted=format_scope(scope))

    @app.get("/identities/{name}/effective-grants")
    def get_effective_grants(name: str):
        return resolver.resolve(name).to_dict()

    @app.post("/plan/grants", response_model=StatementsResponse)
    def preview_grant_diff(req: GrantDiffRequest):
        """Preview the statements for a grant change without staging it."""
        desired = to_grants(req.desired)
        planner.validate_grants(desired, catalog)
        return StatementsResponse(
            statements=diff_grants(to_grants(req.original), desired, req.entity_name, catalog)
        )

    # Staging: users

    @app.post("/changes/users", response_model=StageResponse)
    def stage_create_user(req: UserRequest):
        return stage(planner.plan_create_user(req.to_draft(), catalog))

    @app.put("/changes/users/{name}", response_model=StageResponse)
    def stage_update_user(name: str, req: UserUpdateRequest):
        if req.original is not None:
            original = req.original.to_draft()
        else:
            original = source.fetch_user(name)
            if original is None:
                raise HTTPException(status_code=404, detail=f"User not found: {name}")
        desired = req.desired.to_draft()
        return stage(planner.plan_update_user(original, desired, catalog))

    @app.delete("/changes/users/{name}", response_model=StageResponse)
    def stage_drop_user(name: str):
        return stage(planner.plan_drop_user(name))

    # Staging: roles

    @app.post("/changes/roles", response_model=StageResponse)
    def stage_create_role(req: RoleRequest):
        return stage(planner.plan_create_role(req.to_draft(), catalog))

    @app.put("/changes/roles/{name}", response_model=StageResponse)
    def stage_update_role(name: str, req: RoleUpdateRequest):
        if req.original_grants is not None:
            original = RoleDraft(name=name, grants=to_grants(req.original_grants))
        else:
            original = source.fetch_role(name)
        desired = RoleDraft(name=name, grants=to_grants(req.grants))
        return stage(planner.plan_update_role(original, desired, catalog))

    @app.delete("/changes/roles/{name}", response_model=StageResponse)
    def stage_drop_role(name: str):
        return stage(planner.plan_drop_role(name))

    # Staging: quotas, row policies, settings profiles

    @app.post("/changes/quotas", response_model=StageResponse)
    def stage_create_quota(req: QuotaRequest):
        return stage(planner.plan_quota(req.to_draft()))

    @app.put("/changes/quotas/{name}", response_model=StageResponse)
    def stage_update_quota(name: str, req: QuotaRequest):
        return stage(planner.plan_quota(req.to_draft(), original=planner.QuotaDraft(name=name)))

    @app.delete("/changes/quotas/{name}", response_model=StageResponse)
    def stage_drop_quota(name: str):
        return stage(planner.plan_drop_quota(name))

    @app.post("/changes/row-policies", response_model=StageResponse)
    def stage_create_row_policy(req: RowPolicyRequest):
        return stage(planner.plan_row_policy(req.to_draft()))

    @app.put("/changes/row-policies/{database}/{table}/{name}", response_model=StageResponse)
    def stage_update_row_policy(database: str, table: str, name: str, req: RowPolicyRequest):
        original = planner.RowPolicyDraft(name=name, database=database, table=table, filter_clause="")
        return stage(planner.plan_row_policy(req.to_draft(), original=original))

    @app.delete("/changes/row-policies/{database}/{table}/{name}", response_model=StageResponse)
    def stage_drop_row_policy(database: str, table: str, name: str):
        return stage(planner.plan_drop_row_policy(name, database, table))

    @app.post("/changes/settings-profiles", response_model=StageResponse)
    def stage_create_settings_profile(req: SettingsProfileRequest):
        return stage(planner.plan_settings_profile(req.to_draft()))

    @app.put("/changes/settings-profiles/{name}", response_model=StageResponse)
    def stage_update_settings_profile(name: str, req: SettingsProfileRequest):
        original = planner.SettingsProfileDraft(name=name)
        return stage(planner.plan_settings_profile(req.to_draft(), original=original))

    @app.delete("/changes/settings-profiles/{name}", response_model=StageResponse)
    def stage_drop_settings_profile(name: str):
        return stage(planner.plan_drop_settings_profile(name))

    # Queue

    @app.get("/changes", response_model=ChangeListResponse)
    def list_changes():
        changes = queue.pending
        return ChangeListResponse(
            changes=[_change_response(c) for c in changes],
            count=len(changes),
            is_executing=queue.is_executing,
        )

    @app.get("/changes/{change_id}", response_model=PendingChangeResponse)
    def get_change(change_id: str):
        change = queue.get(change_id)
        if change is None:
            raise HTTPException(status_code=404, detail="Change not found")
        return _change_response(change)

    @app.delete("/changes/{change_id}")
    def remove_change(change_id: str):
        return {"removed": queue.remove(change_id), "change_id": change_id}

    @app.delete("/changes")
    def clear_changes():
        return {"cleared": queue.clear()}

    def execution_response(results, total: int) -> ExecuteResponse:
        summary = summarize_results(results, total)
        return ExecuteResponse(
            results=[ExecutionResultModel(**vars(r)) for r in results],
            summary=ExecutionSummaryModel(**summary.to_dict()),
            remaining=len(queue),
        )

    @app.post("/changes/execute", response_model=ExecuteResponse)
    def execute_changes(req: Optional[ExecuteRequest] = None):
        total = len(queue)
        results = queue.execute_all(actor=req.actor if req else None)
        return execution_response(results, total)

    @app.post("/changes/{change_id}/execute", response_model=ExecuteResponse)
    def execute_single_change(change_id: str, req: Optional[ExecuteRequest] = None):
        result = queue.execute_change(change_id, actor=req.actor if req else None)
        if result is None:
            raise HTTPException(status_code=404, detail="Change not found")
        return execution_response([result], 1)

    # Audit

    @app.get("/audit", response_model=AuditListResponse)
    def query_audit(
        actor: Optional[str] = None,
        change_type: Optional[str] = None,
        entity_type: Optional[str] = None,
        success: Optional[bool] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        entries = recorder.query(AuditLogFilters(
            actor=actor,
            change_type=change_type,
            entity_type=entity_type,
            success=success,
            start_time=start_time,
            end_time=end_time,
            limit=limit,
            offset=offset,
        ))
        return AuditListResponse(
            entries=[AuditEntryResponse(**e.to_dict()) for e in entries],
            count=len(entries),
        )

    @app.get("/audit/stats", response_model=AuditStatsResponse)
    def audit_stats():
        return AuditStatsResponse(**recorder.stats().to_dict())

    # Export/import

    @app.get("/export")
    def export_endpoint(scope: str = "all", exported_by: Optional[str] = None):
        return export_permissions(transport, scope=scope, exported_by=exported_by)

    @app.post("/import/validate", response_model=ImportValidationResponse)
    def validate_import_endpoint(data: Dict[str, Any] = Body(...), with_diff: bool = False):
        """Validate an import document, optionally diffing it against the live state."""
        validate_import(data)
        diff = None
        if with_diff:
            diff = calculate_diff(export_permissions(transport), data)
        audit_event("import.validate", {"version": data["version"], "with_diff": with_diff},
                    {k: len(data.get(k) or []) for k in ENTITY_SCOPES})
        return ImportValidationResponse(valid=True, diff=diff)

    # Presets

    @app.get("/presets/{connection_id}")
    def list_presets(connection_id: str):
        return [p.to_dict() for p in presets.list(connection_id)]

    @app.post("/presets/{connection_id}")
    def add_preset(connection_id: str, req: PresetRequest):
        grants = planner.validate_grants(to_grants(req.grants), catalog)
        return presets.add(connection_id, req.name, grants).to_dict()

    @app.put("/presets/{connection_id}/{preset_id}")
    def update_preset(connection_id: str, preset_id: str, req: PresetUpdateRequest):
        grants = planner.validate_grants(to_grants(req.grants), catalog)
        if not presets.update(connection_id, preset_id, grants):
            raise HTTPException(status_code=404, detail="Preset not found")
        return presets.get(connection_id, preset_id).to_dict()

    @app.delete("/presets/{connection_id}/{preset_id}")
    def delete_preset(connection_id: str, preset_id: str):
        if not presets.delete(connection_id, preset_id):
            raise HTTPException(status_code=404, detail="Preset not found")
        return {"deleted": preset_id}

    @app.get("/presets/{connection_id}/export")
    def export_presets(connection_id: str):
        return presets.export(connection_id)

    @app.post("/presets/{connection_id}/import")
    def import_presets(connection_id: str, data: Dict[str, Any] = Body(...)):
        try:
            added = presets.import_presets(connection_id, data)
        except (ValueError, ChangeValidationError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"imported": added}

    return app


app = create_app()
