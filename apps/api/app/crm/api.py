from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.database import get_db
from app.crm.repositories import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, LeadListFilters
from app.crm.schemas import (
    ConvertedStatus,
    DisqualificationReasonRead,
    LeadConvertRequest,
    LeadConvertResult,
    LeadCreate,
    LeadDetailRead,
    LeadDisqualifyRequest,
    LeadKanbanBoard,
    LeadListPage,
    LeadRead,
    LeadSettingUpdate,
    LeadSortField,
    LeadStageChangeRequest,
    LeadUpdate,
    OwnershipScope,
    PriorityRead,
    RoutingRuleRead,
    StageFieldRead,
    StageRead,
)
from app.crm.service import ActorUser, LeadConfigurationService, LeadService
from app.platform.errors import PlatformError
from app.platform.tenancy import TenantPartition, resolve_tenant

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
lead_config_router = APIRouter(prefix="/api/crm/lead-config", tags=["crm.lead_config"])
lead_service = LeadService()
config_service = LeadConfigurationService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failure(request: Request, exc: PlatformError | HTTPException, fallback_code: str) -> JSONResponse:
    if isinstance(exc, PlatformError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=fallback_code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def request_tenant(request: Request, db: Session) -> TenantPartition:
    return resolve_tenant(db, request.headers.get("x-tenant-id"))


@leads_router.get("/leads", response_model=LeadListPage | LeadKanbanBoard)
def list_leads(
    request: Request,
    search: str | None = Query(default=None),
    stage_id: uuid.UUID | None = Query(default=None),
    stage_slug: str | None = Query(default=None),
    priority_id: uuid.UUID | None = Query(default=None),
    source: str | None = Query(default=None),
    owner_id: str | None = Query(default=None),
    tag: str | None = Query(default=None),
    company: str | None = Query(default=None),
    score_min: int | None = Query(default=None),
    score_max: int | None = Query(default=None),
    converted_status: ConvertedStatus | None = Query(default=None),
    ownership: OwnershipScope | None = Query(default=None),
    view: Literal["list", "kanban"] = Query(default="list"),
    sort_by: LeadSortField = Query(default="created_at"),
    sort_order: Literal["ASC", "DESC"] = Query(default="DESC"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadListPage | LeadKanbanBoard | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        tenant = request_tenant(request, db)
        filters = LeadListFilters(
            search=search,
            stage_id=stage_id,
            stage_slug=stage_slug,
            priority_id=priority_id,
            source=source,
            owner_id=owner_id,
            tag=tag,
            company=company,
            score_min=score_min,
            score_max=score_max,
            converted_status=converted_status,
            ownership=ownership,
        )
        if view == "kanban":
            return lead_service.kanban(db, tenant, user, filters)
        return lead_service.list_leads(
            db,
            tenant,
            user,
            filters,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.create")
        return lead_service.create_lead(db, request_tenant(request, db), user, dto)
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadDetailRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadDetailRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return lead_service.get_lead(db, request_tenant(request, db), user, lead_id)
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.update_lead(db, request_tenant(request, db), user, lead_id, dto)
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_update_failed")


@leads_router.post("/leads/{lead_id}/stage", response_model=LeadRead)
def change_lead_stage(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadStageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.update")
        return lead_service.change_stage(db, request_tenant(request, db), user, lead_id, dto)
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_stage_change_failed")


@leads_router.post("/leads/{lead_id}/disqualify", response_model=LeadRead)
def disqualify_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadDisqualifyRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "crm.leads.disqualify")
        return lead_service.disqualify_lead(db, request_tenant(request, db), user, lead_id, dto)
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_disqualify_failed")


@leads_router.post("/leads/{lead_id}/convert", response_model=LeadConvertResult)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> LeadConvertResult | JSONResponse:
    try:
        require_permission(user, "crm.leads.convert")
        return lead_service.convert_lead(db, request_tenant(request, db), user, lead_id, dto, idempotency_key)
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_convert_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "crm.leads.delete")
        lead_service.soft_delete_lead(db, request_tenant(request, db), user, lead_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_delete_failed")


@lead_config_router.get("/stages", response_model=list[StageRead])
def list_stages(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return config_service.list_stages(db, request_tenant(request, db))
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_config_failed")


@lead_config_router.get("/stages/{stage_id}/fields", response_model=list[StageFieldRead])
def list_stage_fields(
    request: Request,
    stage_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageFieldRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return config_service.list_stage_fields(db, request_tenant(request, db), stage_id)
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_config_failed")


@lead_config_router.get("/priorities", response_model=list[PriorityRead])
def list_priorities(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PriorityRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return config_service.list_priorities(db, request_tenant(request, db))
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_config_failed")


@lead_config_router.get("/disqualification-reasons", response_model=list[DisqualificationReasonRead])
def list_disqualification_reasons(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DisqualificationReasonRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return config_service.list_disqualification_reasons(db, request_tenant(request, db))
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_config_failed")


@lead_config_router.get("/routing-rules", response_model=list[RoutingRuleRead])
def list_routing_rules(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[RoutingRuleRead] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return config_service.list_routing_rules(db, request_tenant(request, db))
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_config_failed")


@lead_config_router.get("/settings", response_model=dict[str, Any])
def get_lead_settings(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.leads.read")
        return config_service.get_settings(db, request_tenant(request, db))
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_config_failed")


@lead_config_router.patch("/settings/{key}", response_model=dict[str, Any])
def update_lead_settings(
    request: Request,
    key: str,
    dto: LeadSettingUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        require_permission(user, "crm.leads.configure")
        return config_service.update_setting(db, request_tenant(request, db), user, key, dto.value)
    except (PlatformError, HTTPException) as exc:
        return _failure(request, exc, "crm_lead_settings_update_failed")
