from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import CRMError, InternalError
from app.core.rbac import require_permission
from app.crm.schemas import (
    AccountCreate,
    AccountDetailRead,
    AccountRead,
    AccountUpdate,
    ActivityLogRead,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    LeadConversionRead,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    NoteCreate,
    NoteRead,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    TenantCreate,
    TenantRead,
)
from app.crm.service import (
    AccountService,
    ActivityService,
    ActorUser,
    ContactService,
    LeadConversionService,
    LeadService,
    NoteService,
    OpportunityService,
    TenantService,
)


logger = logging.getLogger("app.crm.api")

router = APIRouter(prefix="/api/crm/accounts", tags=["crm.accounts"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
tenants_router = APIRouter(prefix="/api/crm", tags=["crm.tenants"])
notes_router = APIRouter(prefix="/api/crm", tags=["crm.notes"])
activity_router = APIRouter(prefix="/api/crm", tags=["crm.activity"])
service = AccountService()
contact_service = ContactService()
lead_service = LeadService()
conversion_service = LeadConversionService()
opportunity_service = OpportunityService()
tenant_service = TenantService()
note_service = NoteService()
activity_service = ActivityService()


@dataclass
class ErrorEnvelope:
    code: str
    kind: str
    message: str
    details: Any
    correlation_id: str | None
    success: bool = False


def error_response(request: Request, exc: CRMError, *, code: str) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    message = exc.message
    details = exc.details
    if isinstance(exc, InternalError):
        message = "Server error"
        details = None
    payload = ErrorEnvelope(
        code=code,
        kind=exc.kind,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=exc.status_code, content=asdict(payload))


def _parse_tenant(raw: str | None) -> uuid.UUID | None:
    return uuid.UUID(raw) if raw else None


def _page_limit(limit: int | None) -> int:
    return limit or get_settings().default_page_limit


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=auth_user.sub,
        tenant_id=_parse_tenant(auth_user.tenant),
        permissions=set(auth_user.permissions),
        user_type=auth_user.user_type,
        correlation_id=correlation_id,
    )


# Tenants


@tenants_router.post("/tenants", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
def create_tenant(
    request: Request,
    dto: TenantCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TenantRead | JSONResponse:
    try:
        require_permission(user, "tenants", "create")
        return tenant_service.create_tenant(db, user, dto)
    except CRMError as exc:
        return error_response(request, exc, code="crm_tenant_create_failed")


@tenants_router.get("/tenants", response_model=list[TenantRead])
def list_tenants(
    request: Request,
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TenantRead] | JSONResponse:
    try:
        require_permission(user, "tenants", "read")
        return tenant_service.list_tenants(db, user, cursor=cursor, limit=_page_limit(limit))
    except CRMError as exc:
        return error_response(request, exc, code="crm_tenant_list_failed")


@tenants_router.get("/tenants/{tenant_id}", response_model=TenantRead)
def get_tenant(
    request: Request,
    tenant_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TenantRead | JSONResponse:
    try:
        require_permission(user, "tenants", "read")
        return tenant_service.get_tenant(db, user, tenant_id)
    except CRMError as exc:
        return error_response(request, exc, code="crm_tenant_get_failed")


# Leads


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    lead_source: str | None = Query(default=None),
    rating: str | None = Query(default=None),
    owner_user_id: str | None = Query(default=None),
    is_converted: bool | None = Query(default=None),
    tenant_id: uuid.UUID | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        require_permission(user, "leads", "read")
        return lead_service.list_leads(
            db,
            user,
            filters={
                "status": status_filter,
                "lead_source": lead_source,
                "rating": rating,
                "owner_user_id": owner_user_id,
                "is_converted": is_converted,
                "tenant_id": tenant_id,
                "q": q,
            },
            cursor=cursor,
            limit=_page_limit(limit),
        )
    except CRMError as exc:
        return error_response(request, exc, code="crm_lead_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "leads", "create")
        return lead_service.create_lead(db, user, dto)
    except CRMError as exc:
        return error_response(request, exc, code="crm_lead_create_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "leads", "read")
        return lead_service.get_lead(db, user, lead_id)
    except CRMError as exc:
        return error_response(request, exc, code="crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        require_permission(user, "leads", "update")
        return lead_service.update_lead(db, user, lead_id, dto)
    except CRMError as exc:
        return error_response(request, exc, code="crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "leads", "delete")
        lead_service.soft_delete_lead(db, user, lead_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return error_response(request, exc, code="crm_lead_delete_failed")


@leads_router.post("/leads/{lead_id}/convert", response_model=LeadConversionRead)
def convert_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadConvertRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=255),
) -> LeadConversionRead | JSONResponse:
    try:
        require_permission(user, "leads", "convert")
        return conversion_service.convert_lead(db, user, lead_id, dto, idempotency_key)
    except CRMError as exc:
        return error_response(request, exc, code="crm_lead_convert_failed")


# Accounts


@router.post("", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
def create_account(
    request: Request,
    dto: AccountCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        require_permission(user, "accounts", "create")
        return service.create_account(db, user, dto)
    except CRMError as exc:
        return error_response(request, exc, code="crm_account_create_failed")


@router.get("", response_model=list[AccountRead])
def list_accounts(
    request: Request,
    q: str | None = Query(default=None),
    account_type: str | None = Query(default=None),
    industry: str | None = Query(default=None),
    owner_user_id: str | None = Query(default=None),
    parent_account_id: uuid.UUID | None = Query(default=None),
    tenant_id: uuid.UUID | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AccountRead] | JSONResponse:
    try:
        require_permission(user, "accounts", "read")
        return service.list_accounts(
            db,
            user,
            filters={
                "q": q,
                "account_type": account_type,
                "industry": industry,
                "owner_user_id": owner_user_id,
                "parent_account_id": parent_account_id,
                "tenant_id": tenant_id,
            },
            cursor=cursor,
            limit=_page_limit(limit),
        )
    except CRMError as exc:
        return error_response(request, exc, code="crm_account_list_failed")


@router.get("/{account_id}", response_model=AccountDetailRead)
def get_account(
    request: Request,
    account_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountDetailRead | JSONResponse:
    try:
        require_permission(user, "accounts", "read")
        return service.get_account(db, user, account_id)
    except CRMError as exc:
        return error_response(request, exc, code="crm_account_get_failed")


@router.patch("/{account_id}", response_model=AccountRead)
def patch_account(
    request: Request,
    account_id: uuid.UUID,
    dto: AccountUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AccountRead | JSONResponse:
    try:
        require_permission(user, "accounts", "update")
        return service.update_account(db, user, account_id, dto)
    except CRMError as exc:
        return error_response(request, exc, code="crm_account_update_failed")


@router.delete("/{account_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_account(
    request: Request,
    account_id: uuid.UUID,
    force: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "accounts", "delete")
        service.soft_delete_account(db, user, account_id, force=force)
        return {"status": "deleted"}
    except CRMError as exc:
        return error_response(request, exc, code="crm_account_delete_failed")


# Contacts


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "contacts", "create")
        return contact_service.create_contact(db, user, dto)
    except CRMError as exc:
        return error_response(request, exc, code="crm_contact_create_failed")


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    account_id: uuid.UUID | None = Query(default=None),
    owner_user_id: str | None = Query(default=None),
    tenant_id: uuid.UUID | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "contacts", "read")
        return contact_service.list_contacts(
            db,
            user,
            filters={"account_id": account_id, "owner_user_id": owner_user_id, "tenant_id": tenant_id, "q": q},
            cursor=cursor,
            limit=_page_limit(limit),
        )
    except CRMError as exc:
        return error_response(request, exc, code="crm_contact_list_failed")


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "contacts", "read")
        return contact_service.get_contact(db, user, contact_id)
    except CRMError as exc:
        return error_response(request, exc, code="crm_contact_get_failed")


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactRead)
def patch_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "contacts", "update")
        return contact_service.update_contact(db, user, contact_id, dto)
    except CRMError as exc:
        return error_response(request, exc, code="crm_contact_update_failed")


@contacts_router.delete("/contacts/{contact_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "contacts", "delete")
        contact_service.soft_delete_contact(db, user, contact_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return error_response(request, exc, code="crm_contact_delete_failed")


# Opportunities


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "opportunities", "create")
        return opportunity_service.create_opportunity(db, user, dto)
    except CRMError as exc:
        return error_response(request, exc, code="crm_opportunity_create_failed")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    stage: str | None = Query(default=None),
    account_id: uuid.UUID | None = Query(default=None),
    owner_user_id: str | None = Query(default=None),
    close_from: date | None = Query(default=None),
    close_to: date | None = Query(default=None),
    tenant_id: uuid.UUID | None = Query(default=None),
    q: str | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "opportunities", "read")
        return opportunity_service.list_opportunities(
            db,
            user,
            filters={
                "stage": stage,
                "account_id": account_id,
                "owner_user_id": owner_user_id,
                "close_from": close_from,
                "close_to": close_to,
                "tenant_id": tenant_id,
                "q": q,
            },
            cursor=cursor,
            limit=_page_limit(limit),
        )
    except CRMError as exc:
        return error_response(request, exc, code="crm_opportunity_list_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "opportunities", "read")
        return opportunity_service.get_opportunity(db, user, opportunity_id)
    except CRMError as exc:
        return error_response(request, exc, code="crm_opportunity_get_failed")


@opportunities_router.patch("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def patch_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    dto: OpportunityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "opportunities", "update")
        return opportunity_service.update_opportunity(db, user, opportunity_id, dto)
    except CRMError as exc:
        return error_response(request, exc, code="crm_opportunity_update_failed")


@opportunities_router.delete("/opportunities/{opportunity_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "opportunities", "delete")
        opportunity_service.soft_delete_opportunity(db, user, opportunity_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return error_response(request, exc, code="crm_opportunity_delete_failed")


# Notes


@notes_router.post("/notes", response_model=NoteRead, status_code=status.HTTP_201_CREATED)
def create_note(
    request: Request,
    dto: NoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> NoteRead | JSONResponse:
    try:
        require_permission(user, "notes", "create")
        return note_service.create_note(db, user, dto)
    except CRMError as exc:
        return error_response(request, exc, code="crm_note_create_failed")


@notes_router.get("/entities/{entity_type}/{entity_id}/notes", response_model=list[NoteRead])
def list_entity_notes(
    request: Request,
    entity_type: str,
    entity_id: uuid.UUID,
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[NoteRead] | JSONResponse:
    try:
        require_permission(user, "notes", "read")
        return note_service.list_notes(db, user, entity_type, entity_id, cursor=cursor, limit=_page_limit(limit))
    except CRMError as exc:
        return error_response(request, exc, code="crm_note_list_failed")


@notes_router.delete("/notes/{note_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_note(
    request: Request,
    note_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Any:
    try:
        require_permission(user, "notes", "delete")
        note_service.soft_delete_note(db, user, note_id)
        return {"status": "deleted"}
    except CRMError as exc:
        return error_response(request, exc, code="crm_note_delete_failed")


# Activity log


@activity_router.get("/activity", response_model=list[ActivityLogRead])
def list_activity(
    request: Request,
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    event_name: str | None = Query(default=None),
    actor_user_id: str | None = Query(default=None),
    tenant_id: uuid.UUID | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityLogRead] | JSONResponse:
    try:
        require_permission(user, "activity", "read")
        return activity_service.list_activity(
            db,
            user,
            filters={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "event_name": event_name,
                "actor_user_id": actor_user_id,
                "tenant_id": tenant_id,
            },
            cursor=cursor,
            limit=_page_limit(limit),
        )
    except CRMError as exc:
        return error_response(request, exc, code="crm_activity_list_failed")
