from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel
from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import events
from app.core.config import get_settings
from app.core.errors import (
    AccessDeniedError,
    AlreadyConvertedError,
    ConflictError,
    CRMError,
    DuplicateEmailError,
    DuplicateNameError,
    InternalError,
    NotFoundError,
    ValidationFailedError,
)
from app.crm.models import (
    CRMAccount,
    CRMContact,
    CRMIdempotencyKey,
    CRMLead,
    CRMNote,
    CRMOpportunity,
    CRMTenant,
)
from app.crm.schemas import (
    AccountConversionData,
    AccountCreate,
    AccountDetailRead,
    AccountRead,
    AccountUpdate,
    ActivityLogRead,
    ContactConversionData,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    ConvertedAccountSummary,
    ConvertedContactSummary,
    ConvertedOpportunitySummary,
    LeadConversionRead,
    LeadConvertRequest,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    NoteCreate,
    NoteRead,
    OpportunityConversionData,
    OpportunityCreate,
    OpportunityRead,
    OpportunityUpdate,
    TenantCreate,
    TenantRead,
)
from app.metrics import observe_lead_conversion
from app.models.activity import ActivityLog
from app.platform.security.context import ActorUser
from app.platform.security.tenancy import (
    apply_tenant_filter,
    canonical_tenant_id,
    ensure_tenant_access,
    is_platform_operator,
    resolve_write_tenant,
)
from app.services.activity import log_activity


logger = logging.getLogger("app.crm.leads")
tracer = trace.get_tracer("app.crm.leads")

__all__ = [
    "AccountService",
    "ActivityService",
    "ActorUser",
    "ContactService",
    "DuplicateGuard",
    "LeadConversionService",
    "LeadService",
    "NoteService",
    "OpportunityService",
    "TenantService",
    "merge_field",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_email(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip().lower()
    return normalized or None


def _request_hash(payload: dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()


def _offset(cursor: str | None) -> int:
    return int(cursor) if cursor and cursor.isdigit() else 0


def _changes_from(dto: BaseModel, *, required: frozenset[str] = frozenset()) -> dict[str, Any]:
    """Collect the fields a patch model explicitly set, minus row_version.

    Fields in ``required`` may be omitted but never cleared.
    """

    changes = {name: getattr(dto, name) for name in dto.model_fields_set if name != "row_version"}
    for name in sorted(required & changes.keys()):
        if changes[name] is None:
            raise ValidationFailedError(f"{name} cannot be null", details={"field": name})
    return changes


def merge_field(supplied: Any, fallback: Any) -> Any:
    """Return the caller value when present, else the lead's value.

    Strings are trimmed and an empty string counts as absent.
    """

    if isinstance(supplied, str):
        supplied = supplied.strip() or None
    if supplied is not None:
        return supplied
    if isinstance(fallback, str):
        fallback = fallback.strip() or None
    return fallback


@contextmanager
def _unit_of_work(session: Session) -> Iterator[None]:
    try:
        yield
        session.commit()
    except CRMError:
        session.rollback()
        raise
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError("Conflicting write, retry the request") from exc
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("crm_persistence_failed", extra={"error": str(exc)})
        raise InternalError("Server error") from exc


def _get_active(session: Session, model: Any, record_id: uuid.UUID, label: str) -> Any:
    record = session.scalar(select(model).where(and_(model.id == record_id, model.is_active.is_(True))))
    if record is None:
        raise NotFoundError(f"{label} not found")
    return record


def _get_visible(session: Session, actor_user: ActorUser, model: Any, record_id: uuid.UUID, label: str) -> Any:
    record = _get_active(session, model, record_id, label)
    ensure_tenant_access(actor_user, record.tenant_id, resource=label.lower())
    return record


def _load_in_tenant(
    session: Session,
    model: Any,
    record_id: uuid.UUID,
    tenant_id: uuid.UUID,
    label: str,
) -> Any:
    """Load an active record that another record in ``tenant_id`` wants to reference."""

    record = session.scalar(select(model).where(and_(model.id == record_id, model.is_active.is_(True))))
    if record is None or canonical_tenant_id(record.tenant_id) != canonical_tenant_id(tenant_id):
        raise ValidationFailedError(f"{label} {record_id} does not exist in this tenant")
    return record


def _ensure_acyclic(
    session: Session,
    model: Any,
    parent_column: Any,
    record_id: uuid.UUID,
    new_parent_id: uuid.UUID | None,
    label: str,
) -> None:
    seen: set[uuid.UUID] = set()
    current = new_parent_id
    while current is not None:
        if current == record_id:
            raise ValidationFailedError(f"{label} would create a cycle")
        if current in seen:
            break
        seen.add(current)
        current = session.scalar(select(parent_column).where(model.id == current))


def _resolve_tenant(session: Session, actor_user: ActorUser, requested: uuid.UUID | None) -> uuid.UUID:
    tenant_id = resolve_write_tenant(actor_user, requested)
    tenant = session.get(CRMTenant, tenant_id)
    if tenant is None or not tenant.is_active:
        raise ValidationFailedError("Tenant not found")
    return tenant_id


def _publish(event_type: str, actor_user: ActorUser, tenant_id: Any, payload: dict[str, Any]) -> None:
    events.publish(
        events.build_envelope(
            event_type,
            actor_user_id=actor_user.user_id,
            tenant_id=tenant_id,
            payload=payload,
            correlation_id=actor_user.correlation_id,
        )
    )


class DuplicateGuard:
    """Uniqueness rules enforced before writes, plus keyed-replay storage."""

    def ensure_lead_email_available(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        email: str | None,
        *,
        exclude_lead_id: uuid.UUID | None = None,
    ) -> None:
        if not email:
            return
        stmt = select(CRMLead.id).where(
            and_(
                CRMLead.tenant_id == tenant_id,
                CRMLead.email == email,
                CRMLead.is_active.is_(True),
            )
        )
        if get_settings().lead_duplicate_email_scope == "open":
            stmt = stmt.where(CRMLead.is_converted.is_(False))
        if exclude_lead_id is not None:
            stmt = stmt.where(CRMLead.id != exclude_lead_id)
        if session.scalar(stmt.limit(1)) is not None:
            raise DuplicateEmailError("A lead with this email already exists", details={"email": email})

    def ensure_account_name_available(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        name: str,
        *,
        exclude_account_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(CRMAccount.id).where(
            and_(
                CRMAccount.tenant_id == tenant_id,
                func.lower(func.trim(CRMAccount.name)) == name.strip().lower(),
                CRMAccount.is_active.is_(True),
            )
        )
        if exclude_account_id is not None:
            stmt = stmt.where(CRMAccount.id != exclude_account_id)
        if session.scalar(stmt.limit(1)) is not None:
            raise DuplicateNameError("An account with this name already exists", details={"name": name.strip()})

    def ensure_contact_email_available(
        self,
        session: Session,
        account_id: uuid.UUID | None,
        email: str | None,
        *,
        exclude_contact_id: uuid.UUID | None = None,
    ) -> None:
        if account_id is None or not email:
            return
        stmt = select(CRMContact.id).where(
            and_(
                CRMContact.account_id == account_id,
                CRMContact.email == email,
                CRMContact.is_active.is_(True),
            )
        )
        if exclude_contact_id is not None:
            stmt = stmt.where(CRMContact.id != exclude_contact_id)
        if session.scalar(stmt.limit(1)) is not None:
            raise DuplicateEmailError(
                "A contact with this email already exists for this account",
                details={"email": email},
            )

    def ensure_tenant_slug_available(self, session: Session, slug: str) -> None:
        if session.scalar(select(CRMTenant.id).where(CRMTenant.slug == slug).limit(1)) is not None:
            raise DuplicateNameError("A tenant with this slug already exists", details={"slug": slug})

    def ensure_not_converted(self, lead: CRMLead) -> None:
        if lead.is_converted:
            raise AlreadyConvertedError(
                "Lead has already been converted",
                details={"converted_at": lead.converted_at.isoformat() if lead.converted_at else None},
            )

    def load_replay(
        self,
        session: Session,
        endpoint: str,
        key: str | None,
        request_hash: str,
    ) -> dict[str, Any] | None:
        if not key:
            return None
        record = session.scalar(
            select(CRMIdempotencyKey).where(and_(CRMIdempotencyKey.endpoint == endpoint, CRMIdempotencyKey.key == key))
        )
        if record is None:
            return None
        if record.request_hash != request_hash:
            raise ConflictError("Idempotency key was used with a different request")
        return json.loads(record.response_json)

    def store_replay(
        self,
        session: Session,
        endpoint: str,
        key: str | None,
        request_hash: str,
        response: BaseModel,
    ) -> None:
        if not key:
            return
        session.add(
            CRMIdempotencyKey(
                endpoint=endpoint,
                key=key,
                request_hash=request_hash,
                response_json=json.dumps(response.model_dump(mode="json")),
            )
        )


duplicate_guard = DuplicateGuard()


def _next_account_number(session: Session, tenant_id: uuid.UUID) -> tuple[int, str]:
    current = session.scalar(
        select(func.coalesce(func.max(CRMAccount.account_sequence), 0)).where(CRMAccount.tenant_id == tenant_id)
    )
    sequence = int(current or 0) + 1
    return sequence, f"ACC-{sequence:06d}"


def _account_read(account: CRMAccount) -> AccountRead:
    return AccountRead.model_validate(account)


def _contact_read(contact: CRMContact) -> ContactRead:
    return ContactRead.model_validate(contact)


def _lead_read(lead: CRMLead) -> LeadRead:
    return LeadRead.model_validate(lead)


def _opportunity_read(opportunity: CRMOpportunity) -> OpportunityRead:
    return OpportunityRead.model_validate(
        {
            "id": opportunity.id,
            "tenant_id": opportunity.tenant_id,
            "account_id": opportunity.account_id,
            "contact_id": opportunity.contact_id,
            "lead_id": opportunity.lead_id,
            "name": opportunity.name,
            "stage": opportunity.stage,
            "probability": opportunity.probability,
            "amount": float(opportunity.amount or 0),
            "close_date": opportunity.close_date,
            "opportunity_type": opportunity.opportunity_type,
            "lead_source": opportunity.lead_source,
            "next_step": opportunity.next_step,
            "description": opportunity.description,
            "owner_user_id": opportunity.owner_user_id,
            "created_by": opportunity.created_by,
            "last_modified_by": opportunity.last_modified_by,
            "is_active": opportunity.is_active,
            "created_at": opportunity.created_at,
            "updated_at": opportunity.updated_at,
            "row_version": opportunity.row_version,
        }
    )


def _conditional_update(
    session: Session,
    model: Any,
    record_id: uuid.UUID,
    row_version: int,
    changes: dict[str, Any],
) -> None:
    """Apply ``changes`` only when the stored row_version still matches."""

    values = dict(changes)
    values["updated_at"] = utcnow()
    values["row_version"] = model.row_version + 1
    result = session.execute(
        update(model)
        .where(
            and_(
                model.id == record_id,
                model.row_version == row_version,
                model.is_active.is_(True),
            )
        )
        .values(**values)
    )
    if result.rowcount == 0:
        raise ConflictError("row_version conflict", details={"expected_row_version": row_version})


class TenantService:
    entity_type = "tenant"

    def create_tenant(self, session: Session, actor_user: ActorUser, dto: TenantCreate) -> TenantRead:
        if not is_platform_operator(actor_user):
            raise AccessDeniedError("Only platform operators can create tenants")

        slug = dto.slug.strip().lower()
        duplicate_guard.ensure_tenant_slug_available(session, slug)

        with _unit_of_work(session):
            tenant = CRMTenant(
                organization_name=dto.organization_name.strip(),
                slug=slug,
                domain=dto.domain,
                contact_email=_normalize_email(dto.contact_email),
                contact_phone=dto.contact_phone,
                plan_type=dto.plan_type,
                created_by=actor_user.user_id,
            )
            session.add(tenant)
            session.flush()
            log_activity(
                session,
                actor_user,
                "tenant.created",
                self.entity_type,
                tenant.id,
                {"slug": slug},
                tenant_id=tenant.id,
            )

        _publish("crm.tenant.created", actor_user, tenant.id, {"tenant_id": str(tenant.id), "slug": tenant.slug})
        return TenantRead.model_validate(tenant)

    def list_tenants(
        self,
        session: Session,
        actor_user: ActorUser,
        cursor: str | None,
        limit: int,
    ) -> list[TenantRead]:
        if not is_platform_operator(actor_user):
            raise AccessDeniedError("Only platform operators can list tenants")
        stmt = select(CRMTenant).order_by(CRMTenant.created_at.desc(), CRMTenant.slug).offset(_offset(cursor)).limit(limit)
        return [TenantRead.model_validate(item) for item in session.scalars(stmt).all()]

    def get_tenant(self, session: Session, actor_user: ActorUser, tenant_id: uuid.UUID) -> TenantRead:
        tenant = session.get(CRMTenant, tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant not found")
        ensure_tenant_access(actor_user, tenant.id, resource="tenant")
        return TenantRead.model_validate(tenant)


class LeadService:
    entity_type = "lead"
    required_fields = frozenset({"owner_user_id", "lead_source", "status", "rating", "lead_score"})

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        tenant_id = _resolve_tenant(session, actor_user, dto.tenant_id)
        email = _normalize_email(dto.email)
        duplicate_guard.ensure_lead_email_available(session, tenant_id, email)

        values = dto.model_dump(exclude={"tenant_id", "owner_user_id", "email"})
        with _unit_of_work(session):
            lead = CRMLead(
                **values,
                tenant_id=tenant_id,
                email=email,
                owner_user_id=dto.owner_user_id or actor_user.user_id,
                created_by=actor_user.user_id,
            )
            session.add(lead)
            session.flush()
            log_activity(session, actor_user, "lead.created", self.entity_type, lead.id, tenant_id=tenant_id)

        _publish("crm.lead.created", actor_user, tenant_id, {"lead_id": str(lead.id), "status": lead.status})
        return _lead_read(lead)

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[LeadRead]:
        stmt: Select[tuple[CRMLead]] = select(CRMLead).where(CRMLead.is_active.is_(True))
        stmt = apply_tenant_filter(stmt, CRMLead, actor_user, filters.get("tenant_id"))

        for name in ("status", "lead_source", "rating", "owner_user_id"):
            if filters.get(name):
                stmt = stmt.where(getattr(CRMLead, name) == filters[name])
        if filters.get("is_converted") is not None:
            stmt = stmt.where(CRMLead.is_converted.is_(bool(filters["is_converted"])))
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(
                    CRMLead.first_name.ilike(pattern),
                    CRMLead.last_name.ilike(pattern),
                    CRMLead.email.ilike(pattern),
                    CRMLead.company.ilike(pattern),
                    CRMLead.phone.ilike(pattern),
                )
            )

        stmt = stmt.order_by(CRMLead.created_at.desc()).offset(_offset(cursor)).limit(limit)
        return [_lead_read(item) for item in session.scalars(stmt).all()]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        lead = _get_visible(session, actor_user, CRMLead, lead_id, "Lead")
        linked = (
            ("converted_account", CRMAccount, lead.converted_account_id, ConvertedAccountSummary),
            ("converted_contact", CRMContact, lead.converted_contact_id, ConvertedContactSummary),
            ("converted_opportunity", CRMOpportunity, lead.converted_opportunity_id, ConvertedOpportunitySummary),
        )
        summaries: dict[str, BaseModel] = {}
        for field, model, record_id, summary in linked:
            if record_id is None:
                continue
            record = session.scalar(select(model).where(and_(model.id == record_id, model.is_active.is_(True))))
            if record is not None:
                summaries[field] = summary.model_validate(record)
        return _lead_read(lead).model_copy(update=summaries)

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        lead = _get_visible(session, actor_user, CRMLead, lead_id, "Lead")
        changes = _changes_from(dto, required=self.required_fields)

        if lead.is_converted:
            if not is_platform_operator(actor_user):
                raise AlreadyConvertedError("Cannot update a converted lead")
            if "status" in changes:
                raise ValidationFailedError("status of a converted lead cannot change")

        if "email" in changes:
            changes["email"] = _normalize_email(changes["email"])
            if changes["email"] != lead.email:
                duplicate_guard.ensure_lead_email_available(
                    session, lead.tenant_id, changes["email"], exclude_lead_id=lead.id
                )

        if not changes:
            return _lead_read(lead)

        changes["last_modified_by"] = actor_user.user_id
        with _unit_of_work(session):
            _conditional_update(session, CRMLead, lead.id, dto.row_version, changes)
            log_activity(
                session,
                actor_user,
                "lead.updated",
                self.entity_type,
                lead.id,
                {"fields": sorted(_changes_from(dto))},
                tenant_id=lead.tenant_id,
            )

        session.refresh(lead)
        _publish("crm.lead.updated", actor_user, lead.tenant_id, {"lead_id": str(lead.id), "row_version": lead.row_version})
        return _lead_read(lead)

    def soft_delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        lead = _get_visible(session, actor_user, CRMLead, lead_id, "Lead")
        with _unit_of_work(session):
            lead.is_active = False
            lead.last_modified_by = actor_user.user_id
            lead.row_version = lead.row_version + 1
            log_activity(session, actor_user, "lead.deleted", self.entity_type, lead.id, tenant_id=lead.tenant_id)

        _publish("crm.lead.deleted", actor_user, lead.tenant_id, {"lead_id": str(lead.id)})


class LeadConversionService:
    """Turns an open lead into an account, a contact and an opportunity.

    The whole conversion is one unit of work. It starts by atomically
    claiming the lead (``is_converted`` false to true), so a concurrent second
    conversion updates no row and fails with ``AlreadyConverted`` before it
    creates anything. Any failure afterwards rolls back the claim together
    with every entity built so far.
    """

    account_fallbacks = {
        "name": "company",
        "industry": "industry",
        "website": "website",
        "phone": "phone",
        "email": "email",
        "annual_revenue": "annual_revenue",
        "number_of_employees": "number_of_employees",
        "billing_street": "street",
        "billing_city": "city",
        "billing_state": "state",
        "billing_country": "country",
        "billing_zip_code": "zip_code",
        "rating": "rating",
    }
    contact_fallbacks = {
        "first_name": "first_name",
        "last_name": "last_name",
        "email": "email",
        "phone": "phone",
        "job_title": "job_title",
        "mailing_street": "street",
        "mailing_city": "city",
        "mailing_state": "state",
        "mailing_country": "country",
        "mailing_zip_code": "zip_code",
    }

    def convert_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
        idempotency_key: str | None = None,
    ) -> LeadConversionRead:
        started = time.perf_counter()
        with tracer.start_as_current_span("crm.lead.convert") as span:
            span.set_attribute("crm.lead_id", str(lead_id))
            span.set_attribute("crm.actor_user_id", actor_user.user_id)
            span.set_attribute("correlation_id", actor_user.correlation_id or "")
            try:
                result, outcome = self._convert(session, actor_user, lead_id, dto, idempotency_key, span)
            except CRMError as exc:
                span.set_attribute("crm.outcome", exc.kind)
                span.set_status(Status(StatusCode.ERROR, exc.message))
                observe_lead_conversion(exc.kind, time.perf_counter() - started)
                logger.info(
                    "lead_conversion_rejected",
                    extra={
                        "lead_id": str(lead_id),
                        "actor_user_id": actor_user.user_id,
                        "kind": exc.kind,
                        "error": exc.message,
                    },
                )
                raise

            span.set_attribute("crm.outcome", outcome)
            observe_lead_conversion(outcome, time.perf_counter() - started)
            logger.info(
                "lead_converted",
                extra={
                    "lead_id": str(lead_id),
                    "actor_user_id": actor_user.user_id,
                    "tenant_id": str(result.lead.tenant_id),
                    "outcome": outcome,
                },
            )
            return result

    def _convert(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadConvertRequest,
        idempotency_key: str | None,
        span: Any,
    ) -> tuple[LeadConversionRead, str]:
        lead = _get_active(session, CRMLead, lead_id, "Lead")
        span.set_attribute("crm.tenant_id", str(lead.tenant_id))
        ensure_tenant_access(actor_user, lead.tenant_id, resource="lead")

        endpoint = f"crm.lead.convert:{lead_id}"
        request_hash = _request_hash(dto.model_dump(mode="json"))
        replay = duplicate_guard.load_replay(session, endpoint, idempotency_key, request_hash)
        if replay is not None:
            return LeadConversionRead.model_validate(replay), "replayed"

        duplicate_guard.ensure_not_converted(lead)
        existing_account = self._resolve_opportunity_account(session, lead, dto)

        try:
            self._claim(session, actor_user, lead)

            account = self._build_account(session, actor_user, lead, dto.account_data) if dto.create_account else None
            contact = (
                self._build_contact(session, actor_user, lead, account, dto.contact_data) if dto.create_contact else None
            )
            opportunity = None
            if dto.create_opportunity:
                opportunity = self._build_opportunity(
                    session,
                    actor_user,
                    lead,
                    account or existing_account,
                    contact,
                    dto.opportunity_data,
                )

            lead.converted_account_id = account.id if account is not None else None
            lead.converted_contact_id = contact.id if contact is not None else None
            lead.converted_opportunity_id = opportunity.id if opportunity is not None else None
            session.flush()

            self._record_activity(session, actor_user, lead, account, contact, opportunity)
            result = LeadConversionRead(
                lead=_lead_read(lead),
                account=_account_read(account) if account is not None else None,
                contact=_contact_read(contact) if contact is not None else None,
                opportunity=_opportunity_read(opportunity) if opportunity is not None else None,
            )
            duplicate_guard.store_replay(session, endpoint, idempotency_key, request_hash, result)
            session.commit()
        except CRMError:
            session.rollback()
            raise
        except IntegrityError as exc:
            session.rollback()
            replay = duplicate_guard.load_replay(session, endpoint, idempotency_key, request_hash)
            if replay is not None:
                return LeadConversionRead.model_validate(replay), "replayed"
            raise ConflictError("Lead conversion conflict") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("lead_conversion_failed", extra={"lead_id": str(lead_id), "error": str(exc)})
            raise InternalError("Server error") from exc

        _publish(
            "crm.lead.converted",
            actor_user,
            result.lead.tenant_id,
            {
                "lead_id": str(result.lead.id),
                "account_id": str(result.account.id) if result.account else None,
                "contact_id": str(result.contact.id) if result.contact else None,
                "opportunity_id": str(result.opportunity.id) if result.opportunity else None,
            },
        )
        return result, "converted"

    def _resolve_opportunity_account(
        self,
        session: Session,
        lead: CRMLead,
        dto: LeadConvertRequest,
    ) -> CRMAccount | None:
        if not dto.create_opportunity or dto.create_account:
            return None
        account_id = dto.opportunity_data.account_id
        if account_id is None:
            raise ValidationFailedError(
                "create_opportunity requires create_account or opportunity_data.account_id",
                details={"field": "opportunity_data.account_id"},
            )
        return _load_in_tenant(session, CRMAccount, account_id, lead.tenant_id, "Account")

    def _claim(self, session: Session, actor_user: ActorUser, lead: CRMLead) -> None:
        now = utcnow()
        result = session.execute(
            update(CRMLead)
            .where(
                and_(
                    CRMLead.id == lead.id,
                    CRMLead.is_converted.is_(False),
                    CRMLead.is_active.is_(True),
                )
            )
            .values(
                is_converted=True,
                status="Converted",
                converted_at=now,
                last_modified_by=actor_user.user_id,
                updated_at=now,
                row_version=CRMLead.row_version + 1,
            )
        )
        if result.rowcount == 0:
            raise AlreadyConvertedError("Lead has already been converted")

    def _build_account(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        data: AccountConversionData,
    ) -> CRMAccount:
        values = {
            target: merge_field(getattr(data, target), getattr(lead, source))
            for target, source in self.account_fallbacks.items()
        }
        values["email"] = _normalize_email(values["email"])
        values["name"] = values["name"] or merge_field(self._full_name(lead), None)
        if not values["name"]:
            raise ValidationFailedError("Account name is required", details={"field": "account_data.name"})

        sequence, number = _next_account_number(session, lead.tenant_id)
        account = CRMAccount(
            **values,
            tenant_id=lead.tenant_id,
            account_sequence=sequence,
            account_number=number,
            account_type=data.account_type or "Customer",
            description=data.description,
            owner_user_id=lead.owner_user_id,
            created_by=actor_user.user_id,
        )
        session.add(account)
        session.flush()
        return account

    def _build_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        account: CRMAccount | None,
        data: ContactConversionData,
    ) -> CRMContact:
        values = {
            target: merge_field(getattr(data, target), getattr(lead, source))
            for target, source in self.contact_fallbacks.items()
        }
        values["email"] = _normalize_email(values["email"])
        missing = [name for name in ("first_name", "last_name") if not values[name]]
        if missing:
            raise ValidationFailedError(
                "Contact requires first_name and last_name",
                details={"missing": [f"contact_data.{name}" for name in missing]},
            )

        account_id = account.id if account is not None else None
        if account_id is None and data.account_id is not None:
            account_id = _load_in_tenant(session, CRMAccount, data.account_id, lead.tenant_id, "Account").id

        contact = CRMContact(
            **values,
            tenant_id=lead.tenant_id,
            account_id=account_id,
            mobile_phone=data.mobile_phone,
            department=data.department,
            description=data.description,
            is_primary=account is not None,
            owner_user_id=lead.owner_user_id,
            created_by=actor_user.user_id,
        )
        session.add(contact)
        session.flush()
        return contact

    def _build_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        account: CRMAccount | None,
        contact: CRMContact | None,
        data: OpportunityConversionData,
    ) -> CRMOpportunity:
        if account is None:
            raise ValidationFailedError("Opportunity requires an account")

        settings = get_settings()
        contact_id = contact.id if contact is not None else None
        if contact_id is None and data.contact_id is not None:
            contact_id = _load_in_tenant(session, CRMContact, data.contact_id, lead.tenant_id, "Contact").id

        lead_label = merge_field(lead.company, self._full_name(lead)) or lead.email
        opportunity = CRMOpportunity(
            tenant_id=lead.tenant_id,
            account_id=account.id,
            contact_id=contact_id,
            lead_id=lead.id,
            name=data.name or f"{account.name} - {lead_label}",
            stage=data.stage or settings.conversion_default_stage,
            probability=(
                data.probability if data.probability is not None else settings.conversion_default_probability
            ),
            amount=data.amount if data.amount is not None else 0,
            close_date=data.close_date or date.today() + timedelta(days=settings.conversion_default_close_days),
            opportunity_type=data.opportunity_type or "New Business",
            lead_source=merge_field(data.lead_source, lead.lead_source),
            next_step=data.next_step,
            description=data.description,
            owner_user_id=lead.owner_user_id,
            created_by=actor_user.user_id,
        )
        session.add(opportunity)
        session.flush()
        return opportunity

    def _record_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        account: CRMAccount | None,
        contact: CRMContact | None,
        opportunity: CRMOpportunity | None,
    ) -> None:
        source = {"source_lead_id": str(lead.id)}
        if account is not None:
            log_activity(session, actor_user, "account.created", "account", account.id, source, tenant_id=lead.tenant_id)
        if contact is not None:
            log_activity(session, actor_user, "contact.created", "contact", contact.id, source, tenant_id=lead.tenant_id)
        if opportunity is not None:
            log_activity(
                session,
                actor_user,
                "opportunity.created",
                "opportunity",
                opportunity.id,
                source,
                tenant_id=lead.tenant_id,
            )
        log_activity(
            session,
            actor_user,
            "lead.converted",
            "lead",
            lead.id,
            {
                "account_id": str(account.id) if account is not None else None,
                "contact_id": str(contact.id) if contact is not None else None,
                "opportunity_id": str(opportunity.id) if opportunity is not None else None,
            },
            tenant_id=lead.tenant_id,
        )

    @staticmethod
    def _full_name(lead: CRMLead) -> str:
        return " ".join(part.strip() for part in (lead.first_name, lead.last_name) if part and part.strip())


class AccountService:
    entity_type = "account"
    required_fields = frozenset({"owner_user_id", "name", "account_type"})
    related_contacts_limit = 10

    def create_account(self, session: Session, actor_user: ActorUser, dto: AccountCreate) -> AccountRead:
        tenant_id = _resolve_tenant(session, actor_user, dto.tenant_id)
        name = dto.name.strip()
        if not name:
            raise ValidationFailedError("name is required")
        duplicate_guard.ensure_account_name_available(session, tenant_id, name)
        if dto.parent_account_id is not None:
            _load_in_tenant(session, CRMAccount, dto.parent_account_id, tenant_id, "Parent account")

        values = dto.model_dump(exclude={"tenant_id", "owner_user_id", "name", "email"})
        with _unit_of_work(session):
            sequence, number = _next_account_number(session, tenant_id)
            account = CRMAccount(
                **values,
                tenant_id=tenant_id,
                name=name,
                email=_normalize_email(dto.email),
                account_sequence=sequence,
                account_number=number,
                owner_user_id=dto.owner_user_id or actor_user.user_id,
                created_by=actor_user.user_id,
            )
            session.add(account)
            session.flush()
            log_activity(
                session,
                actor_user,
                "account.created",
                self.entity_type,
                account.id,
                {"account_number": number},
                tenant_id=tenant_id,
            )

        _publish(
            "crm.account.created",
            actor_user,
            tenant_id,
            {"account_id": str(account.id), "account_number": account.account_number, "name": account.name},
        )
        return _account_read(account)

    def list_accounts(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[AccountRead]:
        stmt: Select[tuple[CRMAccount]] = select(CRMAccount).where(CRMAccount.is_active.is_(True))
        stmt = apply_tenant_filter(stmt, CRMAccount, actor_user, filters.get("tenant_id"))

        for name in ("account_type", "industry", "owner_user_id", "parent_account_id"):
            if filters.get(name):
                stmt = stmt.where(getattr(CRMAccount, name) == filters[name])
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(
                    CRMAccount.name.ilike(pattern),
                    CRMAccount.account_number.ilike(pattern),
                    CRMAccount.email.ilike(pattern),
                )
            )

        stmt = stmt.order_by(CRMAccount.created_at.desc()).offset(_offset(cursor)).limit(limit)
        return [_account_read(item) for item in session.scalars(stmt).all()]

    def get_account(self, session: Session, actor_user: ActorUser, account_id: uuid.UUID) -> AccountDetailRead:
        account = _get_visible(session, actor_user, CRMAccount, account_id, "Account")
        contacts = session.scalars(
            select(CRMContact)
            .where(and_(CRMContact.account_id == account.id, CRMContact.is_active.is_(True)))
            .order_by(CRMContact.created_at.desc())
            .limit(self.related_contacts_limit)
        ).all()
        detail = AccountDetailRead.model_validate(account)
        return detail.model_copy(update={"related_contacts": [_contact_read(contact) for contact in contacts]})

    def update_account(
        self,
        session: Session,
        actor_user: ActorUser,
        account_id: uuid.UUID,
        dto: AccountUpdate,
    ) -> AccountRead:
        account = _get_visible(session, actor_user, CRMAccount, account_id, "Account")
        changes = _changes_from(dto, required=self.required_fields)

        if "name" in changes:
            name = changes["name"].strip()
            if not name:
                raise ValidationFailedError("name cannot be empty")
            changes["name"] = name
            if name.lower() != account.name.strip().lower():
                duplicate_guard.ensure_account_name_available(
                    session, account.tenant_id, name, exclude_account_id=account.id
                )
        if "email" in changes:
            changes["email"] = _normalize_email(changes["email"])
        if changes.get("parent_account_id") is not None:
            parent_id = changes["parent_account_id"]
            _load_in_tenant(session, CRMAccount, parent_id, account.tenant_id, "Parent account")
            _ensure_acyclic(
                session,
                CRMAccount,
                CRMAccount.parent_account_id,
                account.id,
                parent_id,
                "Parent account",
            )

        if not changes:
            return _account_read(account)

        changes["last_modified_by"] = actor_user.user_id
        with _unit_of_work(session):
            _conditional_update(session, CRMAccount, account.id, dto.row_version, changes)
            log_activity(
                session,
                actor_user,
                "account.updated",
                self.entity_type,
                account.id,
                {"fields": sorted(_changes_from(dto))},
                tenant_id=account.tenant_id,
            )

        session.refresh(account)
        _publish(
            "crm.account.updated",
            actor_user,
            account.tenant_id,
            {"account_id": str(account.id), "row_version": account.row_version},
        )
        return _account_read(account)

    def soft_delete_account(
        self,
        session: Session,
        actor_user: ActorUser,
        account_id: uuid.UUID,
        *,
        force: bool = False,
    ) -> None:
        account = _get_visible(session, actor_user, CRMAccount, account_id, "Account")
        dependencies = self._count_dependencies(session, account.id)
        if not force and any(dependencies.values()):
            raise ValidationFailedError("Account has dependencies", details={"dependencies": dependencies})

        with _unit_of_work(session):
            account.is_active = False
            account.last_modified_by = actor_user.user_id
            account.row_version = account.row_version + 1
            log_activity(
                session,
                actor_user,
                "account.deleted",
                self.entity_type,
                account.id,
                {"force": force, "dependencies": dependencies},
                tenant_id=account.tenant_id,
            )

        _publish("crm.account.deleted", actor_user, account.tenant_id, {"account_id": str(account.id)})

    def _count_dependencies(self, session: Session, account_id: uuid.UUID) -> dict[str, int]:
        counts = {}
        for key, model in (("contacts", CRMContact), ("opportunities", CRMOpportunity)):
            counts[key] = int(
                session.scalar(
                    select(func.count())
                    .select_from(model)
                    .where(and_(model.account_id == account_id, model.is_active.is_(True)))
                )
                or 0
            )
        return counts


class ContactService:
    entity_type = "contact"
    required_fields = frozenset({"owner_user_id", "first_name", "last_name", "is_primary"})

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        tenant_id = _resolve_tenant(session, actor_user, dto.tenant_id)
        first_name = dto.first_name.strip()
        last_name = dto.last_name.strip()
        if not first_name or not last_name:
            raise ValidationFailedError("first_name and last_name are required")
        if dto.account_id is not None:
            _load_in_tenant(session, CRMAccount, dto.account_id, tenant_id, "Account")
        if dto.reports_to_id is not None:
            _load_in_tenant(session, CRMContact, dto.reports_to_id, tenant_id, "Reports-to contact")

        email = _normalize_email(dto.email)
        duplicate_guard.ensure_contact_email_available(session, dto.account_id, email)

        values = dto.model_dump(exclude={"tenant_id", "owner_user_id", "first_name", "last_name", "email"})
        with _unit_of_work(session):
            contact = CRMContact(
                **values,
                tenant_id=tenant_id,
                first_name=first_name,
                last_name=last_name,
                email=email,
                owner_user_id=dto.owner_user_id or actor_user.user_id,
                created_by=actor_user.user_id,
            )
            session.add(contact)
            session.flush()
            log_activity(session, actor_user, "contact.created", self.entity_type, contact.id, tenant_id=tenant_id)

        _publish(
            "crm.contact.created",
            actor_user,
            tenant_id,
            {"contact_id": str(contact.id), "account_id": str(contact.account_id) if contact.account_id else None},
        )
        return _contact_read(contact)

    def list_contacts(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[ContactRead]:
        stmt: Select[tuple[CRMContact]] = select(CRMContact).where(CRMContact.is_active.is_(True))
        stmt = apply_tenant_filter(stmt, CRMContact, actor_user, filters.get("tenant_id"))

        if filters.get("account_id"):
            stmt = stmt.where(CRMContact.account_id == filters["account_id"])
        if filters.get("owner_user_id"):
            stmt = stmt.where(CRMContact.owner_user_id == filters["owner_user_id"])
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(
                    CRMContact.first_name.ilike(pattern),
                    CRMContact.last_name.ilike(pattern),
                    CRMContact.email.ilike(pattern),
                )
            )

        stmt = stmt.order_by(CRMContact.created_at.desc()).offset(_offset(cursor)).limit(limit)
        return [_contact_read(item) for item in session.scalars(stmt).all()]

    def get_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        return _contact_read(_get_visible(session, actor_user, CRMContact, contact_id, "Contact"))

    def update_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactRead:
        contact = _get_visible(session, actor_user, CRMContact, contact_id, "Contact")
        changes = _changes_from(dto, required=self.required_fields)

        for name in ("first_name", "last_name"):
            if name in changes:
                value = changes[name].strip()
                if not value:
                    raise ValidationFailedError(f"{name} cannot be empty")
                changes[name] = value
        if changes.get("account_id") is not None:
            _load_in_tenant(session, CRMAccount, changes["account_id"], contact.tenant_id, "Account")
        if changes.get("reports_to_id") is not None:
            _load_in_tenant(session, CRMContact, changes["reports_to_id"], contact.tenant_id, "Reports-to contact")
            _ensure_acyclic(
                session,
                CRMContact,
                CRMContact.reports_to_id,
                contact.id,
                changes["reports_to_id"],
                "Reports-to contact",
            )
        if "email" in changes:
            changes["email"] = _normalize_email(changes["email"])
        if "email" in changes or "account_id" in changes:
            duplicate_guard.ensure_contact_email_available(
                session,
                changes.get("account_id", contact.account_id),
                changes.get("email", contact.email),
                exclude_contact_id=contact.id,
            )

        if not changes:
            return _contact_read(contact)

        changes["last_modified_by"] = actor_user.user_id
        with _unit_of_work(session):
            _conditional_update(session, CRMContact, contact.id, dto.row_version, changes)
            log_activity(
                session,
                actor_user,
                "contact.updated",
                self.entity_type,
                contact.id,
                {"fields": sorted(_changes_from(dto))},
                tenant_id=contact.tenant_id,
            )

        session.refresh(contact)
        _publish(
            "crm.contact.updated",
            actor_user,
            contact.tenant_id,
            {"contact_id": str(contact.id), "row_version": contact.row_version},
        )
        return _contact_read(contact)

    def soft_delete_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> None:
        contact = _get_visible(session, actor_user, CRMContact, contact_id, "Contact")
        with _unit_of_work(session):
            contact.is_active = False
            contact.last_modified_by = actor_user.user_id
            contact.row_version = contact.row_version + 1
            log_activity(
                session, actor_user, "contact.deleted", self.entity_type, contact.id, tenant_id=contact.tenant_id
            )

        _publish("crm.contact.deleted", actor_user, contact.tenant_id, {"contact_id": str(contact.id)})


class OpportunityService:
    entity_type = "opportunity"
    required_fields = frozenset({"owner_user_id", "name", "stage", "probability", "amount", "close_date"})

    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        tenant_id = _resolve_tenant(session, actor_user, dto.tenant_id)
        name = dto.name.strip()
        if not name:
            raise ValidationFailedError("name is required")
        _load_in_tenant(session, CRMAccount, dto.account_id, tenant_id, "Account")
        if dto.contact_id is not None:
            _load_in_tenant(session, CRMContact, dto.contact_id, tenant_id, "Contact")
        if dto.lead_id is not None:
            _load_in_tenant(session, CRMLead, dto.lead_id, tenant_id, "Lead")

        values = dto.model_dump(exclude={"tenant_id", "owner_user_id", "name"})
        with _unit_of_work(session):
            opportunity = CRMOpportunity(
                **values,
                tenant_id=tenant_id,
                name=name,
                owner_user_id=dto.owner_user_id or actor_user.user_id,
                created_by=actor_user.user_id,
            )
            session.add(opportunity)
            session.flush()
            log_activity(
                session,
                actor_user,
                "opportunity.created",
                self.entity_type,
                opportunity.id,
                {"stage": opportunity.stage},
                tenant_id=tenant_id,
            )

        _publish(
            "crm.opportunity.created",
            actor_user,
            tenant_id,
            {"opportunity_id": str(opportunity.id), "account_id": str(opportunity.account_id), "stage": opportunity.stage},
        )
        return _opportunity_read(opportunity)

    def list_opportunities(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[OpportunityRead]:
        stmt: Select[tuple[CRMOpportunity]] = select(CRMOpportunity).where(CRMOpportunity.is_active.is_(True))
        stmt = apply_tenant_filter(stmt, CRMOpportunity, actor_user, filters.get("tenant_id"))

        for name in ("stage", "account_id", "owner_user_id"):
            if filters.get(name):
                stmt = stmt.where(getattr(CRMOpportunity, name) == filters[name])
        if filters.get("close_from"):
            stmt = stmt.where(CRMOpportunity.close_date >= filters["close_from"])
        if filters.get("close_to"):
            stmt = stmt.where(CRMOpportunity.close_date <= filters["close_to"])
        if filters.get("q"):
            stmt = stmt.where(CRMOpportunity.name.ilike(f"%{filters['q']}%"))

        stmt = stmt.order_by(CRMOpportunity.created_at.desc()).offset(_offset(cursor)).limit(limit)
        return [_opportunity_read(item) for item in session.scalars(stmt).all()]

    def get_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> OpportunityRead:
        return _opportunity_read(_get_visible(session, actor_user, CRMOpportunity, opportunity_id, "Opportunity"))

    def update_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        opportunity_id: uuid.UUID,
        dto: OpportunityUpdate,
    ) -> OpportunityRead:
        opportunity = _get_visible(session, actor_user, CRMOpportunity, opportunity_id, "Opportunity")
        changes = _changes_from(dto, required=self.required_fields)

        if "name" in changes:
            name = changes["name"].strip()
            if not name:
                raise ValidationFailedError("name cannot be empty")
            changes["name"] = name
        if changes.get("contact_id") is not None:
            _load_in_tenant(session, CRMContact, changes["contact_id"], opportunity.tenant_id, "Contact")

        if not changes:
            return _opportunity_read(opportunity)

        before_stage = opportunity.stage
        changes["last_modified_by"] = actor_user.user_id
        with _unit_of_work(session):
            _conditional_update(session, CRMOpportunity, opportunity.id, dto.row_version, changes)
            log_activity(
                session,
                actor_user,
                "opportunity.updated",
                self.entity_type,
                opportunity.id,
                {"fields": sorted(_changes_from(dto)), "previous_stage": before_stage},
                tenant_id=opportunity.tenant_id,
            )

        session.refresh(opportunity)
        _publish(
            "crm.opportunity.updated",
            actor_user,
            opportunity.tenant_id,
            {"opportunity_id": str(opportunity.id), "stage": opportunity.stage, "row_version": opportunity.row_version},
        )
        return _opportunity_read(opportunity)

    def soft_delete_opportunity(self, session: Session, actor_user: ActorUser, opportunity_id: uuid.UUID) -> None:
        opportunity = _get_visible(session, actor_user, CRMOpportunity, opportunity_id, "Opportunity")
        with _unit_of_work(session):
            opportunity.is_active = False
            opportunity.last_modified_by = actor_user.user_id
            opportunity.row_version = opportunity.row_version + 1
            log_activity(
                session,
                actor_user,
                "opportunity.deleted",
                self.entity_type,
                opportunity.id,
                tenant_id=opportunity.tenant_id,
            )

        _publish(
            "crm.opportunity.deleted",
            actor_user,
            opportunity.tenant_id,
            {"opportunity_id": str(opportunity.id)},
        )


RELATED_MODELS: dict[str, Any] = {
    "Lead": CRMLead,
    "Account": CRMAccount,
    "Contact": CRMContact,
    "Opportunity": CRMOpportunity,
}


class NoteService:
    entity_type = "note"

    def create_note(self, session: Session, actor_user: ActorUser, dto: NoteCreate) -> NoteRead:
        related_type = dto.related_to.type
        target = _get_visible(session, actor_user, RELATED_MODELS[related_type], dto.related_to.id, related_type)

        with _unit_of_work(session):
            note = CRMNote(
                tenant_id=target.tenant_id,
                related_type=related_type,
                related_id=target.id,
                title=dto.title,
                content=dto.content,
                is_private=dto.is_private,
                created_by=actor_user.user_id,
            )
            session.add(note)
            session.flush()
            log_activity(
                session,
                actor_user,
                "note.created",
                self.entity_type,
                note.id,
                {"related_type": related_type, "related_id": str(target.id)},
                tenant_id=target.tenant_id,
            )

        _publish(
            "crm.note.created",
            actor_user,
            note.tenant_id,
            {"note_id": str(note.id), "related_type": related_type, "related_id": str(note.related_id)},
        )
        return self._to_read(note)

    def list_notes(
        self,
        session: Session,
        actor_user: ActorUser,
        related_type: str,
        related_id: uuid.UUID,
        cursor: str | None,
        limit: int,
    ) -> list[NoteRead]:
        related_type = related_type.strip().capitalize()
        model = RELATED_MODELS.get(related_type)
        if model is None:
            raise ValidationFailedError(
                "Unsupported entity type",
                details={"allowed": sorted(RELATED_MODELS)},
            )
        target = _get_visible(session, actor_user, model, related_id, related_type)

        stmt = (
            select(CRMNote)
            .where(
                and_(
                    CRMNote.related_type == related_type,
                    CRMNote.related_id == target.id,
                    CRMNote.tenant_id == target.tenant_id,
                    CRMNote.is_active.is_(True),
                    or_(CRMNote.is_private.is_(False), CRMNote.created_by == actor_user.user_id),
                )
            )
            .order_by(CRMNote.created_at.desc())
            .offset(_offset(cursor))
            .limit(limit)
        )
        return [self._to_read(item) for item in session.scalars(stmt).all()]

    def soft_delete_note(self, session: Session, actor_user: ActorUser, note_id: uuid.UUID) -> None:
        note = _get_visible(session, actor_user, CRMNote, note_id, "Note")
        if note.created_by != actor_user.user_id and not is_platform_operator(actor_user):
            if note.is_private:
                raise NotFoundError("Note not found")
            raise AccessDeniedError("Only the author can delete this note")

        with _unit_of_work(session):
            note.is_active = False
            log_activity(session, actor_user, "note.deleted", self.entity_type, note.id, tenant_id=note.tenant_id)

        _publish("crm.note.deleted", actor_user, note.tenant_id, {"note_id": str(note.id)})

    def _to_read(self, note: CRMNote) -> NoteRead:
        return NoteRead.model_validate(
            {
                "id": note.id,
                "tenant_id": note.tenant_id,
                "related_to": {"type": note.related_type, "id": note.related_id},
                "title": note.title,
                "content": note.content,
                "is_private": note.is_private,
                "created_by": note.created_by,
                "created_at": note.created_at,
                "updated_at": note.updated_at,
            }
        )


class ActivityService:
    def list_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[ActivityLogRead]:
        stmt: Select[tuple[ActivityLog]] = select(ActivityLog)
        stmt = apply_tenant_filter(stmt, ActivityLog, actor_user, filters.get("tenant_id"))
        for name in ("entity_type", "entity_id", "event_name", "actor_user_id"):
            if filters.get(name):
                stmt = stmt.where(getattr(ActivityLog, name) == str(filters[name]))

        stmt = stmt.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).offset(_offset(cursor)).limit(limit)
        return [self._to_read(item) for item in session.scalars(stmt).all()]

    def _to_read(self, entry: ActivityLog) -> ActivityLogRead:
        return ActivityLogRead.model_validate(
            {
                "id": entry.id,
                "tenant_id": entry.tenant_id,
                "actor_user_id": entry.actor_user_id,
                "event_name": entry.event_name,
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "metadata": entry.event_metadata or {},
                "correlation_id": entry.correlation_id,
                "created_at": entry.created_at,
            }
        )
