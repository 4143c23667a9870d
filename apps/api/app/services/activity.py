from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.metrics import observe_activity_log_failure
from app.models.activity import ActivityLog
from app.platform.security.context import ActorUser


logger = logging.getLogger("app.crm.activity")


def _build_entry(
    actor: ActorUser,
    event_name: str,
    entity_type: str,
    entity_id: Any,
    metadata: dict[str, Any] | None,
    tenant_id: Any,
) -> ActivityLog:
    return ActivityLog(
        tenant_id=tenant_id if tenant_id is not None else actor.tenant_id,
        actor_user_id=actor.user_id,
        event_name=event_name,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        event_metadata=metadata or {},
        correlation_id=actor.correlation_id or get_correlation_id(),
    )


def log_activity(
    session: Session,
    actor: ActorUser,
    event_name: str,
    entity_type: str,
    entity_id: Any,
    metadata: dict[str, Any] | None = None,
    *,
    tenant_id: Any = None,
) -> ActivityLog | None:
    """Record an activity entry inside a savepoint of the caller's transaction.

    A failed write is logged and counted, never raised: the entry commits or
    rolls back together with the caller's unit of work, but cannot abort it.
    """

    try:
        entry = _build_entry(actor, event_name, entity_type, entity_id, metadata, tenant_id)
        with session.begin_nested():
            session.add(entry)
        return entry
    except SQLAlchemyError as exc:
        observe_activity_log_failure(event_name)
        logger.warning(
            "activity_log_failed",
            extra={
                "event_name": event_name,
                "entity_type": entity_type,
                "entity_id": str(entity_id) if entity_id is not None else None,
                "error": str(exc),
            },
        )
        return None
