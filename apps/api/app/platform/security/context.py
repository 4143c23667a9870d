from __future__ import annotations

import uuid
from dataclasses import dataclass, field


PLATFORM_OPERATOR_TYPES = frozenset({"SAAS_OWNER", "SAAS_ADMIN"})


@dataclass
class ActorUser:
    """The caller of a CRM operation, resolved from the bearer token."""

    user_id: str
    tenant_id: uuid.UUID | None
    permissions: set[str] = field(default_factory=set)
    user_type: str = "TENANT_USER"
    correlation_id: str | None = None

    @property
    def is_platform_operator(self) -> bool:
        return self.user_type in PLATFORM_OPERATOR_TYPES
