import logging
import uuid
from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings

logger = logging.getLogger(__name__)


@dataclass
class AuthUser:
    sub: str
    user_type: str = "GUEST"
    tenant: str | None = None
    permissions: list[str] = field(default_factory=list)


def _decode_claims(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


def _tenant_claim(payload: dict) -> str | None:
    tenant = payload.get("tenant")
    if not tenant:
        return None
    return str(uuid.UUID(str(tenant).strip()))


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous")

    try:
        payload = _decode_claims(token)
    except JWTError:
        return AuthUser(sub="anonymous")

    subject = str(payload.get("sub", "anonymous"))
    try:
        tenant = _tenant_claim(payload)
    except ValueError:
        logger.warning("invalid_tenant_claim", extra={"subject": subject})
        return AuthUser(sub="anonymous")

    permissions = payload.get("permissions", payload.get("roles", []))
    if not isinstance(permissions, list):
        permissions = []
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(
        sub=subject,
        user_type=str(payload.get("user_type", "TENANT_USER")),
        tenant=tenant,
        permissions=[str(item) for item in permissions],
    )
