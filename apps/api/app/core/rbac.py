from app.core.errors import AccessDeniedError
from app.platform.security.context import ActorUser


def permission_name(resource: str, action: str) -> str:
    return f"crm.{resource}.{action}"


def require_permission(actor: ActorUser, resource: str, action: str) -> None:
    if actor.is_platform_operator:
        return
    permission = permission_name(resource, action)
    if permission not in actor.permissions:
        # TODO: Resolve permissions from stored roles once the role service exposes them.
        raise AccessDeniedError(f"Missing permission: {permission}")
