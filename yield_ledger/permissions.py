from .exceptions import PermissionDeniedError
from .models import Actor


def require_admin(actor: Actor, action: str) -> None:
    if not actor.is_admin:
        raise PermissionDeniedError(f"Only admins may {action}")


def require_owner_or_admin(actor: Actor, account_id: str, action: str) -> None:
    """Allow the account owner acting on their own account, or any admin."""
    if actor.is_admin or actor.id == account_id:
        return
    raise PermissionDeniedError(f"Actor {actor.id} may not {action} for account {account_id}")
