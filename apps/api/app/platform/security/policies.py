from __future__ import annotations

from typing import Any, Protocol

from app.platform.security.context import Principal, Role
from app.platform.security.errors import UnauthorizedError


OWNER_ALL = "all"
OWNER_MINE = "mine"

OwnerFilter = dict[str, str]


class OwnedRecord(Protocol):
    id: Any
    owner_id: str


class GrantLookup(Protocol):
    def is_granted(self, entity_type: str, entity_id: str, user_id: str) -> bool:
        ...


def require_principal(principal: Principal | None) -> Principal:
    """Return the principal or raise before any data access happens."""

    if principal is None or not principal.user_id:
        raise UnauthorizedError()
    return principal


def is_admin(principal: Principal) -> bool:
    return principal.role == Role.ADMIN


def compute_list_filter(principal: Principal, requested_owner: str | None = None) -> OwnerFilter:
    """Compute the ownership clause for list queries.

    Admins see everything unless they narrow the result to themselves ("mine")
    or to a specific owner. Every other role is pinned to its own rows and the
    requested owner is ignored.
    """

    if not is_admin(principal):
        return {"owner_id": principal.user_id}

    owner = (requested_owner or "").strip()
    if not owner or owner == OWNER_ALL:
        return {}
    if owner == OWNER_MINE:
        return {"owner_id": principal.user_id}
    return {"owner_id": owner}


def compute_record_filter(principal: Principal) -> OwnerFilter:
    """Ownership clause for single-record reads."""

    if is_admin(principal):
        return {}
    return {"owner_id": principal.user_id}


def can_mutate_record(principal: Principal, owner_id: str | None) -> bool:
    """Owner-or-admin check used by every mutation path. Sharing grants are not consulted."""

    if is_admin(principal):
        return True
    return owner_id is not None and owner_id == principal.user_id


def can_access_record(
    principal: Principal,
    entity_type: str,
    record: OwnedRecord,
    grants: GrantLookup | None = None,
) -> bool:
    """Owner, admin or explicit sharing grant."""

    if can_mutate_record(principal, record.owner_id):
        return True
    if grants is None:
        return False
    return grants.is_granted(entity_type, str(record.id), principal.user_id)
