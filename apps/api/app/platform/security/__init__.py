from app.platform.security.context import Principal, Role
from app.platform.security.errors import (
    AppError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from app.platform.security.policies import (
    OWNER_ALL,
    OWNER_MINE,
    GrantLookup,
    OwnerFilter,
    can_access_record,
    can_mutate_record,
    compute_list_filter,
    compute_record_filter,
    is_admin,
    require_principal,
)
from app.platform.security.repository import BaseRepository
from app.platform.security.rls import apply_owner_filter, validate_owner_write

__all__ = [
    "Principal",
    "Role",
    "AppError",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "UnauthorizedError",
    "ValidationError",
    "OWNER_ALL",
    "OWNER_MINE",
    "GrantLookup",
    "OwnerFilter",
    "can_access_record",
    "can_mutate_record",
    "compute_list_filter",
    "compute_record_filter",
    "is_admin",
    "require_principal",
    "BaseRepository",
    "apply_owner_filter",
    "validate_owner_write",
]
