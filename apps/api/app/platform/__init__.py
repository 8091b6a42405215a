from app.platform.security.context import Principal, Role
from app.platform.security.errors import AppError, NotFoundError, UnauthorizedError
from app.platform.security.repository import BaseRepository
from app.platform.security.rls import apply_owner_filter, validate_owner_write
from app.platform.security.policies import (
    GrantLookup,
    can_access_record,
    can_mutate_record,
    compute_list_filter,
    compute_record_filter,
)

__all__ = [
    "Principal",
    "Role",
    "AppError",
    "NotFoundError",
    "UnauthorizedError",
    "BaseRepository",
    "apply_owner_filter",
    "validate_owner_write",
    "GrantLookup",
    "can_access_record",
    "can_mutate_record",
    "compute_list_filter",
    "compute_record_filter",
]
