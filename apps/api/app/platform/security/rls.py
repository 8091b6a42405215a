from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy.sql import Select

from app.metrics import observe_owner_scope_denied
from app.platform.security.context import Principal
from app.platform.security.errors import NotFoundError
from app.platform.security.policies import can_mutate_record


logger = logging.getLogger("app.security.rls")


def apply_owner_filter(query: Select[Any], model: type[Any], owner_filter: Mapping[str, Any]) -> Select[Any]:
    """AND the ownership clause into a select over ``model``."""

    for column_name, value in owner_filter.items():
        column = getattr(model, column_name, None)
        if column is None:
            raise ValueError(f"{model.__name__} has no column '{column_name}' for owner filtering")
        query = query.where(column == value)
    return query


def validate_owner_write(
    resource: str,
    record: Any | None,
    principal: Principal,
    *,
    not_found_message: str,
    action: str = "write",
) -> Any:
    """Return ``record`` when the principal may mutate it.

    A missing record and a record owned by someone else raise the same
    ``NotFoundError``.
    """

    if record is None:
        raise NotFoundError(not_found_message, resource=resource)

    if not can_mutate_record(principal, getattr(record, "owner_id", None)):
        observe_owner_scope_denied(resource=resource, action=action)
        logger.debug(
            "owner_scope.denied",
            extra={
                "entity_type": resource,
                "entity_id": str(getattr(record, "id", "")),
                "action": action,
                "user_id": principal.user_id,
            },
        )
        raise NotFoundError(not_found_message, resource=resource)

    return record
