from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class SharedEntityGrantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: str
    shared_with_user_id: str
    granted_by: str
    created_at: datetime


class ShareResult(BaseModel):
    changed: bool
    grant: SharedEntityGrantRead | None = None
