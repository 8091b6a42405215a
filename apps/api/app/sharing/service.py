from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import audit, events
from app.crm import messages
from app.crm.models import CRMContact, CRMDeal, CRMLead, CRMOrganization, CRMPartner
from app.platform.security.context import Principal
from app.platform.security.errors import ValidationError
from app.platform.security.policies import require_principal
from app.platform.security.rls import validate_owner_write
from app.sharing.models import SharedEntityGrant
from app.sharing.schemas import SharedEntityGrantRead, ShareResult


logger = logging.getLogger("app.sharing")

SHAREABLE_ENTITIES: dict[str, tuple[type[Any], str]] = {
    "deal": (CRMDeal, messages.DEAL_NOT_FOUND),
    "contact": (CRMContact, messages.CONTACT_NOT_FOUND),
    "lead": (CRMLead, messages.LEAD_NOT_FOUND),
    "organization": (CRMOrganization, messages.ORGANIZATION_NOT_FOUND),
    "partner": (CRMPartner, messages.PARTNER_NOT_FOUND),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SharedEntityGrantStore:
    """Grant table access bound to one session.

    Every write is idempotent per (entity_type, entity_id, shared_with_user_id).
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def grant(
        self,
        entity_type: str,
        entity_id: str,
        shared_with_user_id: str,
        granted_by: str,
    ) -> tuple[SharedEntityGrant, bool]:
        existing = self._find(entity_type, entity_id, shared_with_user_id)
        if existing is not None:
            return existing, False

        row = SharedEntityGrant(
            entity_type=entity_type,
            entity_id=entity_id,
            shared_with_user_id=shared_with_user_id,
            granted_by=granted_by,
        )
        try:
            with self.session.begin_nested():
                self.session.add(row)
                self.session.flush()
        except IntegrityError:
            # concurrent grant won the unique constraint
            existing = self._find(entity_type, entity_id, shared_with_user_id)
            if existing is None:
                raise
            return existing, False
        return row, True

    def revoke(self, entity_type: str, entity_id: str, shared_with_user_id: str) -> bool:
        existing = self._find(entity_type, entity_id, shared_with_user_id)
        if existing is None:
            return False
        self.session.delete(existing)
        self.session.flush()
        return True

    def list_grants_for(self, user_id: str, entity_type: str | None = None) -> list[SharedEntityGrant]:
        stmt = select(SharedEntityGrant).where(SharedEntityGrant.shared_with_user_id == user_id)
        if entity_type is not None:
            stmt = stmt.where(SharedEntityGrant.entity_type == entity_type)
        stmt = stmt.order_by(SharedEntityGrant.created_at.desc())
        return list(self.session.scalars(stmt).all())

    def list_grants_for_record(self, entity_type: str, entity_id: str) -> list[SharedEntityGrant]:
        stmt = (
            select(SharedEntityGrant)
            .where(and_(SharedEntityGrant.entity_type == entity_type, SharedEntityGrant.entity_id == entity_id))
            .order_by(SharedEntityGrant.created_at.asc())
        )
        return list(self.session.scalars(stmt).all())

    def is_granted(self, entity_type: str, entity_id: str, user_id: str) -> bool:
        return self._find(entity_type, entity_id, user_id) is not None

    def _find(self, entity_type: str, entity_id: str, user_id: str) -> SharedEntityGrant | None:
        return self.session.scalar(
            select(SharedEntityGrant).where(
                and_(
                    SharedEntityGrant.entity_type == entity_type,
                    SharedEntityGrant.entity_id == entity_id,
                    SharedEntityGrant.shared_with_user_id == user_id,
                )
            )
        )


class SharingService:
    def share(
        self,
        session: Session,
        principal: Principal | None,
        entity_type: str,
        entity_id: uuid.UUID,
        user_id: str,
    ) -> ShareResult:
        actor = require_principal(principal)
        record = self._load_managed_record(session, actor, entity_type, entity_id, action="share")

        if record.owner_id == user_id:
            return ShareResult(changed=False, grant=None)

        store = SharedEntityGrantStore(session)
        grant, created = store.grant(entity_type, str(record.id), user_id, actor.user_id)
        if created:
            self._record_change(actor, entity_type, record, "share", user_id)
        session.commit()
        session.refresh(grant)
        return ShareResult(changed=created, grant=SharedEntityGrantRead.model_validate(grant))

    def unshare(
        self,
        session: Session,
        principal: Principal | None,
        entity_type: str,
        entity_id: uuid.UUID,
        user_id: str,
    ) -> ShareResult:
        actor = require_principal(principal)
        record = self._load_managed_record(session, actor, entity_type, entity_id, action="unshare")

        removed = SharedEntityGrantStore(session).revoke(entity_type, str(record.id), user_id)
        if removed:
            self._record_change(actor, entity_type, record, "unshare", user_id)
        session.commit()
        return ShareResult(changed=removed, grant=None)

    def list_record_grants(
        self,
        session: Session,
        principal: Principal | None,
        entity_type: str,
        entity_id: uuid.UUID,
    ) -> list[SharedEntityGrantRead]:
        actor = require_principal(principal)
        record = self._load_managed_record(session, actor, entity_type, entity_id, action="list_shares")
        rows = SharedEntityGrantStore(session).list_grants_for_record(entity_type, str(record.id))
        return [SharedEntityGrantRead.model_validate(row) for row in rows]

    def list_my_grants(
        self,
        session: Session,
        principal: Principal | None,
        entity_type: str | None = None,
    ) -> list[SharedEntityGrantRead]:
        actor = require_principal(principal)
        if entity_type is not None:
            self._resolve_entity(entity_type)
        rows = SharedEntityGrantStore(session).list_grants_for(actor.user_id, entity_type)
        return [SharedEntityGrantRead.model_validate(row) for row in rows]

    def _resolve_entity(self, entity_type: str) -> tuple[type[Any], str]:
        entry = SHAREABLE_ENTITIES.get(entity_type)
        if entry is None:
            raise ValidationError.for_field("entity_type", messages.INVALID_ENTITY_TYPE)
        return entry

    def _load_managed_record(
        self,
        session: Session,
        actor: Principal,
        entity_type: str,
        entity_id: uuid.UUID,
        *,
        action: str,
    ) -> Any:
        model, not_found_message = self._resolve_entity(entity_type)
        record = session.get(model, entity_id)
        return validate_owner_write(
            entity_type,
            record,
            actor,
            not_found_message=not_found_message,
            action=action,
        )

    def _record_change(self, actor: Principal, entity_type: str, record: Any, action: str, user_id: str) -> None:
        payload = {"shared_with_user_id": user_id}
        audit.record(
            actor_user_id=actor.user_id,
            entity_type=f"crm.{entity_type}",
            entity_id=str(record.id),
            action=action,
            before=None if action == "share" else payload,
            after=payload if action == "share" else None,
            correlation_id=actor.correlation_id,
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": f"crm.{entity_type}.{'shared' if action == 'share' else 'unshared'}",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor.user_id,
                "payload": {
                    "entity_id": str(record.id),
                    "shared_with_user_id": user_id,
                },
            }
        )
        logger.info(
            "crm.action",
            extra={
                "action": action,
                "entity_type": entity_type,
                "entity_id": str(record.id),
                "user_id": actor.user_id,
                "role": str(actor.role),
            },
        )


sharing_service = SharingService()
