from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.sql import ColumnElement, Select

from app.platform.security.rls import apply_owner_filter


ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    """Persistence contract shared by every entity.

    Filters are mappings of column name to value, AND-combined with any extra
    SQLAlchemy criteria supplied by the caller.
    """

    resource: ClassVar[str] = ""
    model: type[ModelT]
    default_order_by: ClassVar[tuple[str, ...]] = ("-created_at",)
    sortable_fields: ClassVar[frozenset[str]] = frozenset()

    def scoped_query(
        self,
        owner_filter: Mapping[str, Any] | None = None,
        criteria: Sequence[ColumnElement[bool]] = (),
    ) -> Select[tuple[ModelT]]:
        query: Select[tuple[ModelT]] = select(self.model)
        if owner_filter:
            query = apply_owner_filter(query, self.model, owner_filter)
        for clause in criteria:
            query = query.where(clause)
        return query

    def find_many(
        self,
        session: Session,
        owner_filter: Mapping[str, Any] | None = None,
        criteria: Sequence[ColumnElement[bool]] = (),
        *,
        order_by: Sequence[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ModelT]:
        query = self.scoped_query(owner_filter, criteria)
        query = query.order_by(*self._order_clauses(order_by or self.default_order_by))
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return list(session.scalars(query).all())

    def find_one(
        self,
        session: Session,
        owner_filter: Mapping[str, Any] | None = None,
        criteria: Sequence[ColumnElement[bool]] = (),
    ) -> ModelT | None:
        return session.scalars(self.scoped_query(owner_filter, criteria).limit(1)).first()

    def find_by_id(self, session: Session, record_id: Any) -> ModelT | None:
        return session.get(self.model, record_id)

    def create(self, session: Session, data: Mapping[str, Any]) -> ModelT:
        record = self.model(**dict(data))
        session.add(record)
        session.flush()
        return record

    def update(self, session: Session, record: ModelT, data: Mapping[str, Any]) -> ModelT:
        for field_name, value in data.items():
            setattr(record, field_name, value)
        session.add(record)
        session.flush()
        return record

    def delete(self, session: Session, record: ModelT) -> None:
        session.delete(record)
        session.flush()

    def _order_clauses(self, order_by: Sequence[str]) -> list[Any]:
        clauses: list[Any] = []
        for item in order_by:
            descending = item.startswith("-")
            column = getattr(self.model, item.lstrip("-"))
            clauses.append(column.desc() if descending else column.asc())
        return clauses
