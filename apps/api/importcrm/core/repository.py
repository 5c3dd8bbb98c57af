from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar, Generic, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.orm import Session

from importcrm.core.config import get_settings
from importcrm.core.database import Base

ModelT = TypeVar("ModelT", bound=Base)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise timestamps read back from backends that drop tzinfo (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BaseRepository(Generic[ModelT]):
    """Tenant-scoped CRUD over one mapped model.

    Every query is filtered by ``tenant_id`` and every created row is stamped with it.
    Methods flush but never commit; transaction boundaries belong to the caller.
    """

    model: ClassVar[type[Any]]
    resource: ClassVar[str] = ""

    def __init__(self, session: Session, tenant_id: str | None = None) -> None:
        self.session = session
        self.tenant_id = tenant_id or get_settings().default_tenant_id

    def apply_scope_query(self, query: Select[Any]) -> Select[Any]:
        return query.where(self.model.tenant_id == self.tenant_id)

    def list(self, **filters: Any) -> list[ModelT]:
        query = self.apply_scope_query(select(self.model))
        for column_name, value in filters.items():
            query = query.where(getattr(self.model, column_name) == value)
        return list(self.session.scalars(query.order_by(self.model.created_at.asc(), self.model.id.asc())))

    def get(self, entity_id: str) -> ModelT | None:
        query = self.apply_scope_query(select(self.model)).where(self.model.id == entity_id)
        return self.session.scalar(query)

    def create(self, entity: ModelT) -> ModelT:
        if getattr(entity, "id", None) is None:
            entity.id = new_id()
        entity.tenant_id = self.tenant_id
        self.session.add(entity)
        self.session.flush()
        return entity

    def update(self, entity_id: str, patch: dict[str, Any]) -> ModelT | None:
        entity = self.get(entity_id)
        if entity is None:
            return None
        return self.apply_patch(entity, patch)

    def apply_patch(self, entity: ModelT, patch: dict[str, Any]) -> ModelT:
        for key, value in patch.items():
            if key in {"id", "tenant_id", "created_at"}:
                continue
            if not hasattr(entity, key):
                raise AttributeError(f"{self.model.__name__} has no field '{key}'")
            setattr(entity, key, value)
        if hasattr(entity, "updated_at"):
            entity.updated_at = datetime.now(timezone.utc)
        self.session.add(entity)
        self.session.flush()
        return entity

    def remove(self, entity_id: str) -> bool:
        entity = self.get(entity_id)
        if entity is None:
            return False
        self.session.delete(entity)
        self.session.flush()
        return True
