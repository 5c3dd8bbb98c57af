from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from importcrm.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomRole(Base):
    __tablename__ = "crm_custom_role"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(32), nullable=True)
    permissions: Mapped[dict[str, dict[str, bool]]] = mapped_column(JSON, nullable=False, default=dict)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_crm_custom_role_tenant_name"),)


class CRMUserProfile(Base):
    __tablename__ = "crm_user_profile"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    custom_role_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    permission_overrides: Mapped[dict[str, dict[str, bool]] | None] = mapped_column(JSON, nullable=True)
    assigned_entity_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (UniqueConstraint("tenant_id", "user_id", name="uq_crm_user_profile_tenant_user"),)


Index("ix_crm_custom_role_tenant_active", CustomRole.tenant_id, CustomRole.is_active)
Index("ix_crm_user_profile_role", CRMUserProfile.tenant_id, CRMUserProfile.custom_role_id)
