from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping sqlite-backed local runs working.
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class App(Base):
    __tablename__ = "apps"
    __table_args__ = (Index("ix_apps_owner", "owner"),)

    # One registered tenant application with its own push-service identity.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    # Owner identity is stored lower-cased so lookups are case-insensitive.
    owner: Mapped[str] = mapped_column(String(255))
    # Store only the hashed credential to avoid plaintext secrets at rest.
    credential_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    vapid_public_key: Mapped[str] = mapped_column(Text)
    vapid_private_key: Mapped[str] = mapped_column(Text)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    max_per_minute: Mapped[int] = mapped_column(Integer)
    max_per_day: Mapped[int] = mapped_column(Integer)
    max_subscriptions: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # Natural key: one live subscription per tenant per endpoint.
        UniqueConstraint("tenant_id", "endpoint", name="uq_subscriptions_tenant_endpoint"),
        Index("ix_subscriptions_tenant_user", "tenant_id", "user_id"),
        Index("ix_subscriptions_tenant_channel", "tenant_id", "channel_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("apps.id", ondelete="CASCADE"), index=True)
    endpoint: Mapped[str] = mapped_column(Text)
    # Canonical unpadded base64url key material only.
    public_key: Mapped[str] = mapped_column(Text)
    auth_secret: Mapped[str] = mapped_column(Text)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    channel_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class RateLimitWindow(Base):
    __tablename__ = "rate_limit_windows"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "action", "window_start_ms", name="uq_rate_limit_windows_tenant_action_window"
        ),
        Index("ix_rate_limit_windows_window_start", "window_start_ms"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    action: Mapped[str] = mapped_column(String(50))
    # Epoch milliseconds aligned to the window length.
    window_start_ms: Mapped[int] = mapped_column(BigInteger)
    count: Mapped[int] = mapped_column(Integer, default=1)
