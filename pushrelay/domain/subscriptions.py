from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class SubscriptionRecord:
    # Immutable snapshot of one device endpoint registered for a tenant.
    id: str
    tenant_id: str
    endpoint: str
    public_key: str = field(repr=False)
    auth_secret: str = field(repr=False)
    created_at: datetime
    user_id: str | None = None
    channel_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now
