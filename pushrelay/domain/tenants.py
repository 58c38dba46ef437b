from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class RateLimitPolicy:
    # Per-tenant ceilings; only max_per_minute gates sends today.
    max_per_minute: int = 60
    max_per_day: int = 10_000
    max_subscriptions: int = 10_000


@dataclass(frozen=True)
class Tenant:
    """Read-only view of a registered application.

    The VAPID private key is excluded from ``repr`` so tenants can be logged
    without leaking the push-service identity.
    """

    id: str
    name: str
    owner: str
    vapid_public_key: str
    vapid_private_key: str = field(repr=False)
    rate_limit: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)
