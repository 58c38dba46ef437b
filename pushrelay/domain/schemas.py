from __future__ import annotations

import json
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _is_absolute_url_or_path(value: str) -> bool:
    if value.startswith("/"):
        return True
    parsed = urlparse(value)
    return bool(parsed.scheme and parsed.netloc)


class NotificationAction(BaseModel):
    action: str
    title: str
    icon: str | None = None


class NotificationPayload(BaseModel):
    # Wire keys are camelCase to match what service workers read from the push event.
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1, max_length=255)
    body: str | None = Field(default=None, max_length=1000)
    icon: str | None = None
    badge: str | None = None
    image: str | None = None
    url: str | None = None
    data: dict[str, Any] | None = None
    actions: list[NotificationAction] | None = None
    tag: str | None = None
    require_interaction: bool | None = Field(default=None, alias="requireInteraction")
    silent: bool | None = None

    @field_validator("icon", "badge", "image", "url")
    @classmethod
    def _check_link(cls, value: str | None) -> str | None:
        if value is not None and not _is_absolute_url_or_path(value):
            raise ValueError("must be an absolute URL or a path starting with /")
        return value

    def to_wire(self) -> bytes:
        # Serialize deterministically so every target in a batch receives identical bytes.
        body = self.model_dump(by_alias=True, exclude_none=True)
        return json.dumps(body, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class SubscriptionKeys(BaseModel):
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class SubscribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    endpoint: str = Field(min_length=1)
    keys: SubscriptionKeys
    user_id: str | None = Field(default=None, max_length=255, alias="userId")
    channel_id: str | None = Field(default=None, max_length=255, alias="channelId")
    metadata: dict[str, Any] | None = None
    # Browser-provided expiry in epoch milliseconds; null means no expiry.
    expiration_time: int | None = Field(default=None, alias="expirationTime")


class SendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payload: NotificationPayload
    # Targeting: explicit ids win; otherwise user/channel filters; none means broadcast.
    user_id: str | None = Field(default=None, alias="userId")
    channel_id: str | None = Field(default=None, alias="channelId")
    subscription_ids: list[str] | None = Field(default=None, alias="subscriptionIds")
