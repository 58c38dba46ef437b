from __future__ import annotations

import asyncio
import json

import pytest

from pushrelay.core.errors import (
    DatabaseError,
    InvalidKeyMaterialError,
    PushRelayError,
    RateLimitExceededError,
    TransientDeliveryFailure,
    ValidationError,
)
from pushrelay.domain.dispatch import DIRECT_SUBSCRIPTION_ID
from pushrelay.domain.schemas import SendRequest
from pushrelay.persistence.repos.rate_limits import InMemoryRateLimitStore
from pushrelay.persistence.repos.subscriptions import InMemorySubscriptionStore
from pushrelay.services.dispatch import DispatchEngine
from pushrelay.services.rate_limit import ACTION_BROADCAST_SEND, ACTION_SINGLE_SEND, RateLimiter, window_start_for
from pushrelay.services.registry import SubscriptionRegistry
from pushrelay.tests.utils.push import (
    FakeTransport,
    FixedClock,
    make_auth_secret,
    make_public_key,
    make_tenant,
)


class _Harness:
    def __init__(self, transport: FakeTransport, *, batch_size: int = 50, timeout_s: float = 5.0) -> None:
        self.clock = FixedClock()
        self.store = InMemorySubscriptionStore()
        self.rate_store = InMemoryRateLimitStore()
        self.registry = SubscriptionRegistry(self.store, time_provider=self.clock)
        self.transport = transport
        self.engine = DispatchEngine(
            self.registry,
            RateLimiter(self.rate_store, time_provider=self.clock),
            transport,
            batch_size=batch_size,
            delivery_timeout_s=timeout_s,
            ttl_s=3600,
            urgency="high",
            vapid_subject="mailto:ops@example.com",
        )

    async def add(self, tenant_id: str, endpoint: str, **extra):
        return await self.registry.upsert(tenant_id, endpoint, make_public_key(), make_auth_secret(), **extra)

    def window_count(self, tenant_id: str, action: str) -> int | None:
        window_start = window_start_for(int(self.clock.now.timestamp() * 1000), 60_000)
        return self.rate_store.peek(tenant_id, action, window_start)


def _request(**targeting) -> SendRequest:
    return SendRequest.model_validate({"payload": {"title": "Hello", "body": "World"}, **targeting})


@pytest.mark.asyncio
async def test_empty_target_set_skips_rate_accounting() -> None:
    harness = _Harness(FakeTransport())
    tenant = make_tenant()
    result = await harness.engine.send(tenant, _request(userId="u1"))
    assert (result.sent, result.failed, result.total) == (0, 0, 0)
    assert result.results == []
    assert harness.window_count(tenant.id, ACTION_SINGLE_SEND) is None
    assert harness.window_count(tenant.id, ACTION_BROADCAST_SEND) is None
    assert harness.transport.calls == []


@pytest.mark.asyncio
async def test_user_filter_limits_delivery_targets() -> None:
    harness = _Harness(FakeTransport())
    tenant = make_tenant()
    first = await harness.add(tenant.id, "https://push.example.com/1", user_id="u1")
    second = await harness.add(tenant.id, "https://push.example.com/2", user_id="u1")
    await harness.add(tenant.id, "https://push.example.com/3", user_id="u2")

    result = await harness.engine.send(tenant, _request(userId="u1"))
    assert sorted(harness.transport.endpoints) == ["https://push.example.com/1", "https://push.example.com/2"]
    assert (result.sent, result.failed, result.total) == (2, 0, 2)
    assert {item.subscription_id for item in result.results} == {first.id, second.id}
    assert harness.window_count(tenant.id, ACTION_BROADCAST_SEND) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [404, 410])
async def test_gone_endpoint_is_pruned(status_code: int) -> None:
    gone = "https://push.example.com/gone"
    harness = _Harness(FakeTransport({gone: status_code}))
    tenant = make_tenant()
    dead = await harness.add(tenant.id, gone)
    alive = await harness.add(tenant.id, "https://push.example.com/alive")

    result = await harness.engine.send(tenant, _request())
    by_id = {item.subscription_id: item for item in result.results}
    assert by_id[dead.id].success is False
    assert by_id[dead.id].status_code == status_code
    assert by_id[alive.id].success is True
    assert await harness.store.get(dead.id) is None
    assert await harness.store.get(alive.id) is not None
    assert result.summary()["failures"] == [{"subscriptionId": dead.id, "error": by_id[dead.id].error}]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "outcome",
    [
        TransientDeliveryFailure("Push service timed out"),
        500,
        429,
        RuntimeError("socket closed"),
    ],
)
async def test_transient_failures_keep_the_subscription(outcome) -> None:
    flaky = "https://push.example.com/flaky"
    harness = _Harness(FakeTransport({flaky: outcome}))
    tenant = make_tenant()
    record = await harness.add(tenant.id, flaky)

    result = await harness.engine.send(tenant, _request())
    assert (result.sent, result.failed, result.total) == (0, 1, 1)
    assert result.results[0].subscription_id == record.id
    assert result.results[0].error
    assert await harness.store.get(record.id) == record
    assert harness.window_count(tenant.id, ACTION_SINGLE_SEND) == 1


@pytest.mark.asyncio
async def test_delivery_timeout_is_transient() -> None:
    slow = "https://push.example.com/slow"
    harness = _Harness(FakeTransport(delays={slow: 1.0}), timeout_s=0.05)
    tenant = make_tenant()
    record = await harness.add(tenant.id, slow)
    fast = await harness.add(tenant.id, "https://push.example.com/fast")

    result = await harness.engine.send(tenant, _request())
    by_id = {item.subscription_id: item for item in result.results}
    assert by_id[record.id].success is False
    assert by_id[record.id].error == "Delivery timed out"
    assert by_id[fast.id].success is True
    assert await harness.store.get(record.id) is not None


@pytest.mark.asyncio
async def test_rate_limit_rejects_sixth_send_without_delivery() -> None:
    harness = _Harness(FakeTransport())
    tenant = make_tenant(max_per_minute=5)
    await harness.add(tenant.id, "https://push.example.com/1")

    for _ in range(5):
        result = await harness.engine.send(tenant, _request())
        assert result.sent == 1
    assert len(harness.transport.calls) == 5

    with pytest.raises(RateLimitExceededError) as excinfo:
        await harness.engine.send(tenant, _request())
    assert excinfo.value.action == ACTION_SINGLE_SEND
    assert (excinfo.value.current, excinfo.value.limit) == (6, 5)
    assert len(harness.transport.calls) == 5


@pytest.mark.asyncio
async def test_explicit_ids_drop_foreign_and_unknown_subscriptions() -> None:
    harness = _Harness(FakeTransport())
    tenant = make_tenant("app-1")
    mine = await harness.add("app-1", "https://push.example.com/mine")
    theirs = await harness.add("app-2", "https://push.example.com/theirs")

    result = await harness.engine.send(tenant, _request(subscriptionIds=[theirs.id, mine.id, "missing"]))
    assert harness.transport.endpoints == ["https://push.example.com/mine"]
    assert [item.subscription_id for item in result.results] == [mine.id]
    assert result.total == 1

    only_foreign = await harness.engine.send(tenant, _request(subscriptionIds=[theirs.id]))
    assert only_foreign.total == 0


@pytest.mark.asyncio
async def test_results_follow_target_order_despite_completion_order() -> None:
    transport = FakeTransport(
        delays={
            "https://push.example.com/0": 0.05,
            "https://push.example.com/1": 0.01,
            "https://push.example.com/2": 0.03,
        }
    )
    harness = _Harness(transport)
    tenant = make_tenant()
    records = [await harness.add(tenant.id, f"https://push.example.com/{index}") for index in range(3)]

    result = await harness.engine.send(tenant, _request(subscriptionIds=[record.id for record in records]))
    assert [item.subscription_id for item in result.results] == [record.id for record in records]
    assert transport.completed != transport.endpoints


@pytest.mark.asyncio
async def test_batches_cap_in_flight_deliveries() -> None:
    transport = FakeTransport(default_delay=0.01)
    harness = _Harness(transport, batch_size=3)
    tenant = make_tenant()
    for index in range(8):
        await harness.add(tenant.id, f"https://push.example.com/{index}")

    result = await harness.engine.send(tenant, _request())
    assert result.total == 8
    assert transport.max_in_flight == 3
    # One send call is one rate-limit unit regardless of fan-out.
    assert harness.window_count(tenant.id, ACTION_BROADCAST_SEND) == 1


@pytest.mark.asyncio
async def test_payload_serialized_once_with_tenant_identity() -> None:
    harness = _Harness(FakeTransport())
    tenant = make_tenant()
    await harness.add(tenant.id, "https://push.example.com/1")
    await harness.add(tenant.id, "https://push.example.com/2")

    await harness.engine.send(tenant, _request())
    payloads = {call.payload for call in harness.transport.calls}
    assert len(payloads) == 1
    assert json.loads(payloads.pop()) == {"title": "Hello", "body": "World"}
    for call in harness.transport.calls:
        assert call.identity.public_key == tenant.vapid_public_key
        assert call.identity.private_key == tenant.vapid_private_key
        assert call.identity.subject == "mailto:ops@example.com"
        assert (call.ttl, call.urgency) == (3600, "high")


@pytest.mark.asyncio
async def test_concurrent_sends_for_different_tenants_use_their_own_identity() -> None:
    harness = _Harness(FakeTransport(default_delay=0.01))
    first = make_tenant("app-1")
    second = make_tenant("app-2")
    await harness.add(first.id, "https://push.example.com/a")
    await harness.add(second.id, "https://push.example.com/b")

    await asyncio.gather(harness.engine.send(first, _request()), harness.engine.send(second, _request()))
    identities = {call.endpoint: call.identity.public_key for call in harness.transport.calls}
    assert identities == {
        "https://push.example.com/a": first.vapid_public_key,
        "https://push.example.com/b": second.vapid_public_key,
    }


@pytest.mark.asyncio
async def test_prune_failure_does_not_abort_the_send() -> None:
    gone = "https://push.example.com/gone"
    harness = _Harness(FakeTransport({gone: 410}))
    tenant = make_tenant()
    dead = await harness.add(tenant.id, gone)
    alive = await harness.add(tenant.id, "https://push.example.com/alive")

    async def _broken_delete(subscription_id: str) -> bool:
        raise DatabaseError("subscription delete failed")

    harness.store.delete = _broken_delete  # type: ignore[method-assign]
    result = await harness.engine.send(tenant, _request())
    by_id = {item.subscription_id: item for item in result.results}
    assert by_id[dead.id].success is False
    assert by_id[alive.id].success is True


@pytest.mark.asyncio
async def test_send_direct_skips_rate_limit_and_pruning() -> None:
    endpoint = "https://push.example.com/direct"
    harness = _Harness(FakeTransport({endpoint: 410}))
    tenant = make_tenant(max_per_minute=0)

    result = await harness.engine.send_direct(
        tenant, endpoint, make_public_key(), make_auth_secret(), {"title": "Direct"}
    )
    assert result.subscription_id == DIRECT_SUBSCRIPTION_ID
    assert result.success is False
    assert result.status_code == 410
    assert harness.window_count(tenant.id, ACTION_SINGLE_SEND) is None

    harness.transport.outcomes[endpoint] = 201
    ok = await harness.engine.send_direct(tenant, endpoint, make_public_key(), make_auth_secret(), {"title": "Again"})
    assert ok.success is True
    assert ok.status_code == 201


@pytest.mark.asyncio
async def test_send_direct_validates_keys_strictly() -> None:
    harness = _Harness(FakeTransport())
    with pytest.raises(InvalidKeyMaterialError):
        await harness.engine.send_direct(
            make_tenant(), "https://push.example.com/direct", make_auth_secret(66), make_auth_secret(), {"title": "x"}
        )
    assert harness.transport.calls == []


@pytest.mark.asyncio
async def test_stored_padded_keys_are_renormalized_before_delivery() -> None:
    harness = _Harness(FakeTransport())
    tenant = make_tenant()
    record = await harness.add(tenant.id, "https://push.example.com/1")
    # Simulate a row written before keys were canonicalized.
    legacy = type(record)(
        id=record.id,
        tenant_id=record.tenant_id,
        endpoint=record.endpoint,
        public_key=record.public_key + "=",
        auth_secret=record.auth_secret + "==",
        created_at=record.created_at,
    )
    harness.store._rows[record.id] = legacy

    await harness.engine.send(tenant, _request())
    keys = harness.transport.calls[0].keys
    assert (keys.p256dh, keys.auth) == (record.public_key, record.auth_secret)


@pytest.mark.asyncio
async def test_send_direct_rejects_bad_payload_with_validation_error() -> None:
    harness = _Harness(FakeTransport())
    with pytest.raises(ValidationError) as excinfo:
        await harness.engine.send_direct(
            make_tenant(),
            "https://push.example.com/direct",
            make_public_key(),
            make_auth_secret(),
            {"body": "no title"},
        )
    assert isinstance(excinfo.value, PushRelayError)
    assert excinfo.value.code == "VALIDATION_ERROR"
    assert harness.transport.calls == []
