"""Per-chat turn serialization."""

import asyncio

import pytest

from formfind.service.errors import ConflictError
from formfind.service.turn_gate import TurnGate


class FakeSlotCache:
    """Stands in for the Redis slot API used by the gate."""

    def __init__(self):
        self.slots = {}
        self.ttls = []

    async def acquire_concurrency_slot(self, slot_type, subject, max_slots, ttl_seconds=3600):
        key = (slot_type, subject)
        self.ttls.append(ttl_seconds)
        if self.slots.get(key, 0) >= max_slots:
            return False, self.slots[key]
        self.slots[key] = self.slots.get(key, 0) + 1
        return True, self.slots[key]

    async def release_concurrency_slot(self, slot_type, subject):
        key = (slot_type, subject)
        self.slots[key] = max(0, self.slots.get(key, 0) - 1)
        return self.slots[key]


class TestLocalGate:
    async def test_second_acquire_times_out_with_conflict(self):
        gate = TurnGate(wait_seconds=0.05, poll_interval=0.01)
        await gate.acquire("c1")
        with pytest.raises(ConflictError) as excinfo:
            await gate.acquire("c1")
        assert excinfo.value.status_code == 409
        assert excinfo.value.message == "Another turn is in progress for this chat"

    async def test_other_chats_are_independent(self):
        gate = TurnGate(wait_seconds=0.05, poll_interval=0.01)
        await gate.acquire("c1")
        await gate.acquire("c2")
        assert gate.is_held("c1") and gate.is_held("c2")

    async def test_waiter_proceeds_after_release(self):
        gate = TurnGate(wait_seconds=1.0, poll_interval=0.01)
        await gate.acquire("c1")

        async def release_later():
            await asyncio.sleep(0.05)
            await gate.release("c1")

        releaser = asyncio.create_task(release_later())
        await gate.acquire("c1")
        await releaser
        assert gate.is_held("c1")


async def test_redis_backed_gate_uses_single_slot():
    cache = FakeSlotCache()
    gate = TurnGate(cache, wait_seconds=0.05, poll_interval=0.01, slot_ttl_seconds=120)
    await gate.acquire("c1")
    assert cache.slots[("turn", "c1")] == 1
    with pytest.raises(ConflictError):
        await gate.acquire("c1")
    await gate.release("c1")
    await gate.acquire("c1")
    assert set(cache.ttls) == {120}
