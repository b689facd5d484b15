"""Concurrency and invariant tests for the quota ledger."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import timedelta
from functools import partial
from typing import List

import anyio
import pytest

from quotagate.errors import StoreWriteError, UserNotFoundError
from quotagate.ledger import QuotaLedger
from quotagate.models import ConsumeResult, SystemSettings, User, current_timestamp
from quotagate.store import MemoryStore


def _make_user(user_id: str, quota: int, email: str | None = None) -> User:
    now = current_timestamp()
    return User(
        id=user_id,
        email=email or f"{user_id}@example.com",
        password_hash="not-a-real-hash",
        message_quota=quota,
        created_at=now,
        updated_at=now,
    )


class FlakyStore(MemoryStore):
    """Memory store whose next ``failures`` user writes raise ``OSError``."""

    failures = 0

    def _write_users(self, payload):
        if self.failures:
            self.failures -= 1
            raise OSError("No space left on device")
        super()._write_users(payload)


class SlowStore(MemoryStore):
    delay = 0.05

    def _write_users(self, payload):
        time.sleep(self.delay)
        super()._write_users(payload)


def test_consume_decrements_and_reports_remaining() -> None:
    store = MemoryStore(users=[_make_user("u1", 5)])
    ledger = QuotaLedger(store)

    result = anyio.run(ledger.consume, "u1")

    assert result == ConsumeResult(charged=True, remaining=4)
    assert store.get("u1").message_quota == 4
    assert store.users_document["users"][0]["message_quota"] == 4


def test_consume_at_zero_is_not_charged_and_does_not_write() -> None:
    store = MemoryStore(users=[_make_user("u1", 0)])
    before = store.users_document
    ledger = QuotaLedger(store)

    result = anyio.run(ledger.consume, "u1")

    assert result == ConsumeResult(charged=False, remaining=0)
    assert store.get("u1").message_quota == 0
    assert store.users_document is before


def test_concurrent_consumes_charge_at_most_the_available_quota() -> None:
    store = MemoryStore(users=[_make_user("u1", 3)])
    ledger = QuotaLedger(store)
    results: List[ConsumeResult] = []

    async def scenario() -> None:
        async def consume() -> None:
            results.append(await ledger.consume("u1"))

        async with anyio.create_task_group() as group:
            for _ in range(10):
                group.start_soon(consume)

    anyio.run(scenario)

    assert sum(1 for result in results if result.charged) == 3
    assert sum(1 for result in results if not result.charged) == 7
    assert all(result.remaining == 0 for result in results if not result.charged)
    assert store.get("u1").message_quota == 0
    assert ledger.pending_users == 0


def test_exhaustion_after_default_quota_is_spent() -> None:
    store = MemoryStore(settings=SystemSettings(default_quota=200))
    ledger = QuotaLedger(store)

    async def scenario() -> ConsumeResult:
        user = await ledger.create_user(email="heavy@example.com", password_hash="x")
        assert user.message_quota == 200
        for expected in range(199, -1, -1):
            result = await ledger.consume(user.id)
            assert result == ConsumeResult(charged=True, remaining=expected)
        return await ledger.consume(user.id)

    last = anyio.run(scenario)

    assert last == ConsumeResult(charged=False, remaining=0)
    assert store.snapshot()[0].message_quota == 0


def test_refund_restores_a_unit_after_failed_work() -> None:
    store = MemoryStore(users=[_make_user("u1", 5)])
    ledger = QuotaLedger(store)

    async def scenario() -> None:
        consumed = await ledger.consume("u1")
        assert consumed.remaining == 4
        refunded = await ledger.refund("u1")
        assert refunded.remaining == 5

    anyio.run(scenario)
    assert store.get("u1").message_quota == 5


def test_refund_without_prior_consume_still_increments() -> None:
    store = MemoryStore(users=[_make_user("u1", 2)])
    ledger = QuotaLedger(store)

    result = anyio.run(ledger.refund, "u1")

    assert result.remaining == 3
    assert store.get("u1").message_quota == 3


def test_concurrent_consume_and_refund_never_lose_an_update() -> None:
    for initial in (0, 1, 4):
        store = SlowStore(users=[_make_user("u1", initial)])
        store.delay = 0.01
        ledger = QuotaLedger(store)
        outcome = {}

        async def scenario() -> None:
            async def consume() -> None:
                outcome["consume"] = await ledger.consume("u1")

            async def refund() -> None:
                outcome["refund"] = await ledger.refund("u1")

            async with anyio.create_task_group() as group:
                group.start_soon(consume)
                group.start_soon(refund)

        anyio.run(scenario)

        final = store.get("u1").message_quota
        # consume-then-refund and refund-then-consume are the only valid orders
        if outcome["consume"].charged:
            assert final == initial
        else:
            assert initial == 0 and final == 1


def test_same_user_operations_complete_in_enqueue_order() -> None:
    store = SlowStore(users=[_make_user("u1", 1)])
    store.delay = 0.01
    ledger = QuotaLedger(store)
    order: List[str] = []

    async def scenario() -> None:
        async def run(label: str, operation) -> None:
            result = await operation("u1")
            order.append(f"{label}:{result.remaining}")

        async with anyio.create_task_group() as group:
            group.start_soon(run, "consume", ledger.consume)
            await anyio.sleep(0)
            group.start_soon(run, "consume", ledger.consume)
            await anyio.sleep(0)
            group.start_soon(run, "refund", ledger.refund)

    anyio.run(scenario)

    assert order == ["consume:0", "consume:0", "refund:1"]
    assert store.get("u1").message_quota == 1


def test_unknown_user_is_reported_without_touching_the_store() -> None:
    store = MemoryStore(users=[_make_user("u1", 3)])
    before = store.users_document
    ledger = QuotaLedger(store)

    for operation in (ledger.consume, ledger.refund, ledger.get_quota):
        with pytest.raises(UserNotFoundError):
            anyio.run(operation, "ghost")

    assert store.users_document is before
    assert ledger.pending_users == 0


def test_failed_save_keeps_previous_state_and_queue_keeps_moving() -> None:
    store = FlakyStore(users=[_make_user("u1", 3)])
    store.failures = 1
    ledger = QuotaLedger(store)

    async def scenario() -> ConsumeResult:
        with pytest.raises(StoreWriteError):
            await ledger.consume("u1")
        assert store.get("u1").message_quota == 3
        return await ledger.consume("u1")

    result = anyio.run(scenario)

    assert result == ConsumeResult(charged=True, remaining=2)
    assert store.get("u1").message_quota == 2
    assert ledger.pending_users == 0


def test_enqueued_operation_survives_caller_cancellation() -> None:
    store = SlowStore(users=[_make_user("u1", 3)])
    ledger = QuotaLedger(store)

    async def scenario() -> None:
        task = asyncio.ensure_future(ledger.consume("u1"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        for _ in range(100):
            if ledger.pending_users == 0:
                break
            await asyncio.sleep(0.01)

    anyio.run(scenario)

    assert store.get("u1").message_quota == 2


def test_failure_after_caller_cancellation_is_logged(caplog) -> None:
    class SlowFlakyStore(FlakyStore):
        def _write_users(self, payload):
            time.sleep(0.05)
            super()._write_users(payload)

    store = SlowFlakyStore(users=[_make_user("u1", 3)])
    store.failures = 1
    ledger = QuotaLedger(store)

    def failure_logged() -> bool:
        return any(
            record.name == "quotagate.ledger" and record.levelno == logging.ERROR and "u1" in record.getMessage()
            for record in caplog.records
        )

    async def scenario() -> None:
        task = asyncio.ensure_future(ledger.consume("u1"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        for _ in range(100):
            if failure_logged():
                break
            await asyncio.sleep(0.01)

    with caplog.at_level(logging.ERROR, logger="quotagate.ledger"):
        anyio.run(scenario)

    assert failure_logged()
    assert store.get("u1").message_quota == 3
    assert ledger.pending_users == 0


def test_default_quota_change_is_not_retroactive() -> None:
    store = MemoryStore(settings=SystemSettings(default_quota=200))
    ledger = QuotaLedger(store)

    async def scenario() -> None:
        early = await ledger.create_user(email="early@example.com", password_hash="x")
        await ledger.set_default_quota(50)
        late = await ledger.create_user(email="late@example.com", password_hash="x")
        assert ledger.get_user(early.id).message_quota == 200
        assert late.message_quota == 50

    anyio.run(scenario)
    assert store.settings_document == {"defaultQuota": 50}


def test_negative_default_quota_is_rejected() -> None:
    ledger = QuotaLedger(MemoryStore())
    with pytest.raises(ValueError):
        anyio.run(ledger.set_default_quota, -1)


def test_admin_update_clamps_quota_and_rejects_empty_edits() -> None:
    store = MemoryStore(users=[_make_user("u1", 3)])
    ledger = QuotaLedger(store)

    updated = anyio.run(partial(ledger.admin_update_user, "u1", message_quota=-7))
    assert updated.message_quota == 0
    assert updated.updated_at >= updated.created_at

    with pytest.raises(ValueError):
        anyio.run(partial(ledger.admin_update_user, "u1"))


def test_delete_user_then_operations_report_not_found() -> None:
    store = MemoryStore(users=[_make_user("u1", 3), _make_user("u2", 1)])
    ledger = QuotaLedger(store)

    anyio.run(ledger.delete_user, "u1")

    assert store.get("u1") is None
    assert [user["id"] for user in store.users_document["users"]] == ["u2"]
    with pytest.raises(UserNotFoundError):
        anyio.run(ledger.consume, "u1")


def test_list_users_returns_newest_first() -> None:
    older = _make_user("old", 1)
    older = older.with_changes(created_at=older.created_at - timedelta(days=1))
    newer = _make_user("new", 1)
    ledger = QuotaLedger(MemoryStore(users=[older, newer]))

    assert [user.id for user in ledger.list_users()] == ["new", "old"]
