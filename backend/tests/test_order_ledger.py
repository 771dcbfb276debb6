"""
Order ledger tests: idempotent transitions, terminal monotonicity,
observation audit trail and per-id serialization.
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from reconciler.exceptions import DuplicateTransactionError, OrderNotFoundError
from reconciler.models.payments import (
    GatewayResult,
    ObservationDisposition,
    OrderStatus,
    OutcomeSource,
    PaymentOutcome,
)
from reconciler.services.order_ledger import KeyedLocks, OrderLedger
from reconciler.services.order_store import InMemoryOrderStore

from conftest import payment_request


def outcome(code: str, transaction_id: str = "ORD1", source=OutcomeSource.CALLBACK, **kwargs) -> PaymentOutcome:
    return PaymentOutcome(
        transaction_id=transaction_id,
        code=code,
        gateway_transaction_id=kwargs.pop("gateway_transaction_id", "T1"),
        source=source,
        **kwargs
    )


class TestCreate:

    @pytest.mark.asyncio
    async def test_creates_pending_record_and_notifies(self, ledger, fanout, recording_sink):
        initial = GatewayResult(success=True, code="PAYMENT_INITIATED", raw={"success": True})

        record = await ledger.create(
            payment_request("ORD1", 49900),
            initial_result=initial,
            customer={"name": "Asha", "phone": "9999999999"},
            display_amount="499.00",
        )
        await fanout.drain()

        assert record.status is OrderStatus.PENDING
        assert record.amount == 49900
        assert record.initiation == {"success": True}
        assert record.to_public_dict()["name"] == "Asha"
        assert [event for event, _ in recording_sink.events] == ["created"]

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, ledger):
        await ledger.create(payment_request("ORD1"))

        with pytest.raises(DuplicateTransactionError):
            await ledger.create(payment_request("ORD1", 100))

        assert (await ledger.get("ORD1")).amount == 49900


class TestApplyOutcome:

    @pytest.mark.asyncio
    async def test_success_marks_paid(self, ledger):
        await ledger.create(payment_request("ORD1"))

        record = await ledger.apply_outcome(outcome("PAYMENT_SUCCESS", gateway_transaction_id="T42"))

        assert record.status is OrderStatus.PAID
        assert record.gateway_transaction_id == "T42"
        assert record.last_outcome_code == "PAYMENT_SUCCESS"

    @pytest.mark.asyncio
    async def test_unknown_code_fails_closed(self, ledger):
        await ledger.create(payment_request("ORD1"))

        record = await ledger.apply_outcome(outcome("SOMETHING_NEW"))

        assert record.status is OrderStatus.FAILED

    @pytest.mark.asyncio
    async def test_reapplying_is_idempotent(self, ledger, fanout, recording_sink):
        await ledger.create(payment_request("ORD1"))

        first = await ledger.apply_outcome(outcome("PAYMENT_SUCCESS"))
        second = await ledger.apply_outcome(outcome("PAYMENT_SUCCESS", source=OutcomeSource.POLL))
        await fanout.drain()

        assert second == first
        events = [event for event, _ in recording_sink.events]
        assert events == ["created", "updated"]

        dispositions = [o.disposition for o in await ledger.observations("ORD1")]
        assert dispositions == [ObservationDisposition.APPLIED, ObservationDisposition.DUPLICATE]

    @pytest.mark.asyncio
    async def test_terminal_status_never_changes(self, ledger, caplog):
        await ledger.create(payment_request("ORD1"))
        await ledger.apply_outcome(outcome("PAYMENT_SUCCESS", gateway_transaction_id="T1"))

        record = await ledger.apply_outcome(outcome("PAYMENT_ERROR", gateway_transaction_id="T2"))
        record = await ledger.apply_outcome(outcome("PAYMENT_PENDING", gateway_transaction_id="T3"))

        assert record.status is OrderStatus.PAID
        assert record.gateway_transaction_id == "T1"
        assert "ORDER CONFLICT" in caplog.text

        observations = await ledger.observations("ORD1")
        assert [o.disposition for o in observations] == [
            ObservationDisposition.APPLIED,
            ObservationDisposition.CONFLICT,
            ObservationDisposition.CONFLICT,
        ]
        assert observations[1].gateway_transaction_id == "T2"

    @pytest.mark.asyncio
    async def test_failed_is_terminal_too(self, ledger):
        await ledger.create(payment_request("ORD1"))
        await ledger.apply_outcome(outcome("PAYMENT_DECLINED"))

        record = await ledger.apply_outcome(outcome("PAYMENT_SUCCESS"))

        assert record.status is OrderStatus.FAILED

    @pytest.mark.asyncio
    async def test_pending_only_refreshes_updated_at(self, ledger, fanout, recording_sink):
        created = await ledger.create(payment_request("ORD1"))
        later = created.updated_at + timedelta(seconds=5)

        record = await ledger.apply_outcome(outcome("PAYMENT_PENDING", observed_at=later))
        await fanout.drain()

        assert record.status is OrderStatus.PENDING
        assert record.updated_at == later
        assert record.gateway_transaction_id is None
        assert [event for event, _ in recording_sink.events] == ["created"]

    @pytest.mark.asyncio
    async def test_unknown_order_is_not_created(self, ledger):
        with pytest.raises(OrderNotFoundError):
            await ledger.apply_outcome(outcome("PAYMENT_SUCCESS", transaction_id="GHOST"))

        assert await ledger.get("GHOST") is None
        assert await ledger.list_orders() == []


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_racing_outcomes_settle_once(self, ledger, fanout, recording_sink):
        await ledger.create(payment_request("ORD1"))

        codes = ["PAYMENT_SUCCESS", "PAYMENT_ERROR"] * 10
        results = await asyncio.gather(*(ledger.apply_outcome(outcome(c)) for c in codes))
        await fanout.drain()

        final = await ledger.get("ORD1")
        assert final.status is OrderStatus.PAID
        assert all(r.status is final.status for r in results)

        applied = [
            o for o in await ledger.observations("ORD1")
            if o.disposition is ObservationDisposition.APPLIED
        ]
        assert len(applied) == 1
        assert [event for event, _ in recording_sink.events].count("updated") == 1

    @pytest.mark.asyncio
    async def test_racing_creates_yield_one_order(self, ledger):
        results = await asyncio.gather(
            *(ledger.create(payment_request("ORD1")) for _ in range(5)),
            return_exceptions=True
        )

        created = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(created) == 1
        assert len(errors) == 4
        assert all(isinstance(e, DuplicateTransactionError) for e in errors)

    @pytest.mark.asyncio
    async def test_locks_released_when_idle(self):
        locks = KeyedLocks()

        async with locks.hold("A"):
            async with locks.hold("B"):
                assert len(locks) == 2

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_other_ids_do_not_wait(self):
        locks = KeyedLocks()
        entered = asyncio.Event()

        async def hold_a():
            async with locks.hold("A"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def enter_b():
            async with locks.hold("B"):
                entered.set()

        await asyncio.gather(hold_a(), enter_b())

        assert entered.is_set()


class TestQueries:

    @pytest.mark.asyncio
    async def test_list_pending_respects_cutoff(self):
        ledger = OrderLedger(InMemoryOrderStore())
        await ledger.create(payment_request("OLD"))
        await ledger.create(payment_request("PAID"))
        await ledger.apply_outcome(outcome("PAYMENT_SUCCESS", transaction_id="PAID"))

        future = datetime.utcnow() + timedelta(minutes=1)
        past = datetime.utcnow() - timedelta(minutes=1)

        assert [r.transaction_id for r in await ledger.list_pending(future)] == ["OLD"]
        assert await ledger.list_pending(past) == []

    @pytest.mark.asyncio
    async def test_require_raises_for_unknown(self, ledger):
        with pytest.raises(OrderNotFoundError):
            await ledger.require("NOPE")
