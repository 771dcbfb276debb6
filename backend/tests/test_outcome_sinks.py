"""
Outcome sink fan-out tests.
"""
import asyncio
import json

import httpx
import pytest

from reconciler.models.payments import OrderRecord, OrderStatus
from reconciler.services.outcome_sinks import (
    JsonSnapshotSink,
    OutcomeFanout,
    OutcomeSink,
    SpreadsheetSink,
)

from conftest import RecordingSink


def order(transaction_id: str = "ORD1", status=OrderStatus.PENDING) -> OrderRecord:
    return OrderRecord(
        transaction_id=transaction_id,
        customer={"name": "Asha", "phone": "9999999999"},
        amount=49900,
        display_amount="499.00",
        status=status,
        gateway_transaction_id="T1" if status is OrderStatus.PAID else None,
    )


class ExplodingSink(OutcomeSink):
    name = "exploding"

    async def send(self, event, record):
        raise RuntimeError("sink down")


class SlowSink(RecordingSink):
    name = "slow"

    def __init__(self, gate: asyncio.Event):
        super().__init__()
        self.gate = gate

    async def send(self, event, record):
        await self.gate.wait()
        await super().send(event, record)


class TestOutcomeFanout:

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_affect_others(self, caplog):
        recording = RecordingSink()
        fanout = OutcomeFanout([ExplodingSink(), recording])

        fanout.notify(order(), "created")
        await fanout.drain()

        assert [e for e, _ in recording.events] == ["created"]
        assert "sink down" in caplog.text

    @pytest.mark.asyncio
    async def test_notify_returns_before_delivery(self):
        gate = asyncio.Event()
        slow = SlowSink(gate)
        fanout = OutcomeFanout([slow])

        fanout.notify(order(), "updated")

        assert fanout.pending == 1
        assert slow.events == []

        gate.set()
        await fanout.drain()
        assert len(slow.events) == 1
        assert fanout.pending == 0

    def test_notify_without_loop_is_dropped(self, caplog):
        recording = RecordingSink()
        OutcomeFanout([recording]).notify(order(), "created")

        assert recording.events == []
        assert "No running event loop" in caplog.text


class TestJsonSnapshotSink:

    @pytest.mark.asyncio
    async def test_writes_all_orders(self, tmp_path):
        orders = [order("ORD2", OrderStatus.PAID), order("ORD1")]

        async def load_orders():
            return orders

        path = tmp_path / "data" / "orders.json"
        await JsonSnapshotSink(str(path), load_orders).send("updated", orders[0])

        document = json.loads(path.read_text())
        assert [o["orderID"] for o in document] == ["ORD2", "ORD1"]
        assert document[0]["status"] == "PAID"
        assert document[0]["name"] == "Asha"


class TestSpreadsheetSink:

    @pytest.mark.asyncio
    async def test_created_sends_full_order(self):
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={"result": "ok"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = SpreadsheetSink("https://script.test/exec", http_client=client)

        await sink.send("created", order())

        assert sent[0]["orderID"] == "ORD1"
        assert sent[0]["totalAmount"] == "499.00"

    @pytest.mark.asyncio
    async def test_updated_sends_status_delta(self):
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            return httpx.Response(200)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sink = SpreadsheetSink("https://script.test/exec", http_client=client)

        await sink.send("updated", order(status=OrderStatus.PAID))

        body = sent[0]
        assert body["action"] == "update"
        assert body["orderId"] == "ORD1"
        assert body["status"] == "PAID"
        assert body["paymentId"] == "T1"
        assert "updatedAt" in body

    @pytest.mark.asyncio
    async def test_placeholder_url_is_skipped(self):
        def handler(request):
            raise AssertionError("should not be called")

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        for url in ("", "https://script.google.com/macros/s/YOUR_DEPLOYMENT_ID/exec"):
            sink = SpreadsheetSink(url, http_client=client)
            assert sink.enabled is False
            await sink.send("created", order())

    @pytest.mark.asyncio
    async def test_http_error_raises_for_fanout_to_log(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        sink = SpreadsheetSink("https://script.test/exec", http_client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await sink.send("created", order())
