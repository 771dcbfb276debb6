"""
Pytest configuration and fixtures.

The gateway is simulated with httpx.MockTransport; storage is in-memory
unless a test asks for SQLite.
"""
import base64
import hashlib
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from reconciler.config import Settings
from reconciler.models.payments import OrderRecord, PaymentRequest
from reconciler.services.gateway_client import GatewayClient
from reconciler.services.order_ledger import OrderLedger
from reconciler.services.order_store import InMemoryOrderStore
from reconciler.services.outcome_sinks import OutcomeFanout, OutcomeSink
from reconciler.services.reconciliation_service import ReconciliationProtocol

MERCHANT_ID = "MERCHANTUAT"
SALT_KEY = "test-salt-key"
SALT_INDEX = "1"
BASE_URL = "https://gateway.test/apis/hermes"
REDIRECT_URL = "http://localhost:3000/payment-callback"


def signed_callback(
    transaction_id: str,
    code: str,
    gateway_transaction_id: Optional[str] = "T2401",
    salt_key: str = SALT_KEY,
    salt_index: str = SALT_INDEX
) -> Tuple[str, str]:
    """Build a base64 callback response and its X-VERIFY header."""
    document = {
        "success": code == "PAYMENT_SUCCESS",
        "code": code,
        "data": {
            "merchantId": MERCHANT_ID,
            "merchantTransactionId": transaction_id,
            "transactionId": gateway_transaction_id,
            "amount": 49900,
        },
    }
    payload = base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")
    digest = hashlib.sha256((payload + salt_key).encode("utf-8")).hexdigest()
    return payload, f"{digest}###{salt_index}"


class FakeGateway:
    """
    Scripted gateway behind an httpx.MockTransport.

    status_codes maps transaction id -> code returned by the status query;
    unknown ids answer PAYMENT_PENDING. status_replies maps transaction
    id -> (HTTP status, JSON body) sent verbatim instead. Set unavailable
    to raise a connection error on every request.
    """

    def __init__(self):
        self.status_codes: Dict[str, Optional[str]] = {}
        self.status_replies: Dict[str, Tuple[int, Dict[str, Any]]] = {}
        self.pay_response: Dict[str, Any] = {
            "success": True,
            "code": "PAYMENT_INITIATED",
            "message": "Payment initiated",
            "data": {
                "merchantId": MERCHANT_ID,
                "instrumentResponse": {
                    "type": "PAY_PAGE",
                    "redirectInfo": {"url": "https://pay.gateway.test/page/abc", "method": "GET"},
                },
            },
        }
        self.unavailable = False
        self.requests: List[httpx.Request] = []

    @property
    def status_queries(self) -> List[httpx.Request]:
        return [r for r in self.requests if "/pg/v1/status/" in r.url.path]

    @property
    def pay_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/pg/v1/pay")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unavailable:
            raise httpx.ConnectError("connection refused", request=request)

        if request.url.path.endswith("/pg/v1/pay"):
            return httpx.Response(200, json=self.pay_response)

        transaction_id = request.url.path.rsplit("/", 1)[-1]
        if transaction_id in self.status_replies:
            status_code, reply = self.status_replies[transaction_id]
            return httpx.Response(status_code, json=reply)

        code = self.status_codes.get(transaction_id, "PAYMENT_PENDING")
        body: Dict[str, Any] = {
            "success": code is not None and code != "PAYMENT_ERROR",
            "message": "Status fetched",
            "data": {"merchantTransactionId": transaction_id, "transactionId": f"T{transaction_id}"},
        }
        if code is not None:
            body["code"] = code
        return httpx.Response(200, json=body)

    def client(self) -> GatewayClient:
        return GatewayClient(
            base_url=BASE_URL,
            merchant_id=MERCHANT_ID,
            salt_key=SALT_KEY,
            salt_index=SALT_INDEX,
            timeout=2.0,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )


class RecordingSink(OutcomeSink):
    """Keeps every (event, record) it is sent."""

    name = "recording"

    def __init__(self):
        self.events: List[Tuple[str, OrderRecord]] = []

    async def send(self, event: str, record: OrderRecord) -> None:
        self.events.append((event, record))


def payment_request(transaction_id: str = "ORD1", amount: int = 49900) -> PaymentRequest:
    return PaymentRequest(
        merchant_id=MERCHANT_ID,
        transaction_id=transaction_id,
        payer_id="USER_9999999999",
        amount=amount,
        callback_url=REDIRECT_URL,
        redirect_url=f"{REDIRECT_URL}?merchantTransactionId={transaction_id}",
        mobile_number="9999999999",
    )


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fanout(recording_sink) -> OutcomeFanout:
    return OutcomeFanout([recording_sink])


@pytest.fixture
def ledger(fanout) -> OrderLedger:
    return OrderLedger(InMemoryOrderStore(), fanout)


@pytest.fixture
def protocol(ledger, fake_gateway) -> ReconciliationProtocol:
    return ReconciliationProtocol(ledger, fake_gateway.client(), salt_key=SALT_KEY, salt_index=SALT_INDEX)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        phonepe_merchant_id=MERCHANT_ID,
        phonepe_salt_key=SALT_KEY,
        phonepe_salt_index=SALT_INDEX,
        phonepe_base_url=BASE_URL,
        redirect_url=REDIRECT_URL,
        frontend_url="http://shop.test",
        google_sheets_url="",
        ledger_backend="memory",
        database_path=str(tmp_path / "orders.db"),
        orders_snapshot_path=str(tmp_path / "orders.json"),
        pending_sweep_enabled=False,
    )
