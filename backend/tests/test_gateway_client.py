"""
Gateway client tests against an httpx.MockTransport gateway.
"""
import base64
import hashlib
import json

import httpx
import pytest

from reconciler.exceptions import GatewayUnavailableError
from reconciler.services.gateway_client import GatewayClient

from conftest import BASE_URL, MERCHANT_ID, SALT_INDEX, SALT_KEY, payment_request


def client_for(handler) -> GatewayClient:
    return GatewayClient(
        base_url=BASE_URL + "/",
        merchant_id=MERCHANT_ID,
        salt_key=SALT_KEY,
        salt_index=SALT_INDEX,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestInitiate:

    @pytest.mark.asyncio
    async def test_posts_signed_request_and_parses_redirect(self, fake_gateway):
        client = fake_gateway.client()

        result = await client.initiate(payment_request("ORD1", 49900))

        assert result.success is True
        assert result.redirect_url == "https://pay.gateway.test/page/abc"

        sent = fake_gateway.pay_requests[0]
        assert sent.method == "POST"
        assert str(sent.url) == BASE_URL + "/pg/v1/pay"
        assert sent.headers["X-MERCHANT-ID"] == MERCHANT_ID

        body = json.loads(sent.content)
        expected = hashlib.sha256((body["request"] + "/pg/v1/pay" + SALT_KEY).encode()).hexdigest()
        assert sent.headers["X-VERIFY"] == f"{expected}###{SALT_INDEX}"

        payload = json.loads(base64.b64decode(body["request"]))
        assert payload["merchantTransactionId"] == "ORD1"
        assert payload["amount"] == 49900
        assert payload["merchantUserId"] == "USER_9999999999"
        assert payload["paymentInstrument"] == {"type": "PAY_PAGE"}

    @pytest.mark.asyncio
    async def test_declined_initiation_is_a_result_not_an_error(self, fake_gateway):
        fake_gateway.pay_response = {"success": False, "code": "BAD_REQUEST", "message": "Invalid amount"}

        result = await fake_gateway.client().initiate(payment_request())

        assert result.success is False
        assert result.code == "BAD_REQUEST"
        assert result.redirect_url is None
        assert result.raw["message"] == "Invalid amount"


class TestQueryStatus:

    @pytest.mark.asyncio
    async def test_signs_status_endpoint(self, fake_gateway):
        fake_gateway.status_codes["ORD7"] = "PAYMENT_SUCCESS"

        result = await fake_gateway.client().query_status("ORD7")

        assert result.code == "PAYMENT_SUCCESS"
        assert result.gateway_transaction_id == "TORD7"

        sent = fake_gateway.status_queries[0]
        endpoint = f"/pg/v1/status/{MERCHANT_ID}/ORD7"
        assert sent.method == "GET"
        assert sent.url.path.endswith(endpoint)
        expected = hashlib.sha256((endpoint + SALT_KEY).encode()).hexdigest()
        assert sent.headers["X-VERIFY"] == f"{expected}###{SALT_INDEX}"

    @pytest.mark.asyncio
    async def test_repeated_queries_have_no_side_effects(self, fake_gateway):
        client = fake_gateway.client()

        first = await client.query_status("ORD1")
        second = await client.query_status("ORD1")

        assert first.code == second.code == "PAYMENT_PENDING"
        assert len(fake_gateway.status_queries) == 2


class TestUnavailable:

    @pytest.mark.asyncio
    async def test_connection_error(self, fake_gateway):
        fake_gateway.unavailable = True

        with pytest.raises(GatewayUnavailableError) as exc_info:
            await fake_gateway.client().query_status("ORD1")

        assert exc_info.value.http_status == 503

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayUnavailableError):
            await client_for(handler).initiate(payment_request())

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        def handler(request):
            return httpx.Response(502, text="<html>Bad Gateway</html>")

        with pytest.raises(GatewayUnavailableError) as exc_info:
            await client_for(handler).query_status("ORD1")

        assert exc_info.value.details["status_code"] == 502

    @pytest.mark.asyncio
    async def test_json_array_body(self):
        def handler(request):
            return httpx.Response(200, json=[1, 2, 3])

        with pytest.raises(GatewayUnavailableError):
            await client_for(handler).query_status("ORD1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, body", [
        (429, {"success": False, "code": "TOO_MANY_REQUESTS", "message": "Too many requests"}),
        (500, {"success": False, "code": "INTERNAL_SERVER_ERROR"}),
        (503, {"success": False, "code": "PAYMENT_ERROR"}),
    ])
    async def test_throttled_or_server_error_json_is_not_an_answer(self, status_code, body):
        def handler(request):
            return httpx.Response(status_code, json=body)

        with pytest.raises(GatewayUnavailableError) as exc_info:
            await client_for(handler).query_status("ORD1")

        assert exc_info.value.details["status_code"] == status_code

    @pytest.mark.asyncio
    async def test_throttled_initiation_raises(self):
        def handler(request):
            return httpx.Response(429, json={"success": False, "code": "TOO_MANY_REQUESTS"})

        with pytest.raises(GatewayUnavailableError):
            await client_for(handler).initiate(payment_request())

    @pytest.mark.asyncio
    async def test_status_query_rejects_client_errors(self):
        def handler(request):
            return httpx.Response(400, json={"success": False, "code": "BAD_REQUEST"})

        with pytest.raises(GatewayUnavailableError) as exc_info:
            await client_for(handler).query_status("ORD1")

        assert exc_info.value.details["status_code"] == 400

    @pytest.mark.asyncio
    async def test_initiation_client_error_is_a_declined_result(self):
        def handler(request):
            return httpx.Response(400, json={"success": False, "code": "BAD_REQUEST", "message": "Invalid amount"})

        result = await client_for(handler).initiate(payment_request())

        assert result.success is False
        assert result.code == "BAD_REQUEST"
