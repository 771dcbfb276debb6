"""
Gateway Client

Signed calls to the hosted payment gateway: pay-page initiation and
transaction status queries. Every call carries a bounded timeout.

Failure Semantics:
- Transport errors, timeouts, HTTP 429/5xx and unparseable bodies raise
  GatewayUnavailableError; status queries also reject any other non-2xx
- A parsed answer with success=false is a valid result, returned as-is
- Callers must never read "gateway unreachable" as "payment failed"
"""
import logging
from typing import Any, Dict, Optional

import httpx

from ..exceptions import GatewayUnavailableError
from ..models.payments import GatewayResult, PaymentRequest
from .checksum_service import encode_payload, sign_request, sign_status_query

logger = logging.getLogger(__name__)

PAY_ENDPOINT = "/pg/v1/pay"
STATUS_ENDPOINT = "/pg/v1/status/{merchant_id}/{transaction_id}"


def _dig(obj: Any, *keys: str) -> Any:
    """Walk nested dicts, returning None as soon as a level is missing."""
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class GatewayClient:
    """
    Async client for the gateway's signed REST endpoints.

    Stateless apart from the pooled HTTP client; safe to share between
    concurrent requests.
    """

    def __init__(
        self,
        base_url: str,
        merchant_id: str,
        salt_key: str,
        salt_index: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize gateway client.

        Args:
            base_url: Gateway base URL (without trailing slash)
            merchant_id: Merchant identifier issued by the gateway
            salt_key: Merchant salt key used for X-VERIFY
            salt_index: Index of the salt key
            timeout: Per-request timeout in seconds
            http_client: Pre-built client (tests inject one with MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.merchant_id = merchant_id
        self._salt_key = salt_key
        self.salt_index = salt_index
        self.timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, checksum: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-VERIFY": checksum,
            "X-MERCHANT-ID": self.merchant_id,
        }

    async def _send(
        self,
        method: str,
        endpoint: str,
        checksum: str,
        body: Optional[Dict[str, Any]] = None,
        require_2xx: bool = False
    ) -> Dict[str, Any]:
        """
        Issue one signed request and return the decoded JSON object.

        Args:
            require_2xx: Treat every non-2xx status as unavailable. 429 and
                5xx are always unavailable, whatever the body says.

        Raises:
            GatewayUnavailableError: network failure, timeout, throttling,
                server error or non-JSON body
        """
        url = f"{self.base_url}{endpoint}"
        logger.info(f"[API CALL] {method} {url}")
        logger.debug(f"[API CALL] X-VERIFY: {checksum[:20]}...###{self.salt_index}")

        try:
            response = await self._client.request(
                method,
                url,
                json=body,
                headers=self._headers(checksum),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            logger.error(f"[GATEWAY TIMEOUT] {method} {endpoint} after {self.timeout}s")
            raise GatewayUnavailableError(
                f"Gateway timed out after {self.timeout}s",
                {"endpoint": endpoint, "error": str(e)}
            )
        except httpx.HTTPError as e:
            logger.error(f"[GATEWAY ERROR] {method} {endpoint}: {e}")
            raise GatewayUnavailableError(
                "Gateway request failed",
                {"endpoint": endpoint, "error": str(e)}
            )

        status_code = response.status_code
        if status_code == 429 or status_code >= 500 or (require_2xx and not 200 <= status_code < 300):
            logger.error(f"[GATEWAY ERROR] {method} {endpoint}: HTTP {status_code}")
            raise GatewayUnavailableError(
                f"Gateway answered HTTP {status_code}",
                {"endpoint": endpoint, "status_code": status_code}
            )

        try:
            result = response.json()
        except ValueError:
            logger.error(
                f"[GATEWAY ERROR] Non-JSON response from {endpoint} "
                f"(HTTP {response.status_code})"
            )
            raise GatewayUnavailableError(
                "Gateway returned an unparseable response",
                {"endpoint": endpoint, "status_code": response.status_code}
            )

        if not isinstance(result, dict):
            raise GatewayUnavailableError(
                "Gateway returned an unexpected response shape",
                {"endpoint": endpoint, "status_code": response.status_code}
            )

        logger.debug(f"[GATEWAY RESPONSE] {endpoint}: {result}")
        return result

    async def initiate(self, request: PaymentRequest) -> GatewayResult:
        """
        Create a pay-page session for an order.

        Args:
            request: Payment request for the order

        Returns:
            GatewayResult; redirect_url is set when the gateway accepted it

        Raises:
            GatewayUnavailableError: gateway unreachable or answer unparseable
        """
        payload = encode_payload(request.to_gateway_payload())
        checksum = sign_request(payload, PAY_ENDPOINT, self._salt_key, self.salt_index)

        result = await self._send("POST", PAY_ENDPOINT, checksum, {"request": payload})
        redirect_url = _as_text(_dig(result, "data", "instrumentResponse", "redirectInfo", "url"))

        gateway_result = GatewayResult(
            success=bool(result.get("success")),
            code=_as_text(result.get("code")),
            message=_as_text(result.get("message")),
            redirect_url=redirect_url,
            gateway_transaction_id=_as_text(_dig(result, "data", "transactionId")),
            merchant_transaction_id=_as_text(_dig(result, "data", "merchantTransactionId")),
            raw=result,
        )

        if gateway_result.success and redirect_url:
            logger.info(f"[SUCCESS] Payment URL generated for {request.transaction_id}")
        else:
            logger.warning(
                f"[GATEWAY REJECTED] {request.transaction_id}: "
                f"code={gateway_result.code}, message={gateway_result.message}"
            )

        return gateway_result

    async def query_status(self, transaction_id: str) -> GatewayResult:
        """
        Ask the gateway for the authoritative status of a transaction.

        Read-only at the gateway; safe to repeat.

        Args:
            transaction_id: Merchant transaction identifier

        Raises:
            GatewayUnavailableError: gateway unreachable or answer unparseable
        """
        endpoint = STATUS_ENDPOINT.format(
            merchant_id=self.merchant_id,
            transaction_id=transaction_id
        )
        checksum = sign_status_query(endpoint, self._salt_key, self.salt_index)

        result = await self._send("GET", endpoint, checksum, require_2xx=True)
        logger.info(
            f"[STATUS CHECK] {transaction_id}: success={result.get('success')}, "
            f"code={result.get('code')}"
        )

        return GatewayResult(
            success=bool(result.get("success")),
            code=_as_text(result.get("code")),
            message=_as_text(result.get("message")),
            gateway_transaction_id=_as_text(_dig(result, "data", "transactionId")),
            merchant_transaction_id=_as_text(_dig(result, "data", "merchantTransactionId")),
            raw=result,
        )
