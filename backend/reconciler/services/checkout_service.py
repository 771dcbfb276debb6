"""
Checkout Service

Turns a storefront order into a pay-page initiation and a PENDING ledger
record.

Control flow:
1. Validate mandatory order fields (orderID, totalAmount, phone, name)
2. Convert the amount to minor units
3. Reject transaction ids the ledger already holds
4. Initiate with the gateway (unavailable gateway -> no record)
5. Record the order as PENDING with the gateway's initial answer

Steps 3-5 run under a per-orderID lock, so concurrent requests for one
orderID initiate with the gateway at most once.
"""
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..exceptions import DuplicateTransactionError, OrderValidationError
from ..models.payments import GatewayResult, PaymentRequest, is_valid_transaction_id, to_minor_units
from .gateway_client import GatewayClient
from .order_ledger import KeyedLocks, OrderLedger

logger = logging.getLogger(__name__)

MANDATORY_ORDER_FIELDS = ("orderID", "totalAmount", "phone", "name")


class CheckoutResult(BaseModel):
    """Answer to the storefront after initiation."""
    success: bool
    transaction_id: str
    payment_url: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class CheckoutService:
    """
    Creates payments for storefront orders.

    The gateway redirect points back at redirect_url with the merchant
    transaction id appended, which is all the pull path trusts.
    """

    def __init__(
        self,
        ledger: OrderLedger,
        gateway: GatewayClient,
        merchant_id: str,
        redirect_url: str
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.merchant_id = merchant_id
        self.redirect_url = redirect_url
        self._initiations = KeyedLocks()

    def build_request(self, order_data: Dict[str, Any], amount: int) -> PaymentRequest:
        transaction_id = str(order_data["orderID"])
        phone = str(order_data["phone"])
        return PaymentRequest(
            merchant_id=self.merchant_id,
            transaction_id=transaction_id,
            payer_id=f"USER_{phone}",
            amount=amount,
            callback_url=self.redirect_url,
            redirect_url=f"{self.redirect_url}?merchantTransactionId={transaction_id}",
            mobile_number=phone,
        )

    async def _initiate(self, order_data: Dict[str, Any], transaction_id: str, amount: int) -> GatewayResult:
        """Duplicate check, gateway initiation and PENDING record. Caller holds the orderID lock."""
        if await self.ledger.get(transaction_id) is not None:
            raise DuplicateTransactionError(
                f"Order {transaction_id} already exists",
                {"transaction_id": transaction_id}
            )

        request = self.build_request(order_data, amount)
        logger.info(f"[CREATE PAYMENT] {transaction_id}: amount={amount}, payer={request.payer_id}")

        result = await self.gateway.initiate(request)

        customer = {k: v for k, v in order_data.items() if k not in ("orderID", "totalAmount")}
        await self.ledger.create(
            request,
            initial_result=result,
            customer=customer,
            display_amount=str(order_data["totalAmount"]),
        )
        return result

    async def create_payment(self, order_data: Optional[Dict[str, Any]]) -> CheckoutResult:
        """
        Initiate payment for one order.

        Args:
            order_data: Storefront order (orderID, totalAmount, phone, name, ...)

        Returns:
            CheckoutResult with the hosted pay page URL on success

        Raises:
            OrderValidationError: mandatory field missing or orderID unusable
            InvalidAmountError: totalAmount not a positive amount
            DuplicateTransactionError: orderID already recorded
            GatewayUnavailableError: gateway unreachable; nothing recorded
        """
        if not isinstance(order_data, dict):
            raise OrderValidationError(
                "Missing mandatory order details (orderID, totalAmount, phone, or name).",
                {"missing": list(MANDATORY_ORDER_FIELDS)}
            )

        missing = [f for f in MANDATORY_ORDER_FIELDS if order_data.get(f) in (None, "")]
        if missing:
            logger.error(f"[VALIDATION ERROR] Missing mandatory order data: {missing}")
            raise OrderValidationError(
                "Missing mandatory order details (orderID, totalAmount, phone, or name).",
                {"missing": missing}
            )

        transaction_id = str(order_data["orderID"])
        if not is_valid_transaction_id(transaction_id):
            raise OrderValidationError(
                "orderID may only contain letters, digits, '-' and '_' (max 64).",
                {"orderID": transaction_id}
            )

        amount = to_minor_units(order_data["totalAmount"])

        async with self._initiations.hold(transaction_id):
            result = await self._initiate(order_data, transaction_id, amount)

        if result.success and result.redirect_url:
            logger.info(f"[SUCCESS] Payment URL generated for {transaction_id}")
            return CheckoutResult(
                success=True,
                transaction_id=transaction_id,
                payment_url=result.redirect_url,
                code=result.code,
                message=result.message,
                raw=result.raw,
            )

        logger.error(f"[PHONEPE ERROR] {transaction_id}: {result.message} ({result.code})")
        return CheckoutResult(
            success=False,
            transaction_id=transaction_id,
            code=result.code,
            message=result.message or "Payment creation failed. Check server logs.",
            raw=result.raw,
        )
