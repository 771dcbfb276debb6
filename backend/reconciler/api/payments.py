"""
Payments API Endpoints

Payment creation, gateway callback/redirect handling and client status checks.

Reconciliation Notes:
- /payment-callback with a "response" field is the signed push path
- /payment-callback with only a transaction id is the pull path; the
  status it carries is never applied
- /check-payment only re-queries the gateway for PENDING orders
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel

from ..services.reconciliation_service import ReconciliationResult, RejectionReason
from ..services.service_factory import ReconcilerServices
from .dependencies import get_services
from .pages import error_page, outcome_page

logger = logging.getLogger(__name__)

router = APIRouter()

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


class CreatePaymentRequest(BaseModel):
    """Body of POST /create-payment."""
    orderData: Optional[Dict[str, Any]] = None


@router.post("/create-payment")
async def create_payment_endpoint(
    payload: Optional[CreatePaymentRequest] = None,
    services: ReconcilerServices = Depends(get_services)
) -> Dict[str, Any]:
    """
    Initiate payment for a storefront order.

    Request Body:
        {"orderData": {"orderID", "totalAmount", "phone", "name", ...}}

    Returns:
        {"success": true, "paymentUrl": str, "merchantTransactionId": str}
        or {"success": false, "message": str, "code": str, "data": {...}}
        when the gateway declined the initiation.

    Errors:
        400 missing fields / invalid amount, 409 duplicate orderID,
        503 gateway unreachable (nothing recorded)

    Example:
        POST /create-payment
        {"orderData": {"orderID": "ORD1", "totalAmount": "499.00", "phone": "9999999999", "name": "A"}}
    """
    order_data = payload.orderData if payload else None
    result = await services.checkout.create_payment(order_data)

    if result.success:
        return {
            "success": True,
            "paymentUrl": result.payment_url,
            "merchantTransactionId": result.transaction_id,
        }

    return {
        "success": False,
        "message": result.message,
        "code": result.code,
        "data": result.raw,
    }


async def _collect_callback_params(request: Request) -> Dict[str, Any]:
    """Query string merged with a JSON or form body."""
    params: Dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return params

    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            logger.warning("[CALLBACK] Unparseable JSON body ignored")
            body = None
        if isinstance(body, dict):
            params.update(body)
    elif content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})

    return params


def _callback_response(result: ReconciliationResult, frontend_url: str) -> HTMLResponse:
    if result.reason in (RejectionReason.MISSING_SIGNATURE, RejectionReason.INVALID_SIGNATURE):
        return HTMLResponse(error_page("Invalid Checksum"), status_code=400)
    if result.reason is RejectionReason.MALFORMED_PAYLOAD:
        return HTMLResponse(error_page("Callback Error: Malformed payment data."), status_code=400)
    if result.reason is RejectionReason.ORDER_NOT_FOUND:
        return HTMLResponse(error_page("Order Not Found in server records."))

    return HTMLResponse(
        outcome_page(result.verdict, result.transaction_id, result.record, frontend_url)
    )


@router.api_route("/payment-callback", methods=["GET", "POST"], response_class=HTMLResponse)
async def payment_callback_endpoint(
    request: Request,
    services: ReconcilerServices = Depends(get_services)
) -> HTMLResponse:
    """
    Gateway callback and browser redirect target.

    Server-to-server:
        POST {"response": <base64>} with X-VERIFY header

    Browser redirect:
        GET|POST ?merchantTransactionId=<id> (or txnId); status re-derived
        from the gateway

    Returns:
        HTML outcome page (paid / pending / failed); 400 for a missing or
        invalid checksum, malformed payload or no transaction data
    """
    params = await _collect_callback_params(request)
    logger.info(f"[CALLBACK RECEIVED] {request.method} keys={sorted(params)}")

    frontend_url = services.settings.frontend_url
    response_payload = params.get("response")

    if response_payload:
        result = await services.protocol.handle_callback(
            response_payload,
            request.headers.get("x-verify")
        )
    elif params.get("merchantTransactionId") or params.get("txnId"):
        transaction_id = params.get("merchantTransactionId") or params.get("txnId")
        result = await services.protocol.handle_redirect(
            str(transaction_id),
            claimed_code=params.get("code")
        )
    else:
        logger.error("[CALLBACK ERROR] No transaction data received")
        return HTMLResponse(
            error_page("Callback Error: No transaction data received."),
            status_code=400
        )

    logger.info(
        f"[CALLBACK RESULT] {result.transaction_id}: state={result.state.value}, "
        f"reason={result.reason.value if result.reason else None}, verdict={result.verdict.value}"
    )
    return _callback_response(result, frontend_url)


@router.get("/check-payment/{order_id}")
async def check_payment_endpoint(
    order_id: str,
    services: ReconcilerServices = Depends(get_services)
) -> Dict[str, Any]:
    """
    Client-side status check.

    Path Parameters:
        order_id: Merchant transaction id (orderID)

    Returns:
        {"success": true, "status": str, "order": {...}}; adds
        "verification": "unavailable" when a PENDING order could not be
        re-checked with the gateway.
        {"success": false, "message": "Order not found"} for unknown ids.

    Example:
        GET /check-payment/ORD1
    """
    result = await services.protocol.refresh(order_id)

    if result.record is None:
        return {"success": False, "message": "Order not found"}

    response = {
        "success": True,
        "status": result.record.status.value,
        "order": result.record.to_public_dict(),
    }
    if result.reason is RejectionReason.VERIFICATION_FAILED:
        response["verification"] = "unavailable"
    return response
