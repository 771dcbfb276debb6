"""
Reconciliation Protocol

Derives one authoritative order state from two untrusted channels:

Push path (server-to-server callback):
    base64 response + X-VERIFY header. The header is mandatory and must
    verify; the decoded payload then supplies the outcome.

Pull path (browser redirect, client status checks, pending sweep):
    only a transaction id is taken from the request. The outcome always
    comes from an authenticated status query to the gateway; any status the
    redirect claims is logged and otherwise ignored.

Per event: RECEIVED -> AUTHENTICATING -> RESOLVED | REJECTED.
Both paths converge on OrderLedger.apply_outcome().
"""
import base64
import binascii
import enum
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..exceptions import (
    GatewayUnavailableError,
    MalformedPayloadError,
    OrderNotFoundError,
    SignatureInvalidError,
)
from ..models.payments import (
    OrderRecord,
    OrderStatus,
    OutcomeSource,
    PAYMENT_ERROR,
    PaymentOutcome,
    is_valid_transaction_id,
    resolve_status,
)
from .checksum_service import verify_callback
from .gateway_client import GatewayClient
from .order_ledger import OrderLedger

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("reconciler.security")


class ReconciliationState(str, enum.Enum):
    RECEIVED = "RECEIVED"
    AUTHENTICATING = "AUTHENTICATING"
    RESOLVED = "RESOLVED"
    REJECTED = "REJECTED"


class RejectionReason(str, enum.Enum):
    MISSING_SIGNATURE = "MISSING_SIGNATURE"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    MALFORMED_PAYLOAD = "MALFORMED_PAYLOAD"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"


class ReconciliationPath(str, enum.Enum):
    PUSH = "PUSH"
    PULL = "PULL"


class ReconciliationResult(BaseModel):
    """
    Final state of one inbound event.

    record is the ledger's view after the event (None when the order is
    unknown or the event was rejected before lookup).
    """
    state: ReconciliationState
    path: ReconciliationPath
    transaction_id: Optional[str] = None
    outcome: Optional[PaymentOutcome] = None
    record: Optional[OrderRecord] = None
    reason: Optional[RejectionReason] = None
    discrepancy: bool = False
    message: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.state is ReconciliationState.RESOLVED

    @property
    def verdict(self) -> OrderStatus:
        """
        What the triggering party is told: paid, pending or failed.

        Fails closed: anything short of a resolved event over a PAID or
        PENDING ledger record reads as FAILED.
        """
        if self.resolved and self.record is not None:
            return self.record.status
        return OrderStatus.FAILED


def decode_callback_payload(payload: str) -> Dict[str, Any]:
    """
    Decode a base64 callback response into its fields.

    Returns:
        {"transaction_id", "code", "gateway_transaction_id", "document"}

    Raises:
        MalformedPayloadError: not base64, not a JSON object, or missing
            code / data.merchantTransactionId
    """
    try:
        raw = base64.b64decode(payload, validate=True)
        document = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError) as e:
        raise MalformedPayloadError("Callback response is not base64 JSON", {"error": str(e)})

    if not isinstance(document, dict):
        raise MalformedPayloadError("Callback response is not a JSON object")

    data = document.get("data")
    if not isinstance(data, dict):
        raise MalformedPayloadError("Callback response has no data object")

    transaction_id = data.get("merchantTransactionId")
    code = document.get("code")
    if not is_valid_transaction_id(transaction_id):
        raise MalformedPayloadError(
            "Callback response has no valid merchantTransactionId",
            {"merchantTransactionId": transaction_id}
        )
    if not isinstance(code, str) or not code:
        raise MalformedPayloadError("Callback response has no code", {"transaction_id": transaction_id})

    gateway_transaction_id = data.get("transactionId")
    return {
        "transaction_id": transaction_id,
        "code": code,
        "gateway_transaction_id": str(gateway_transaction_id) if gateway_transaction_id is not None else None,
        "document": document,
    }


class ReconciliationProtocol:
    """
    Entry points for every event that can settle an order.

    Stateless apart from its collaborators; per-order state lives in the ledger.
    """

    def __init__(
        self,
        ledger: OrderLedger,
        gateway: GatewayClient,
        salt_key: str,
        salt_index: Optional[str] = None
    ):
        self.ledger = ledger
        self.gateway = gateway
        self._salt_key = salt_key
        self._salt_index = salt_index

    # ------------------------------------------------------------------
    # Push path
    # ------------------------------------------------------------------

    def _authenticate(self, payload: str, x_verify: Optional[str]) -> None:
        """
        Raises:
            SignatureInvalidError: header absent or checksum mismatch
        """
        if not x_verify:
            raise SignatureInvalidError(
                "X-VERIFY header missing on server-to-server callback",
                {"reason": RejectionReason.MISSING_SIGNATURE.value}
            )
        if not verify_callback(payload, x_verify, self._salt_key, self._salt_index):
            raise SignatureInvalidError(
                "Invalid checksum",
                {"reason": RejectionReason.INVALID_SIGNATURE.value}
            )

    async def handle_callback(
        self,
        payload: str,
        x_verify: Optional[str]
    ) -> ReconciliationResult:
        """
        Process a server-to-server callback.

        Args:
            payload: base64 "response" field exactly as received
            x_verify: X-VERIFY header value

        Returns:
            RESOLVED with the ledger record, or REJECTED with
            MISSING_SIGNATURE / INVALID_SIGNATURE / MALFORMED_PAYLOAD /
            ORDER_NOT_FOUND. Rejections never touch the ledger.
        """
        logger.info(f"[CALLBACK TYPE] Server-to-Server (S2S), state={ReconciliationState.RECEIVED.value}")
        logger.debug(f"[CALLBACK] state={ReconciliationState.AUTHENTICATING.value}")

        try:
            self._authenticate(payload, x_verify)
        except SignatureInvalidError as e:
            reason = RejectionReason(e.details["reason"])
            security_logger.error(f"[SECURITY ERROR] Callback rejected: {reason.value}")
            return ReconciliationResult(
                state=ReconciliationState.REJECTED,
                path=ReconciliationPath.PUSH,
                reason=reason,
                message=e.message,
            )

        try:
            fields = decode_callback_payload(payload)
        except MalformedPayloadError as e:
            logger.error(f"[CALLBACK ERROR] Malformed payload: {e.message}")
            return ReconciliationResult(
                state=ReconciliationState.REJECTED,
                path=ReconciliationPath.PUSH,
                reason=RejectionReason.MALFORMED_PAYLOAD,
                message=e.message,
            )

        logger.info(
            f"[DECODED S2S RESPONSE] {fields['transaction_id']}: code={fields['code']}, "
            f"gateway_txn={fields['gateway_transaction_id']}"
        )

        outcome = PaymentOutcome(
            transaction_id=fields["transaction_id"],
            code=fields["code"],
            gateway_transaction_id=fields["gateway_transaction_id"],
            source=OutcomeSource.CALLBACK,
        )
        return await self._converge(outcome, ReconciliationPath.PUSH)

    # ------------------------------------------------------------------
    # Pull path
    # ------------------------------------------------------------------

    async def handle_redirect(
        self,
        transaction_id: str,
        claimed_code: Optional[str] = None
    ) -> ReconciliationResult:
        """
        Process a browser redirect by re-deriving the outcome from the gateway.

        Args:
            transaction_id: Transaction id from the redirect (untrusted)
            claimed_code: Status code the redirect carried, if any. Only
                compared with the authenticated answer, never applied.

        Returns:
            RESOLVED with the ledger record, or REJECTED with
            MALFORMED_PAYLOAD / VERIFICATION_FAILED / ORDER_NOT_FOUND.
            VERIFICATION_FAILED leaves the order untouched (still PENDING).
        """
        logger.info(f"[CALLBACK TYPE] Browser Redirect for {transaction_id!r}")

        if not is_valid_transaction_id(transaction_id):
            logger.error(f"[CALLBACK ERROR] Invalid transaction id in redirect: {transaction_id!r}")
            return ReconciliationResult(
                state=ReconciliationState.REJECTED,
                path=ReconciliationPath.PULL,
                reason=RejectionReason.MALFORMED_PAYLOAD,
                message="Invalid transaction id",
            )

        result = await self._pull(transaction_id)

        if claimed_code is not None and result.outcome is not None and claimed_code != result.outcome.code:
            security_logger.warning(
                f"[SECURITY] Redirect for {transaction_id} claimed {claimed_code!r}; "
                f"gateway reports {result.outcome.code!r}"
            )
            result = result.model_copy(update={"discrepancy": True})

        return result

    async def refresh(self, transaction_id: str) -> ReconciliationResult:
        """
        Client-initiated status check.

        Terminal orders answer from the ledger without a gateway call;
        PENDING orders go through the pull path.
        """
        record = await self.ledger.get(transaction_id)
        if record is None:
            return ReconciliationResult(
                state=ReconciliationState.REJECTED,
                path=ReconciliationPath.PULL,
                transaction_id=transaction_id,
                reason=RejectionReason.ORDER_NOT_FOUND,
                message="Order not found",
            )

        if record.status.is_terminal:
            return ReconciliationResult(
                state=ReconciliationState.RESOLVED,
                path=ReconciliationPath.PULL,
                transaction_id=transaction_id,
                record=record,
            )

        logger.info(f"[CHECK STATUS] Verifying pending order: {transaction_id}")
        return await self._pull(transaction_id)

    async def sweep_pending(self, min_age: timedelta) -> List[ReconciliationResult]:
        """
        Re-query every PENDING order not touched for at least min_age.

        Runs orders one at a time; a failing order does not stop the sweep.
        """
        cutoff = datetime.utcnow() - min_age
        pending = await self.ledger.list_pending(cutoff)
        if not pending:
            return []

        logger.info(f"[PENDING SWEEP] Re-checking {len(pending)} pending order(s)")
        results = []
        for record in pending:
            results.append(await self.refresh(record.transaction_id))

        settled = sum(1 for r in results if r.record is not None and r.record.status.is_terminal)
        logger.info(f"[PENDING SWEEP] Settled {settled}/{len(results)}")
        return results

    async def _pull(self, transaction_id: str) -> ReconciliationResult:
        try:
            status = await self.gateway.query_status(transaction_id)
        except GatewayUnavailableError as e:
            logger.warning(f"[VERIFICATION FAILED] {transaction_id}: {e.message}; order left as is")
            return ReconciliationResult(
                state=ReconciliationState.REJECTED,
                path=ReconciliationPath.PULL,
                transaction_id=transaction_id,
                record=await self.ledger.get(transaction_id),
                reason=RejectionReason.VERIFICATION_FAILED,
                message=e.message,
            )

        # The code is only trusted on a successful answer
        if status.success and status.code:
            code = status.code
        else:
            code = PAYMENT_ERROR
            logger.warning(
                f"[STATUS CHECK] {transaction_id}: gateway answered without success "
                f"(code={status.code}, message={status.message})"
            )

        outcome = PaymentOutcome(
            transaction_id=transaction_id,
            code=code,
            gateway_transaction_id=status.gateway_transaction_id,
            source=OutcomeSource.POLL,
        )
        return await self._converge(outcome, ReconciliationPath.PULL)

    # ------------------------------------------------------------------
    # Convergence
    # ------------------------------------------------------------------

    async def _converge(
        self,
        outcome: PaymentOutcome,
        path: ReconciliationPath
    ) -> ReconciliationResult:
        try:
            record = await self.ledger.apply_outcome(outcome)
        except OrderNotFoundError as e:
            return ReconciliationResult(
                state=ReconciliationState.REJECTED,
                path=path,
                transaction_id=outcome.transaction_id,
                outcome=outcome,
                reason=RejectionReason.ORDER_NOT_FOUND,
                message=e.message,
            )

        discrepancy = record.status is not resolve_status(outcome.code)
        if discrepancy:
            logger.warning(
                f"[DISCREPANCY] {outcome.transaction_id}: {outcome.source.value} reported "
                f"{outcome.code}, ledger keeps {record.status.value}"
            )

        return ReconciliationResult(
            state=ReconciliationState.RESOLVED,
            path=path,
            transaction_id=outcome.transaction_id,
            outcome=outcome,
            record=record,
            discrepancy=discrepancy,
        )
