"""
Pydantic Payment Models

Orders, gateway answers and reconciliation outcomes.
All monetary values on the gateway side are in paise (minor units).
"""
import enum
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from ..exceptions import InvalidAmountError


# ============================================================================
# Status Vocabulary
# ============================================================================

class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class OutcomeSource(str, enum.Enum):
    CALLBACK = "CALLBACK"  # signed server-to-server push
    POLL = "POLL"  # authenticated status query


class ObservationDisposition(str, enum.Enum):
    APPLIED = "APPLIED"
    REFRESHED = "REFRESHED"
    DUPLICATE = "DUPLICATE"
    CONFLICT = "CONFLICT"


PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
PAYMENT_PENDING = "PAYMENT_PENDING"
PAYMENT_ERROR = "PAYMENT_ERROR"

# Merchant transaction ids become part of the signed status endpoint path
TRANSACTION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def is_valid_transaction_id(value: Any) -> bool:
    return isinstance(value, str) and TRANSACTION_ID_PATTERN.fullmatch(value) is not None


def resolve_status(code: Optional[str]) -> OrderStatus:
    """
    Map a gateway code onto an order status.

    Total over the code space and fail closed: only PAYMENT_SUCCESS can
    produce PAID, and unknown or missing codes produce FAILED.
    """
    if code == PAYMENT_SUCCESS:
        return OrderStatus.PAID
    if code == PAYMENT_PENDING:
        return OrderStatus.PENDING
    return OrderStatus.FAILED


def to_minor_units(value: Any) -> int:
    """
    Convert a decimal currency amount to minor units.

    Fixed point: Decimal(str(value)) * 100 rounded half-up. Floats are
    stringified first so 499.0 and "499.00" both give 49900.

    Raises:
        InvalidAmountError: value is not numeric, not finite or rounds to <= 0
    """
    if isinstance(value, bool) or value is None:
        raise InvalidAmountError("Invalid amount value.", {"amount": value})
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError("Invalid amount value.", {"amount": value})
    if not amount.is_finite():
        raise InvalidAmountError("Invalid amount value.", {"amount": value})

    minor = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if minor <= 0:
        raise InvalidAmountError("Invalid amount value.", {"amount": value})
    return minor


# ============================================================================
# Outbound Request
# ============================================================================

class PaymentRequest(BaseModel):
    """
    Pay-page initiation request, built once per order.

    Serialized with to_gateway_payload(), base64 encoded and signed before
    it leaves the process.
    """
    merchant_id: str
    transaction_id: str = Field(min_length=1)
    payer_id: str
    amount: int = Field(gt=0, description="Amount in minor units")
    callback_url: str
    redirect_url: str
    redirect_mode: str = "POST"
    mobile_number: Optional[str] = None
    instrument_hint: str = "PAY_PAGE"

    model_config = {"frozen": True}

    def to_gateway_payload(self) -> Dict[str, Any]:
        payload = {
            "merchantId": self.merchant_id,
            "merchantTransactionId": self.transaction_id,
            "merchantUserId": self.payer_id,
            "amount": self.amount,
            "redirectUrl": self.redirect_url,
            "redirectMode": self.redirect_mode,
            "callbackUrl": self.callback_url,
            "paymentInstrument": {"type": self.instrument_hint},
        }
        if self.mobile_number:
            payload["mobileNumber"] = self.mobile_number
        return payload


class SignedEnvelope(BaseModel):
    """
    Base64 payload together with its parsed X-VERIFY checksum.

    Built and checked on demand, never persisted.
    """
    payload: str
    digest: str
    key_index: str

    model_config = {"frozen": True}


# ============================================================================
# Gateway Answers and Outcomes
# ============================================================================

class GatewayResult(BaseModel):
    """Normalized gateway answer for both initiation and status queries."""
    success: bool
    code: Optional[str] = None
    message: Optional[str] = None
    redirect_url: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    merchant_transaction_id: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class PaymentOutcome(BaseModel):
    """
    Outcome observed on one reconciliation path.

    Immutable once built; only ever compared against ledger state.
    """
    transaction_id: str
    code: str
    gateway_transaction_id: Optional[str] = None
    source: OutcomeSource
    observed_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = {"frozen": True}

    @property
    def status(self) -> OrderStatus:
        return resolve_status(self.code)


# ============================================================================
# Ledger Records
# ============================================================================

class OrderRecord(BaseModel):
    """
    Ledger entry for one merchant transaction.

    Created PENDING at initiation; status changes only through an accepted
    PaymentOutcome and is terminal once PAID or FAILED.
    """
    transaction_id: str
    customer: Dict[str, Any] = Field(default_factory=dict)
    amount: int = Field(gt=0, description="Amount in minor units")
    display_amount: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    gateway_transaction_id: Optional[str] = None
    last_outcome_code: Optional[str] = None
    initiation: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def to_public_dict(self) -> Dict[str, Any]:
        """Order shape returned by the HTTP API and mirrored to sinks."""
        return {
            **self.customer,
            "orderID": self.transaction_id,
            "totalAmount": self.display_amount,
            "amount": self.amount,
            "status": self.status.value,
            "phonepeTransactionId": self.gateway_transaction_id,
            "paymentCode": self.last_outcome_code,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


class OrderObservation(BaseModel):
    """Audit entry written for every outcome the ledger is handed."""
    transaction_id: str
    code: str
    status: OrderStatus
    source: OutcomeSource
    gateway_transaction_id: Optional[str] = None
    observed_at: datetime
    disposition: ObservationDisposition

    @classmethod
    def from_outcome(
        cls,
        outcome: PaymentOutcome,
        disposition: ObservationDisposition
    ) -> "OrderObservation":
        return cls(
            transaction_id=outcome.transaction_id,
            code=outcome.code,
            status=outcome.status,
            source=outcome.source,
            gateway_transaction_id=outcome.gateway_transaction_id,
            observed_at=outcome.observed_at,
            disposition=disposition,
        )
