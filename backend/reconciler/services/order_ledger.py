"""
Order Ledger

Idempotent order state store keyed by merchant transaction id.

Transition Rules:
- PENDING -> PAID | FAILED on an accepted outcome
- PAID and FAILED are terminal; re-applying the same status is a no-op
- A different status against a terminal record is a conflict: the first
  terminal result is kept and the observation is recorded for audit
- PENDING against PENDING only refreshes updated_at

Concurrency:
- create / apply_outcome for one transaction id run under a per-id lock
- different ids never wait on each other
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from ..exceptions import DuplicateTransactionError, OrderNotFoundError
from ..models.payments import (
    GatewayResult,
    ObservationDisposition,
    OrderObservation,
    OrderRecord,
    OrderStatus,
    PaymentOutcome,
    PaymentRequest,
)
from .order_store import OrderStore
from .outcome_sinks import OutcomeFanout

logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    One asyncio.Lock per key, dropped once no task holds or awaits it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class OrderLedger:
    """
    Sole owner of OrderRecord state.

    Every mutation goes through create() or apply_outcome(); sinks are told
    about new orders and applied transitions after the store write.
    """

    def __init__(self, store: OrderStore, fanout: Optional[OutcomeFanout] = None):
        self._store = store
        self._fanout = fanout
        self._locks = KeyedLocks()

    async def create(
        self,
        request: PaymentRequest,
        initial_result: Optional[GatewayResult] = None,
        customer: Optional[Dict[str, Any]] = None,
        display_amount: Optional[str] = None
    ) -> OrderRecord:
        """
        Record a new PENDING order.

        Args:
            request: Payment request sent to the gateway
            initial_result: Gateway's answer to the initiation call
            customer: Remaining order fields (name, phone, items, ...)
            display_amount: Amount as the customer submitted it

        Raises:
            DuplicateTransactionError: transaction id already recorded
        """
        async with self._locks.hold(request.transaction_id):
            if await self._store.get(request.transaction_id) is not None:
                raise DuplicateTransactionError(
                    f"Order {request.transaction_id} already exists",
                    {"transaction_id": request.transaction_id}
                )

            now = datetime.utcnow()
            record = OrderRecord(
                transaction_id=request.transaction_id,
                customer=customer or {},
                amount=request.amount,
                display_amount=display_amount,
                status=OrderStatus.PENDING,
                initiation=initial_result.raw if initial_result else {},
                created_at=now,
                updated_at=now,
            )
            await self._store.insert(record)

        logger.info(f"[ORDER CREATED] {record.transaction_id} amount={record.amount} PENDING")
        self._notify(record, "created")
        return record

    async def apply_outcome(self, outcome: PaymentOutcome) -> OrderRecord:
        """
        Apply an outcome to its order.

        Returns:
            The order after the transition. For duplicates and conflicts this
            is the unchanged stored record.

        Raises:
            OrderNotFoundError: no order for outcome.transaction_id
        """
        incoming = outcome.status

        async with self._locks.hold(outcome.transaction_id):
            record = await self._store.get(outcome.transaction_id)
            if record is None:
                logger.error(f"[ORDER NOT FOUND] {outcome.transaction_id}")
                raise OrderNotFoundError(
                    f"Order {outcome.transaction_id} not found",
                    {"transaction_id": outcome.transaction_id}
                )

            if record.status.is_terminal:
                if incoming is record.status:
                    disposition = ObservationDisposition.DUPLICATE
                else:
                    disposition = ObservationDisposition.CONFLICT
            elif incoming is OrderStatus.PENDING:
                disposition = ObservationDisposition.REFRESHED
                record = record.model_copy(update={
                    "updated_at": max(record.updated_at, outcome.observed_at)
                })
                await self._store.save(record)
            else:
                disposition = ObservationDisposition.APPLIED
                record = record.model_copy(update={
                    "status": incoming,
                    "gateway_transaction_id": outcome.gateway_transaction_id,
                    "last_outcome_code": outcome.code,
                    "updated_at": outcome.observed_at,
                })
                await self._store.save(record)

            await self._store.add_observation(
                OrderObservation.from_outcome(outcome, disposition)
            )

        if disposition is ObservationDisposition.APPLIED:
            logger.info(
                f"[ORDER UPDATED] {record.transaction_id} -> {record.status.value} "
                f"(code={outcome.code}, source={outcome.source.value})"
            )
            self._notify(record, "updated")
        elif disposition is ObservationDisposition.CONFLICT:
            logger.warning(
                f"[ORDER CONFLICT] {record.transaction_id} is {record.status.value}; "
                f"ignored {incoming.value} (code={outcome.code}, "
                f"source={outcome.source.value}, gateway_txn={outcome.gateway_transaction_id})"
            )
        else:
            logger.debug(
                f"[ORDER {disposition.value}] {record.transaction_id} stays {record.status.value}"
            )

        return record

    async def get(self, transaction_id: str) -> Optional[OrderRecord]:
        return await self._store.get(transaction_id)

    async def require(self, transaction_id: str) -> OrderRecord:
        """
        Get an order or raise.

        Raises:
            OrderNotFoundError: no order for transaction_id
        """
        record = await self._store.get(transaction_id)
        if record is None:
            raise OrderNotFoundError(
                f"Order {transaction_id} not found",
                {"transaction_id": transaction_id}
            )
        return record

    async def list_orders(self) -> List[OrderRecord]:
        """All orders, newest first."""
        return await self._store.list_all()

    async def list_pending(self, updated_before: datetime) -> List[OrderRecord]:
        return await self._store.list_pending(updated_before)

    async def observations(self, transaction_id: str) -> List[OrderObservation]:
        return await self._store.list_observations(transaction_id)

    def _notify(self, record: OrderRecord, event: str) -> None:
        if self._fanout is not None:
            self._fanout.notify(record, event)
