"""
Order Store

Persistence collaborator behind the order ledger. The ledger owns locking
and transition rules; a store only reads and writes whole records.

Implementations:
- InMemoryOrderStore: process-local dicts (tests, LEDGER_BACKEND=memory)
- SqlAlchemyOrderStore: SQLite through async SQLAlchemy (default)

Durability is last-write-wins for both.
"""
import abc
import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..db.models import OrderModel, OrderObservationModel
from ..models.payments import (
    ObservationDisposition,
    OrderObservation,
    OrderRecord,
    OrderStatus,
    OutcomeSource,
)

logger = logging.getLogger(__name__)


class OrderStore(abc.ABC):
    """Key-value ledger storage keyed by merchant transaction id."""

    @abc.abstractmethod
    async def get(self, transaction_id: str) -> Optional[OrderRecord]:
        ...

    @abc.abstractmethod
    async def insert(self, record: OrderRecord) -> None:
        ...

    @abc.abstractmethod
    async def save(self, record: OrderRecord) -> None:
        ...

    @abc.abstractmethod
    async def list_all(self) -> List[OrderRecord]:
        """All records, newest first."""

    @abc.abstractmethod
    async def list_pending(self, updated_before: datetime) -> List[OrderRecord]:
        """PENDING records last touched before the cutoff, oldest first."""

    @abc.abstractmethod
    async def add_observation(self, observation: OrderObservation) -> None:
        ...

    @abc.abstractmethod
    async def list_observations(self, transaction_id: str) -> List[OrderObservation]:
        """Observations for one order in arrival order."""


# ============================================================================
# In-Memory Store
# ============================================================================

class InMemoryOrderStore(OrderStore):

    def __init__(self):
        self._orders: Dict[str, OrderRecord] = {}
        self._observations: Dict[str, List[OrderObservation]] = {}

    async def get(self, transaction_id: str) -> Optional[OrderRecord]:
        record = self._orders.get(transaction_id)
        return record.model_copy(deep=True) if record else None

    async def insert(self, record: OrderRecord) -> None:
        self._orders[record.transaction_id] = record.model_copy(deep=True)

    async def save(self, record: OrderRecord) -> None:
        self._orders[record.transaction_id] = record.model_copy(deep=True)

    async def list_all(self) -> List[OrderRecord]:
        records = sorted(self._orders.values(), key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records]

    async def list_pending(self, updated_before: datetime) -> List[OrderRecord]:
        records = [
            r for r in self._orders.values()
            if r.status is OrderStatus.PENDING and r.updated_at < updated_before
        ]
        records.sort(key=lambda r: r.updated_at)
        return [r.model_copy(deep=True) for r in records]

    async def add_observation(self, observation: OrderObservation) -> None:
        self._observations.setdefault(observation.transaction_id, []).append(observation)

    async def list_observations(self, transaction_id: str) -> List[OrderObservation]:
        return list(self._observations.get(transaction_id, []))


# ============================================================================
# SQLAlchemy Store
# ============================================================================

def _to_record(row: OrderModel) -> OrderRecord:
    return OrderRecord(
        transaction_id=row.transaction_id,
        customer=json.loads(row.customer_data) if row.customer_data else {},
        amount=row.amount,
        display_amount=row.display_amount,
        status=OrderStatus(row.status),
        gateway_transaction_id=row.gateway_transaction_id,
        last_outcome_code=row.last_outcome_code,
        initiation=json.loads(row.initiation_data) if row.initiation_data else {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_observation(row: OrderObservationModel) -> OrderObservation:
    return OrderObservation(
        transaction_id=row.transaction_id,
        code=row.code,
        status=OrderStatus(row.status),
        source=OutcomeSource(row.source),
        gateway_transaction_id=row.gateway_transaction_id,
        observed_at=row.observed_at,
        disposition=ObservationDisposition(row.disposition),
    )


class SqlAlchemyOrderStore(OrderStore):
    """
    Order storage in the orders / order_observations tables.

    Each call runs in its own session and commits before returning.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def get(self, transaction_id: str) -> Optional[OrderRecord]:
        async with self._session_factory() as db:
            row = await db.get(OrderModel, transaction_id)
            return _to_record(row) if row else None

    async def insert(self, record: OrderRecord) -> None:
        async with self._session_factory() as db:
            db.add(OrderModel(
                transaction_id=record.transaction_id,
                customer_data=json.dumps(record.customer, default=str),
                amount=record.amount,
                display_amount=record.display_amount,
                status=record.status.value,
                gateway_transaction_id=record.gateway_transaction_id,
                last_outcome_code=record.last_outcome_code,
                initiation_data=json.dumps(record.initiation, default=str),
                created_at=record.created_at,
                updated_at=record.updated_at,
            ))
            await db.commit()
        logger.debug(f"Inserted order row: {record.transaction_id}")

    async def save(self, record: OrderRecord) -> None:
        async with self._session_factory() as db:
            row = await db.get(OrderModel, record.transaction_id)
            if row is None:
                logger.warning(f"Save for unknown order {record.transaction_id}; inserting")
                await self.insert(record)
                return

            row.status = record.status.value
            row.gateway_transaction_id = record.gateway_transaction_id
            row.last_outcome_code = record.last_outcome_code
            row.updated_at = record.updated_at
            await db.commit()

    async def list_all(self) -> List[OrderRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderModel).order_by(OrderModel.created_at.desc())
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def list_pending(self, updated_before: datetime) -> List[OrderRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderModel)
                .where(OrderModel.status == OrderStatus.PENDING.value)
                .where(OrderModel.updated_at < updated_before)
                .order_by(OrderModel.updated_at.asc())
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def add_observation(self, observation: OrderObservation) -> None:
        async with self._session_factory() as db:
            db.add(OrderObservationModel(
                transaction_id=observation.transaction_id,
                code=observation.code,
                status=observation.status.value,
                source=observation.source.value,
                gateway_transaction_id=observation.gateway_transaction_id,
                observed_at=observation.observed_at,
                disposition=observation.disposition.value,
            ))
            await db.commit()

    async def list_observations(self, transaction_id: str) -> List[OrderObservation]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderObservationModel)
                .where(OrderObservationModel.transaction_id == transaction_id)
                .order_by(OrderObservationModel.id.asc())
            )
            return [_to_observation(row) for row in result.scalars().all()]
