"""
Service Factory

Builds the reconciler's service graph from Settings.

Storage backend is chosen by LEDGER_BACKEND:
- "sqlite" (default): SqlAlchemyOrderStore on DATABASE_PATH
- "memory": InMemoryOrderStore (dev/tests, lost on restart)
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from ..config import Settings
from ..db.init_db import create_engine_for, create_session_factory, initialize_database
from .checkout_service import CheckoutService
from .gateway_client import GatewayClient
from .order_ledger import OrderLedger
from .order_store import InMemoryOrderStore, OrderStore, SqlAlchemyOrderStore
from .outcome_sinks import JsonSnapshotSink, OutcomeFanout, OutcomeSink, SpreadsheetSink
from .reconciliation_service import ReconciliationProtocol
from .scheduler import PendingSweepScheduler

logger = logging.getLogger(__name__)


@dataclass
class ReconcilerServices:
    """Everything the HTTP layer and the lifespan need, wired together."""
    settings: Settings
    store: OrderStore
    fanout: OutcomeFanout
    ledger: OrderLedger
    gateway: GatewayClient
    protocol: ReconciliationProtocol
    checkout: CheckoutService
    sweeper: Optional[PendingSweepScheduler] = None
    engine: Optional[AsyncEngine] = None

    async def aclose(self) -> None:
        """Stop the sweep, flush sink deliveries, release connections."""
        if self.sweeper is not None:
            self.sweeper.shutdown(wait=False)
        await self.fanout.drain()
        await self.gateway.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def create_order_store(settings: Settings):
    """
    Returns:
        (store, engine); engine is None for the in-memory backend
    """
    if settings.ledger_backend == "memory":
        logger.info("Using in-memory order store")
        return InMemoryOrderStore(), None

    db_path = initialize_database(settings.database_path)
    engine = create_engine_for(str(db_path))
    logger.info(f"Using SQLite order store at {db_path}")
    return SqlAlchemyOrderStore(create_session_factory(engine)), engine


def create_services(
    settings: Settings,
    store: Optional[OrderStore] = None,
    gateway: Optional[GatewayClient] = None,
    sinks: Optional[List[OutcomeSink]] = None
) -> ReconcilerServices:
    """
    Wire the reconciler from settings.

    Args:
        settings: Application settings
        store: Override the configured order store
        gateway: Override the gateway client (tests inject a MockTransport one)
        sinks: Override the configured outcome sinks

    Example:
        services = create_services(settings)
        app.state.services = services
    """
    engine = None
    if store is None:
        store, engine = create_order_store(settings)

    fanout = OutcomeFanout()
    ledger = OrderLedger(store, fanout)

    if sinks is None:
        sinks = [JsonSnapshotSink(settings.orders_snapshot_path, ledger.list_orders)]
        spreadsheet = SpreadsheetSink(settings.google_sheets_url, timeout=settings.gateway_timeout_seconds)
        if spreadsheet.enabled:
            sinks.append(spreadsheet)
        else:
            logger.info("GOOGLE_SHEETS_URL not configured; spreadsheet mirror disabled")
    for sink in sinks:
        fanout.register(sink)

    if gateway is None:
        gateway = GatewayClient(
            base_url=settings.phonepe_base_url,
            merchant_id=settings.phonepe_merchant_id,
            salt_key=settings.phonepe_salt_key,
            salt_index=settings.phonepe_salt_index,
            timeout=settings.gateway_timeout_seconds,
        )

    protocol = ReconciliationProtocol(
        ledger,
        gateway,
        salt_key=settings.phonepe_salt_key,
        salt_index=settings.phonepe_salt_index,
    )
    checkout = CheckoutService(
        ledger,
        gateway,
        merchant_id=settings.phonepe_merchant_id,
        redirect_url=settings.redirect_url,
    )

    sweeper = None
    if settings.pending_sweep_enabled:
        sweeper = PendingSweepScheduler(
            protocol,
            interval_seconds=settings.pending_sweep_interval_seconds,
            min_age_seconds=settings.pending_sweep_min_age_seconds,
        )

    return ReconcilerServices(
        settings=settings,
        store=store,
        fanout=fanout,
        ledger=ledger,
        gateway=gateway,
        protocol=protocol,
        checkout=checkout,
        sweeper=sweeper,
        engine=engine,
    )
