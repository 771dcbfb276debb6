"""
Outcome Sink Fan-out

Best-effort notification of order changes to external collaborators:
- JsonSnapshotSink: rewrites the orders.json snapshot file
- SpreadsheetSink: posts to the Google Sheets web app mirror

notify() schedules deliveries on the running event loop and returns at once.
Sink failures are logged and never reach the caller.
"""
import abc
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx

from ..models.payments import OrderRecord

logger = logging.getLogger(__name__)

EVENT_CREATED = "created"
EVENT_UPDATED = "updated"


class OutcomeSink(abc.ABC):
    """A collaborator that wants to hear about order changes."""

    name: str = "sink"

    @abc.abstractmethod
    async def send(self, event: str, record: OrderRecord) -> None:
        """Deliver one change. May raise; the fan-out logs and drops errors."""


class OutcomeFanout:
    """
    Dispatches each change to every registered sink as a detached task.

    Deliveries never share backpressure with the request path: notify() does
    not await anything.
    """

    def __init__(self, sinks: Optional[List[OutcomeSink]] = None):
        self._sinks: List[OutcomeSink] = list(sinks or [])
        self._tasks: Set[asyncio.Task] = set()

    def register(self, sink: OutcomeSink) -> None:
        self._sinks.append(sink)

    @property
    def sinks(self) -> List[OutcomeSink]:
        return list(self._sinks)

    def notify(self, record: OrderRecord, event: str = EVENT_UPDATED) -> None:
        """
        Schedule delivery of a change to all sinks.

        Args:
            record: Order state after the change
            event: "created" or "updated"
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; dropping {event} notification for {record.transaction_id}")
            return

        for sink in self._sinks:
            task = loop.create_task(self._deliver(sink, event, record))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, sink: OutcomeSink, event: str, record: OrderRecord) -> None:
        try:
            await sink.send(event, record)
        except Exception as e:
            logger.error(
                f"[SINK ERROR] {sink.name} failed on {event} for {record.transaction_id}: {e}",
                exc_info=True
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)


# ============================================================================
# JSON Snapshot
# ============================================================================

class JsonSnapshotSink(OutcomeSink):
    """
    Writes every order to a JSON file on each change.

    The file write runs in a worker thread; a lock keeps snapshots ordered.
    """

    name = "json_snapshot"

    def __init__(
        self,
        path: str,
        load_orders: Callable[[], Awaitable[List[OrderRecord]]]
    ):
        """
        Args:
            path: Snapshot file path (orders.json)
            load_orders: Coroutine function returning all orders
        """
        self.path = Path(path)
        self._load_orders = load_orders
        self._lock = asyncio.Lock()

    async def send(self, event: str, record: OrderRecord) -> None:
        async with self._lock:
            orders = await self._load_orders()
            document = [order.to_public_dict() for order in orders]
            await asyncio.to_thread(self._write, document)
        logger.debug(f"Snapshot written to {self.path} ({len(document)} orders)")

    def _write(self, document: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2, default=str), encoding="utf-8")
        tmp_path.replace(self.path)


# ============================================================================
# Spreadsheet Mirror
# ============================================================================

class SpreadsheetSink(OutcomeSink):
    """
    Mirrors orders to a Google Apps Script web app.

    created -> full order document
    updated -> {action: update, orderId, status, paymentId, updatedAt}
    """

    name = "spreadsheet"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.url = url
        self.timeout = timeout
        self._client = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.url) and "YOUR_DEPLOYMENT_ID" not in self.url

    @staticmethod
    def build_body(event: str, record: OrderRecord) -> Dict[str, Any]:
        if event == EVENT_CREATED:
            return record.to_public_dict()
        return {
            "action": "update",
            "orderId": record.transaction_id,
            "status": record.status.value,
            "paymentId": record.gateway_transaction_id or "",
            "updatedAt": datetime.utcnow().isoformat(),
        }

    async def send(self, event: str, record: OrderRecord) -> None:
        if not self.enabled:
            logger.debug("[GOOGLE SHEETS] Placeholder URL, skipping.")
            return

        body = self.build_body(event, record)
        if self._client is not None:
            response = await self._client.post(self.url, json=body, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=body)

        response.raise_for_status()
        logger.info(f"[GOOGLE SHEETS] {event} mirrored for {record.transaction_id}")
