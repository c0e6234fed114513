"""
Poll/Refresh Orchestrator

Fetches the active tickets for the selected categories every few seconds and
whenever something asks for a refresh (SSE push, focus, after a finish).

Every request is numbered. A response is applied only if it is newer than the
last applied one, and it is diffed against the order set as it stands when
the response arrives:

    new     = current - previous   -> one new-order announcement per batch
    removed = previous - current   -> countdown and alert loop torn down

Failures move the connection to "degraded" and push the next attempt out with
exponential backoff and jitter. After MAX_CONSECUTIVE_FAILURES the poller
gives up ("disconnected") until resume() is called.
"""

import enum
import logging
import random
import time
from typing import Callable, Optional

from services.alert_dispatcher import AlertDispatcher
from services.countdown import CountdownBoard
from services.errors import ConnectivityError
from services.order_grouping import KitchenTicket
from services.sound_settings import DisplaySettings

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 5
MAX_CONSECUTIVE_FAILURES = 5
BACKOFF_BASE_SECONDS = 2.0
BACKOFF_MAX_SECONDS = 60.0


class ConnectionStatus(str, enum.Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"


class OrderPoller:
    def __init__(
        self,
        api,
        board: CountdownBoard,
        alerts: AlertDispatcher,
        settings: DisplaySettings,
        clock: Callable[[], float] = time.monotonic,
        on_status_change: Optional[Callable[[ConnectionStatus], None]] = None,
    ):
        self.api = api
        self.board = board
        self.alerts = alerts
        self.settings = settings
        self.clock = clock
        self.on_status_change = on_status_change

        self.tickets: list[KitchenTicket] = []
        self.previous: set[str] = set()
        self.status = ConnectionStatus.CONNECTED
        self.consecutive_failures = 0
        self.next_attempt_at = 0.0
        self.last_error: Optional[str] = None

        self._issued_seq = 0
        self._applied_seq = 0

    def _set_status(self, status: ConnectionStatus):
        if status == self.status:
            return
        logger.info(f"Connection status: {self.status.value} -> {status.value}")
        self.status = status
        if self.on_status_change:
            self.on_status_change(status)

    # ========== Entry points ==========

    async def poll(self) -> bool:
        """Scheduled poll. Skipped while backing off or disconnected."""
        if self.status == ConnectionStatus.DISCONNECTED:
            return False
        if self.clock() < self.next_attempt_at:
            logger.debug("Backing off, skipping scheduled poll")
            return False
        return await self.refresh_now()

    async def refresh_now(self) -> bool:
        """Fetch and apply immediately. Returns True if the response was applied."""
        self._issued_seq += 1
        seq = self._issued_seq

        categories = self.settings.selected_categories
        if not categories:
            return await self.apply(seq, [])

        try:
            tickets = await self.api.get_orders(categories)
        except ConnectivityError as e:
            self._record_failure(seq, e)
            return False
        return await self.apply(seq, tickets)

    async def resume(self) -> bool:
        """Manual reconnect after the poller gave up."""
        logger.info("Resuming order polling")
        self.consecutive_failures = 0
        self.next_attempt_at = 0.0
        self._set_status(ConnectionStatus.DEGRADED)
        return await self.refresh_now()

    # ========== Reconciliation ==========

    async def apply(self, seq: int, tickets: list[KitchenTicket]) -> bool:
        if seq <= self._applied_seq:
            logger.debug(f"Discarding stale response #{seq} (already applied #{self._applied_seq})")
            return False
        self._applied_seq = seq

        current = {str(ticket.order_number) for ticket in tickets}
        arrived = current - self.previous
        removed = self.previous - current
        self.previous = current
        self.tickets = tickets
        self._record_success()

        for key in sorted(removed):
            self.board.teardown(key)
            await self.alerts.teardown(key)
        if removed:
            logger.info(f"Orders left the board: {', '.join(sorted(removed))}")

        self.board.sync(tickets)

        if arrived:
            await self.alerts.announce_new_orders(
                str(ticket.order_number) for ticket in tickets if str(ticket.order_number) in arrived
            )
        return True

    def _record_success(self):
        self.consecutive_failures = 0
        self.next_attempt_at = 0.0
        self.last_error = None
        self._set_status(ConnectionStatus.CONNECTED)

    def _record_failure(self, seq: int, error: Exception):
        if seq < self._applied_seq:
            # A newer request already succeeded
            return
        self.consecutive_failures += 1
        self.last_error = str(error)

        if self.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            logger.error(f"Order poll failed {self.consecutive_failures} times, giving up until reconnect: {error}")
            self._set_status(ConnectionStatus.DISCONNECTED)
            return

        delay = min(BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * 2 ** (self.consecutive_failures - 1))
        delay += random.uniform(0, BACKOFF_BASE_SECONDS)
        self.next_attempt_at = self.clock() + delay
        logger.warning(f"Order poll failed ({error}), next attempt in {delay:.1f}s")
        self._set_status(ConnectionStatus.DEGRADED)
