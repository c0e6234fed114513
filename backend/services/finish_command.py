"""
Finish-Order Command (display side)

The overdue loop stops as soon as staff press finish. Local timer state is
cleared only after the server confirms, so a failed finish can simply be
retried with the countdown intact.
"""

import logging
from typing import Optional

from services.alert_dispatcher import AlertDispatcher
from services.countdown import CountdownBoard
from services.errors import CommandError, ConnectivityError
from services.order_poller import OrderPoller

logger = logging.getLogger(__name__)


class FinishOrderCommand:
    def __init__(
        self,
        api,
        board: CountdownBoard,
        alerts: AlertDispatcher,
        poller: Optional[OrderPoller] = None,
    ):
        self.api = api
        self.board = board
        self.alerts = alerts
        self.poller = poller

    async def execute(self, order_number: int) -> dict:
        """
        Raises:
            CommandError: the server did not finish the order; nothing local changed
                except the silenced alert loop
        """
        key = str(order_number)
        await self.alerts.stop_loop(key)

        try:
            result = await self.api.finish_order(order_number)
        except CommandError as e:
            logger.error(f"Finish order {key} rejected: {e.message}")
            raise
        except ConnectivityError as e:
            logger.error(f"Finish order {key} failed: {e}")
            raise CommandError(str(e)) from e

        self.board.teardown(key)
        await self.alerts.finish(key)
        logger.info(f"Order {key} finished")

        if self.poller is not None:
            await self.poller.refresh_now()
        return result
