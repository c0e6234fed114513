"""
Kitchen display runtime

Runs on the kitchen screen. Polls the backend for tickets, drives the
countdowns once a second, plays alerts and accepts keypad commands:

    <order number>   finish that order
    * or m           toggle mute (clears itself after 10 seconds)
    e                enable audio after playback was blocked
    r                reconnect after the display gave up polling
    c 1,2,3          choose the categories shown on this screen
    q                quit

Configuration comes from the environment: KDS_API_URL, KDS_STATE_PATH,
KDS_PLAYER_COMMAND, KDS_CASHIER_KEY and KDS_POLL_INTERVAL_SECONDS.
"""

import asyncio
import logging
import os
import sys
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from services.alert_dispatcher import AlertDispatcher
from services.audio_player import AudioOutput, SubprocessAudioOutput
from services.countdown import CountdownBoard
from services.errors import CommandError, ConnectivityError, KDSError
from services.event_bus import ORDER_FINISHED, ORDERS_CHANGED
from services.finish_command import FinishOrderCommand
from services.kds_api_client import KDSApiClient
from services.mute_state import MuteState
from services.order_poller import POLL_INTERVAL_SECONDS, ConnectionStatus, OrderPoller
from services.sound_settings import DisplaySettings
from services.timer_store import JsonFileStore, KeyValueStore

logger = logging.getLogger(__name__)

API_URL = os.getenv("KDS_API_URL", "http://localhost:8000")
STATE_PATH = os.getenv("KDS_STATE_PATH", "kds_state.json")
CASHIER_KEY = os.getenv("KDS_CASHIER_KEY")
POLL_INTERVAL = float(os.getenv("KDS_POLL_INTERVAL_SECONDS", str(POLL_INTERVAL_SECONDS)))

EVENT_RETRY_SECONDS = 5


def render_board(rows: list[dict], status: ConnectionStatus, muted: bool, needs_interaction: bool) -> str:
    """Plain-text board for a terminal screen."""
    header = [f"KDS [{status.value.upper()}]"]
    if muted:
        header.append("MUTED")
    if needs_interaction:
        header.append("AUDIO BLOCKED - press e")
    lines = ["  ".join(header)]

    if status == ConnectionStatus.DISCONNECTED:
        lines.append("Disconnected from the server - press r to reconnect")
    elif not rows:
        lines.append("No active orders")

    for row in rows:
        marker = "!" if row["near_finish"] else " "
        lines.append(f"{marker}#{row['order_number']:<6} {row['timer']:>8}  {row['severity']:<8} {row['table'] or ''}")
        for item in row["items"]:
            lines.append(f"      {item['quantity']} x {item['name']}")
            for modifier in item["modifiers"]:
                lines.append(f"          + {modifier}")
    return "\n".join(lines)


class DisplayRuntime:
    def __init__(
        self,
        api: KDSApiClient,
        store: KeyValueStore,
        output: Optional[AudioOutput] = None,
        poll_interval: float = POLL_INTERVAL,
    ):
        self.api = api
        self.store = store
        self.poll_interval = poll_interval

        self.settings = DisplaySettings(store)
        self.mute = MuteState()
        self.alerts = AlertDispatcher(
            output or SubprocessAudioOutput(),
            self.settings,
            self.mute,
            api=api,
            sound_base_url=api.base_url,
        )
        self.board = CountdownBoard(store, on_near_finish=self._on_near_finish)
        self.poller = OrderPoller(api, self.board, self.alerts, self.settings)
        self.finish_command = FinishOrderCommand(api, self.board, self.alerts, self.poller)

        self.scheduler = AsyncIOScheduler()
        self._near_finish: set[str] = set()
        self._events_task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    def _on_near_finish(self, order_key: str, near_finish: bool):
        if near_finish and order_key not in self._near_finish:
            logger.info(f"Order {order_key} is near its deadline")
        if near_finish:
            self._near_finish.add(order_key)
        else:
            self._near_finish.discard(order_key)

    # ========== Scheduled jobs ==========

    async def tick(self):
        for order_key, threshold in self.board.tick_all():
            await self.alerts.trigger(order_key, threshold)
        self.mute.expire_if_due()
        await self.alerts.maintain()

    async def poll(self):
        await self.poller.poll()

    def render(self):
        text = render_board(
            self.board.snapshot(),
            self.poller.status,
            self.mute.muted,
            self.alerts.needs_interaction,
        )
        sys.stdout.write("\x1b[2J\x1b[H" + text + "\n")
        sys.stdout.flush()

    # ========== Server events ==========

    async def listen_events(self):
        """Refresh on pushed events; reconnect the stream after a pause when it drops."""
        while not self._stopping.is_set():
            try:
                async for event in self.api.stream_events():
                    if event.get("type") in (ORDER_FINISHED, ORDERS_CHANGED):
                        logger.debug(f"Event {event.get('type')}, refreshing orders")
                        await self.poller.refresh_now()
            except ConnectivityError as e:
                logger.warning(f"Event stream unavailable: {e}")
            await asyncio.sleep(EVENT_RETRY_SECONDS)

    # ========== Keypad ==========

    async def handle_command(self, command: str) -> bool:
        """Run one keypad command. Returns False when the display should quit."""
        command = command.strip()
        if not command:
            return True

        if command == "q":
            return False
        if command in ("*", "m"):
            self.mute.toggle()
        elif command == "e":
            await self.alerts.enable_audio()
        elif command == "r":
            await self.poller.resume()
        elif command.startswith("c "):
            try:
                codes = [int(c) for c in command[2:].split(",") if c.strip()]
            except ValueError:
                logger.warning(f"Invalid category list: {command[2:]!r}")
                return True
            self.settings.select_categories(codes)
            await self.poller.refresh_now()
        elif command.isdigit():
            try:
                await self.finish_command.execute(int(command))
            except CommandError as e:
                logger.error(f"Could not finish order {command}: {e.message}")
        else:
            logger.warning(f"Unknown command: {command!r}")
        return True

    async def read_keypad(self):
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            if not await self.handle_command(line):
                break
        self._stopping.set()

    # ========== Lifecycle ==========

    async def prepare(self, cashier_key: Optional[str] = None):
        if cashier_key:
            try:
                await self.api.login(cashier_key)
            except KDSError as e:
                logger.error(f"Login failed, finishing orders as system: {e}")

        if not self.settings.selected_categories:
            try:
                categories = await self.api.get_categories()
                self.settings.select_categories([c["code"] for c in categories])
            except ConnectivityError as e:
                logger.warning(f"Could not load categories: {e}")

        await self.poller.refresh_now()

    def start(self):
        self.scheduler.add_job(
            self.poll,
            IntervalTrigger(seconds=self.poll_interval),
            id="poll_orders",
            name="Poll Kitchen Orders",
            replace_existing=True
        )
        self.scheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=1),
            id="tick_countdowns",
            name="Tick Countdowns",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.add_job(
            self.render,
            IntervalTrigger(seconds=1),
            id="render_board",
            name="Render Board",
            replace_existing=True
        )
        self.scheduler.start()
        self._events_task = asyncio.create_task(self.listen_events())
        logger.info(f"Display started - polling every {self.poll_interval}s")

    async def stop(self):
        self._stopping.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        if self._events_task is not None:
            self._events_task.cancel()
            try:
                await self._events_task
            except asyncio.CancelledError:
                pass
        await self.alerts.output.stop()
        logger.info("Display stopped")


async def main():
    runtime = DisplayRuntime(KDSApiClient(API_URL), JsonFileStore(STATE_PATH))
    await runtime.prepare(CASHIER_KEY)
    runtime.start()
    try:
        await runtime.read_keypad()
    finally:
        await runtime.stop()


def run():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    asyncio.run(main())


if __name__ == "__main__":
    run()
