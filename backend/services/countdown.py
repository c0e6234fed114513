"""
Per-order preparation countdowns.

Each visible order gets a deadline computed once from its order time and the
lead item's prep budget:

    end_ts = min(order_time, now) + minutes * 60000    (epoch milliseconds)

The deadline, a sticky expired flag and the fired threshold flags are kept in
a key-value store under "order:{key}:..." so restarting the display neither
restarts a clock nor repeats an alert.

    UNINITIALIZED -> RUNNING -> EXPIRED
    UNINITIALIZED -> RUNNING -> TORN_DOWN

A deadline computed for the first time is always ticked, even when it is
already in the past, so a late order still raises its overdue alert. Only a
persisted deadline found in the past goes straight to EXPIRED.

Orders without a valid order time or a positive budget never leave
UNINITIALIZED: they show 00:00, have no severity and never alert.
"""

import enum
import logging
import math
import time
from datetime import datetime
from typing import Callable, Optional

from services.order_grouping import KitchenTicket
from services.timer_store import KeyValueStore

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
NearFinishObserver = Callable[[str, bool], None]


class CountdownState(str, enum.Enum):
    UNINITIALIZED = "UNINITIALIZED"
    RUNNING = "RUNNING"
    EXPIRED = "EXPIRED"
    TORN_DOWN = "TORN_DOWN"


class Threshold(int, enum.Enum):
    APPROACHING = 60
    NEAR_FINISH = 80
    OVERDUE = 100


class Severity(str, enum.Enum):
    NONE = "none"
    NORMAL = "normal"
    WARNING = "warning"
    URGENT = "urgent"
    EXPIRED = "expired"


def epoch_ms() -> float:
    return time.time() * 1000


def to_epoch_ms(value: Optional[datetime]) -> Optional[float]:
    """Naive datetimes are local time, as the POS writes them."""
    if value is None:
        return None
    try:
        ms = value.timestamp() * 1000
    except (OverflowError, OSError, ValueError):
        return None
    return ms if math.isfinite(ms) else None


def format_timer(seconds) -> str:
    """MM:SS, or H:MM:SS from one hour up. Anything invalid shows 00:00."""
    try:
        seconds = float(seconds)
    except (TypeError, ValueError):
        return "00:00"
    if not math.isfinite(seconds) or seconds <= 0:
        return "00:00"

    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def countdown_keys(order_key: str) -> list[str]:
    """Every store key a countdown may write for an order."""
    prefix = f"order:{order_key}"
    return [
        f"{prefix}:end_ts",
        f"{prefix}:expired",
        *(f"{prefix}:fired:{threshold.value}" for threshold in Threshold),
    ]


def clear_countdown_keys(store: KeyValueStore, order_key: str):
    for key in countdown_keys(order_key):
        store.delete(key)


class OrderCountdown:
    """Deadline tracking for one order."""

    def __init__(
        self,
        order_key: str,
        order_time: Optional[datetime],
        minutes: float,
        store: KeyValueStore,
        clock: Clock = epoch_ms,
        on_near_finish: Optional[NearFinishObserver] = None,
    ):
        self.order_key = str(order_key)
        self.order_time = order_time
        self.minutes = minutes
        self.store = store
        self.clock = clock
        self.on_near_finish = on_near_finish

        self.state = CountdownState.UNINITIALIZED
        self.end_ts: Optional[float] = None
        self.remaining_seconds = 0

        self._prefix = f"order:{self.order_key}"

    # ========== Persisted keys ==========

    @property
    def _end_key(self) -> str:
        return f"{self._prefix}:end_ts"

    @property
    def _expired_key(self) -> str:
        return f"{self._prefix}:expired"

    def _fired_key(self, threshold: Threshold) -> str:
        return f"{self._prefix}:fired:{threshold.value}"

    def has_fired(self, threshold: Threshold) -> bool:
        return self.store.get(self._fired_key(threshold)) == "1"

    def _load_end_ts(self) -> Optional[float]:
        raw = self.store.get(self._end_key)
        if raw is None:
            return None
        try:
            value = float(raw)
        except ValueError:
            logger.debug(f"Order {self.order_key}: discarding unreadable deadline {raw!r}")
            return None
        return value if math.isfinite(value) else None

    # ========== Derived values ==========

    @property
    def has_deadline(self) -> bool:
        return self.state in (CountdownState.RUNNING, CountdownState.EXPIRED)

    @property
    def total_seconds(self) -> float:
        return self.minutes * 60 if self.has_deadline else 0

    @property
    def elapsed_percent(self) -> float:
        if self.state == CountdownState.EXPIRED:
            return 100.0
        total = self.total_seconds
        if total <= 0:
            return 0.0
        percent = 100 * (total - self.remaining_seconds) / total
        return min(100.0, max(0.0, percent))

    @property
    def severity(self) -> Severity:
        if self.state == CountdownState.EXPIRED:
            return Severity.EXPIRED
        if self.state != CountdownState.RUNNING:
            return Severity.NONE
        percent = self.elapsed_percent
        if percent >= Threshold.NEAR_FINISH:
            return Severity.URGENT
        if percent >= Threshold.APPROACHING:
            return Severity.WARNING
        return Severity.NORMAL

    @property
    def is_near_finish(self) -> bool:
        return (
            self.state == CountdownState.RUNNING
            and self.remaining_seconds > 0
            and self.elapsed_percent >= Threshold.NEAR_FINISH
        )

    @property
    def display(self) -> str:
        return format_timer(self.remaining_seconds)

    # ========== Lifecycle ==========

    def start(self) -> CountdownState:
        """Enter RUNNING, or EXPIRED when the persisted state says so. Never fires alerts."""
        if self.state != CountdownState.UNINITIALIZED:
            return self.state

        order_ms = to_epoch_ms(self.order_time)
        minutes_valid = isinstance(self.minutes, (int, float)) and math.isfinite(self.minutes) and self.minutes > 0
        if order_ms is None or not minutes_valid:
            logger.debug(
                f"Order {self.order_key}: no countdown (order_time={self.order_time}, minutes={self.minutes})"
            )
            clear_countdown_keys(self.store, self.order_key)
            return self.state

        if self.store.get(self._expired_key) == "1":
            self._set_expired(persist=False)
            return self.state

        now = self.clock()
        end_ts = self._load_end_ts()
        persisted = end_ts is not None
        if not persisted:
            end_ts = min(order_ms, now) + self.minutes * 60000
            self.store.set(self._end_key, repr(end_ts))
            logger.debug(f"Order {self.order_key}: deadline set {self.minutes} min from {min(order_ms, now):.0f}")
        self.end_ts = end_ts

        if persisted and end_ts <= now:
            # Ran out while nobody was watching; no alert for that
            logger.info(f"Order {self.order_key}: deadline already passed, marking expired")
            self._set_expired(persist=True)
            return self.state

        self.state = CountdownState.RUNNING
        self.remaining_seconds = self._compute_remaining(now) or 0
        return self.state

    def _compute_remaining(self, now: float) -> Optional[int]:
        try:
            value = (self.end_ts - now) / 1000
        except TypeError:
            return None
        if not math.isfinite(value):
            return None
        return max(0, math.floor(value))

    def tick(self) -> list[Threshold]:
        """
        Advance the countdown. Returns the thresholds crossed by this tick, in
        ascending order; each threshold is returned once per order, ever.
        """
        if self.state != CountdownState.RUNNING:
            return []

        remaining = self._compute_remaining(self.clock())
        if remaining is None:
            logger.warning(f"Order {self.order_key}: invalid countdown arithmetic, stopping")
            self.remaining_seconds = 0
            self.state = CountdownState.EXPIRED
            return []

        # Never count back up if the clock steps backwards
        self.remaining_seconds = min(remaining, self.remaining_seconds)

        # A long stall can cross several thresholds in one tick
        fired = []
        percent = self.elapsed_percent
        for threshold in (Threshold.APPROACHING, Threshold.NEAR_FINISH):
            if percent >= threshold and self._fire(threshold):
                fired.append(threshold)
        if self.remaining_seconds == 0:
            if self._fire(Threshold.OVERDUE):
                fired.append(Threshold.OVERDUE)
            self._set_expired(persist=True)

        if self.on_near_finish:
            self.on_near_finish(self.order_key, self.is_near_finish)

        return fired

    def _fire(self, threshold: Threshold) -> bool:
        if self.has_fired(threshold):
            return False
        self.store.set(self._fired_key(threshold), "1")
        logger.info(f"Order {self.order_key}: {threshold.value}% threshold reached")
        return True

    def _set_expired(self, persist: bool):
        self.state = CountdownState.EXPIRED
        self.remaining_seconds = 0
        if persist:
            self.store.set(self._expired_key, "1")
            self.store.delete(self._end_key)

    def teardown(self):
        clear_countdown_keys(self.store, self.order_key)
        self.state = CountdownState.TORN_DOWN
        self.end_ts = None
        self.remaining_seconds = 0
        logger.debug(f"Order {self.order_key}: countdown torn down")


class CountdownBoard:
    """
    One countdown per visible ticket.

    observe() hands back the same countdown for as long as a ticket's order
    time and budget stay the same, so re-rendering the board on every poll
    never restarts a clock.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock = epoch_ms,
        on_near_finish: Optional[NearFinishObserver] = None,
    ):
        self.store = store
        self.clock = clock
        self.on_near_finish = on_near_finish
        self._countdowns: dict[str, OrderCountdown] = {}
        self._tickets: dict[str, KitchenTicket] = {}

    def __contains__(self, order_key) -> bool:
        return str(order_key) in self._countdowns

    def __len__(self):
        return len(self._countdowns)

    def get(self, order_key) -> Optional[OrderCountdown]:
        return self._countdowns.get(str(order_key))

    def observe(self, ticket: KitchenTicket) -> OrderCountdown:
        key = str(ticket.order_number)
        lead = ticket.lead
        self._tickets[key] = ticket

        existing = self._countdowns.get(key)
        if (
            existing is not None
            and existing.order_time == lead.order_time
            and existing.minutes == lead.time_to_finish_minutes
        ):
            return existing

        countdown = OrderCountdown(
            key,
            lead.order_time,
            lead.time_to_finish_minutes,
            self.store,
            clock=self.clock,
            on_near_finish=self.on_near_finish,
        )
        countdown.start()
        self._countdowns[key] = countdown
        return countdown

    def sync(self, tickets: list[KitchenTicket]):
        for ticket in tickets:
            self.observe(ticket)

    def tick_all(self) -> list[tuple[str, Threshold]]:
        events = []
        for key, countdown in list(self._countdowns.items()):
            for threshold in countdown.tick():
                events.append((key, threshold))
        return events

    def teardown(self, order_key):
        """Forget an order and remove its persisted keys, tracked or not."""
        key = str(order_key)
        countdown = self._countdowns.pop(key, None)
        self._tickets.pop(key, None)
        if countdown is not None:
            countdown.teardown()
        else:
            clear_countdown_keys(self.store, key)

    def snapshot(self) -> list[dict]:
        """Display rows in ticket order."""
        rows = []
        for key, countdown in self._countdowns.items():
            ticket = self._tickets.get(key)
            rows.append({
                "order_number": ticket.order_number if ticket else key,
                "table": ticket.lead.table_description if ticket else None,
                "items": [
                    {
                        "name": group.main.item_name,
                        "quantity": group.main.quantity,
                        "modifiers": [m.item_name for m in group.modifiers],
                    }
                    for group in (ticket.groups if ticket else [])
                ],
                "timer": countdown.display,
                "remaining_seconds": countdown.remaining_seconds,
                "elapsed_percent": round(countdown.elapsed_percent, 1),
                "severity": countdown.severity.value,
                "near_finish": countdown.is_near_finish,
                "state": countdown.state.value,
            })
        return rows
