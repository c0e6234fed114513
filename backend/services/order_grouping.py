"""
Kitchen order grouping

Turns raw DB_POS_ORDER_KDS rows into typed order lines and groups them into
kitchen tickets: one ticket per order number, each holding "main item +
modifiers" clusters in the order the lines were sent to the kitchen.

Malformed rows never raise. Bad numbers become 0, bad strings become None and
an unparseable order time leaves the line without a countdown.
"""

import enum
import logging
import math
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# POS item type codes
MAIN_ITEM_CODE = "I"
MODIFIER_ITEM_CODE = "M"

# Formats seen from POS terminals that store order time as text
_TEXT_TIME_FORMATS = ("%H:%M:%S %Y-%m-%d", "%Y-%m-%d %H:%M:%S")


class LineType(str, enum.Enum):
    MAIN = "MAIN"
    MODIFIER = "MODIFIER"
    UNKNOWN = "UNKNOWN"


class OrderLine(BaseModel):
    order_number: Optional[int] = None
    item_code: Optional[str] = None
    item_name: Optional[str] = None
    item_name_localized: Optional[str] = None
    quantity: int = 0
    line_type: LineType = LineType.UNKNOWN
    order_time: Optional[datetime] = None
    time_to_finish_minutes: float = 0
    comments: Optional[str] = None
    table_id: Optional[int] = None
    table_description: Optional[str] = None
    department_code: Optional[str] = None
    department_name: Optional[str] = None
    department_name_localized: Optional[str] = None
    category_code: Optional[int] = None
    finished: Optional[bool] = None


class GroupedOrder(BaseModel):
    """A main line and the modifiers sent right after it."""
    order_number: int
    main: OrderLine
    modifiers: list[OrderLine] = []


class KitchenTicket(BaseModel):
    """All clusters of one order number, in kitchen order."""
    order_number: int
    groups: list[GroupedOrder]

    @property
    def lead(self) -> OrderLine:
        """The line whose time and prep budget drive the ticket countdown."""
        return self.groups[0].main

    @property
    def total_quantity(self) -> int:
        return sum(
            line.quantity
            for group in self.groups
            for line in [group.main, *group.modifiers]
        )


# =============================================================================
# Row Mapper
# =============================================================================

def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def _to_float(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return number


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "y", "yes")
    return bool(value)


def parse_order_time(value: Any) -> Optional[datetime]:
    """Parse an order time from a datetime or the text formats POS terminals use."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in _TEXT_TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def parse_line_type(value: Any) -> LineType:
    code = (_to_str(value) or "").upper()
    if code == MAIN_ITEM_CODE:
        return LineType.MAIN
    if code == MODIFIER_ITEM_CODE:
        return LineType.MODIFIER
    return LineType.UNKNOWN


def map_row_to_order_line(row: Mapping[str, Any]) -> OrderLine:
    """
    Convert one query row into an OrderLine.

    Expected keys (missing keys are fine): ORDER_NO, ITEM_CODE, ITEM_NAME,
    ITEM_NAME_LOCALIZED, QTY, ITEM_TYPE, ORDER_TIME, TIME_TO_FINISH,
    ORDER_COMMENTS, TABLE_ID, TABLE_DESCRIPTION, DEP_CODE, DEPT_NAME,
    DEPT_NAME_AR, CAT_CODE, FINISHED.
    """
    order_time = parse_order_time(row.get("ORDER_TIME"))
    if order_time is None and row.get("ORDER_TIME") is not None:
        logger.debug(f"Unparseable ORDER_TIME {row.get('ORDER_TIME')!r} for order {row.get('ORDER_NO')}")

    time_to_finish = _to_float(row.get("TIME_TO_FINISH"))
    if time_to_finish < 0:
        logger.debug(f"Negative TIME_TO_FINISH {time_to_finish} for order {row.get('ORDER_NO')}, using 0")
        time_to_finish = 0.0

    quantity = _to_int(row.get("QTY")) or 0
    if quantity < 0:
        quantity = 0

    return OrderLine(
        order_number=_to_int(row.get("ORDER_NO")),
        item_code=_to_str(row.get("ITEM_CODE")),
        item_name=_to_str(row.get("ITEM_NAME")),
        item_name_localized=_to_str(row.get("ITEM_NAME_LOCALIZED")),
        quantity=quantity,
        line_type=parse_line_type(row.get("ITEM_TYPE")),
        order_time=order_time,
        time_to_finish_minutes=time_to_finish,
        comments=_to_str(row.get("ORDER_COMMENTS")),
        table_id=_to_int(row.get("TABLE_ID")),
        table_description=_to_str(row.get("TABLE_DESCRIPTION")),
        department_code=_to_str(row.get("DEP_CODE")),
        department_name=_to_str(row.get("DEPT_NAME")),
        department_name_localized=_to_str(row.get("DEPT_NAME_AR")),
        category_code=_to_int(row.get("CAT_CODE")),
        finished=_to_bool(row.get("FINISHED")),
    )


# =============================================================================
# Order Grouper
# =============================================================================

def group_order_lines(lines: Iterable[OrderLine]) -> dict[int, list[GroupedOrder]]:
    """
    Group lines (already sorted by order time) into per-order clusters.

    Within an order number a MAIN line opens a new cluster and MODIFIER lines
    attach to the open one. UNKNOWN lines are shown as mains rather than lost.
    A modifier seen before any main of its order has nothing to attach to and
    is dropped. Orders are returned in first-seen order.
    """
    buckets: dict[int, list[OrderLine]] = {}
    for line in lines:
        if line.order_number is None:
            logger.warning(f"Skipping order line with no order number: item {line.item_code}")
            continue
        buckets.setdefault(line.order_number, []).append(line)

    grouped: dict[int, list[GroupedOrder]] = {}
    for order_number, bucket in buckets.items():
        clusters: list[GroupedOrder] = []
        current: Optional[GroupedOrder] = None

        for line in bucket:
            if line.line_type == LineType.MODIFIER:
                if current is None:
                    logger.debug(f"Dropping modifier {line.item_code} with no main item in order {order_number}")
                    continue
                current.modifiers.append(line)
                continue

            if line.line_type == LineType.UNKNOWN:
                logger.warning(f"Unknown item type for item {line.item_code} in order {order_number}, showing as main")
            if current is not None:
                clusters.append(current)
            current = GroupedOrder(order_number=order_number, main=line, modifiers=[])

        if current is not None:
            clusters.append(current)

        if clusters:
            grouped[order_number] = clusters

    return grouped


def build_tickets(rows: Iterable[Mapping[str, Any]]) -> list[KitchenTicket]:
    """Map and group query rows into tickets, oldest order first."""
    lines = [map_row_to_order_line(row) for row in rows]
    grouped = group_order_lines(lines)
    return [
        KitchenTicket(order_number=order_number, groups=groups)
        for order_number, groups in grouped.items()
    ]
