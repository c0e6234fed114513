"""
KDS order queries and the finish-order mutation.

Active lines are those with FINISHED still NULL. Finishing an order stamps
every active line of the order in one transaction, so either the whole
ticket leaves the display or nothing changes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from models.kds import KitchenOrderLine, ItemMaster, Department, Category

logger = logging.getLogger(__name__)


class OrderNotFoundError(LookupError):
    """No active lines exist for the order number."""


@dataclass
class FinishResult:
    order_number: int
    lines_finished: int
    late_lines: int
    finished_at: datetime
    finished_by: str


async def fetch_active_order_rows(db: AsyncSession, category_codes: list[int]) -> list[dict]:
    """
    Fetch unfinished kitchen lines for the given categories, oldest first.

    Rows use the column names the row mapper expects. The standard prep time
    comes from the item master, not from the line itself.
    """
    if not category_codes:
        return []

    line = KitchenOrderLine
    query = (
        select(
            line.cat_code.label("CAT_CODE"),
            line.main_order_no.label("ORDER_NO"),
            line.item_code.label("ITEM_CODE"),
            line.table_id.label("TABLE_ID"),
            ItemMaster.item_name.label("ITEM_NAME"),
            ItemMaster.item_name2.label("ITEM_NAME_LOCALIZED"),
            line.order_time.label("ORDER_TIME"),
            ItemMaster.time_to_finish.label("TIME_TO_FINISH"),
            line.qty.label("QTY"),
            line.finished.label("FINISHED"),
            line.table_description.label("TABLE_DESCRIPTION"),
            line.order_comments.label("ORDER_COMMENTS"),
            line.item_type.label("ITEM_TYPE"),
            line.dep_code.label("DEP_CODE"),
            Department.dept_name.label("DEPT_NAME"),
            Department.dept_name_ar.label("DEPT_NAME_AR"),
        )
        .join(ItemMaster, ItemMaster.item_code == line.item_code)
        .outerjoin(Department, Department.dept_code == line.dep_code)
        .where(
            and_(
                line.finished.is_(None),
                line.cat_code.in_(category_codes),
            )
        )
        # AUTO_NO keeps a main line ahead of its modifiers when times are equal
        .order_by(line.order_time.asc(), line.auto_no.asc())
    )
    result = await db.execute(query)
    rows = [dict(row) for row in result.mappings().all()]
    logger.debug(f"Fetched {len(rows)} active kitchen lines for categories {category_codes}")
    return rows


async def fetch_kds_categories(db: AsyncSession) -> list[dict]:
    """Categories flagged for kitchen display."""
    result = await db.execute(
        select(Category).where(Category.kds == True).order_by(Category.cat_code)
    )
    return [
        {"code": category.cat_code, "name": category.cat_name or str(category.cat_code)}
        for category in result.scalars().all()
    ]


def is_late(standard_minutes: Optional[float], elapsed_minutes: Optional[float]) -> int:
    """1 when the line took at least its standard prep time, else 0."""
    if (standard_minutes or 0) - (elapsed_minutes or 0) > 0:
        return 0
    return 1


async def finish_order(
    db: AsyncSession,
    order_number: int,
    finished_by: str = "system",
    now: Optional[datetime] = None,
) -> FinishResult:
    """
    Mark every active line of an order finished.

    Records the completion time, who finished it, the whole minutes elapsed
    since the line was ordered (stored in TIME_TO_FINISH) and the LATE flag.

    Raises:
        OrderNotFoundError: the order has no active lines
    """
    now = now or datetime.now()

    result = await db.execute(
        select(KitchenOrderLine, ItemMaster.time_to_finish)
        .outerjoin(ItemMaster, ItemMaster.item_code == KitchenOrderLine.item_code)
        .where(
            and_(
                KitchenOrderLine.main_order_no == order_number,
                KitchenOrderLine.finished.is_(None),
            )
        )
    )
    rows = result.all()
    if not rows:
        raise OrderNotFoundError(f"Order {order_number} has no active lines")

    late_lines = 0
    try:
        for order_line, standard_minutes in rows:
            elapsed_minutes = None
            if order_line.order_time is not None:
                elapsed_minutes = int((now - order_line.order_time).total_seconds() // 60)

            order_line.finish_time = now
            order_line.time_to_finish = elapsed_minutes
            order_line.finish_by = finished_by
            order_line.finished = True
            order_line.late = is_late(standard_minutes, elapsed_minutes)
            late_lines += order_line.late

        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"KDS: Order {order_number} finished by {finished_by} ({len(rows)} lines, {late_lines} late)")
    return FinishResult(
        order_number=order_number,
        lines_finished=len(rows),
        late_lines=late_lines,
        finished_at=now,
        finished_by=finished_by,
    )
