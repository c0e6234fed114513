"""
KDS (Kitchen Display System) API Endpoints

Provides endpoints for:
- Listing the categories a display can be scoped to
- Fetching active kitchen tickets, grouped as main item + modifiers
- Finishing an order (all of its lines at once)
- Server-Sent Events so displays refresh as soon as an order is finished

An empty ticket list and a database failure are different answers: the
failure is a 503 whose detail carries the database diagnostics.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel

from database import get_db
from auth.jwt import CurrentUser, get_current_user_optional
from services.event_bus import kds_event_bus, ORDER_FINISHED
from services.activity_log import log_activity
from services.kds_orders import (
    OrderNotFoundError,
    fetch_active_order_rows,
    fetch_kds_categories,
    finish_order,
)
from services.order_grouping import KitchenTicket, build_tickets
from services.query_service import QueryError

logger = logging.getLogger(__name__)
router = APIRouter()


# =============================================================================
# Pydantic Schemas
# =============================================================================

class CategoryResponse(BaseModel):
    code: int
    name: str


class OrdersResponse(BaseModel):
    orders: list[KitchenTicket]
    count: int
    fetched_at: datetime


class FinishResponse(BaseModel):
    success: bool = True
    order_number: int
    lines_finished: int
    late_lines: int
    finished_at: datetime
    finished_by: str


# =============================================================================
# Helper Functions
# =============================================================================

def parse_category_codes(raw: Optional[str]) -> list[int]:
    """Parse '1,2,3' into [1, 2, 3]."""
    if not raw:
        return []
    codes = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            codes.append(int(part))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid category code: {part}")
    return codes


def database_unavailable(e: Exception) -> HTTPException:
    error = QueryError.from_exception(e)
    logger.error(f"KDS: database error: {error.message}")
    return HTTPException(status_code=503, detail=error.to_detail())


# =============================================================================
# API Endpoints
# =============================================================================

@router.get("/categories", response_model=list[CategoryResponse])
async def get_categories(db: AsyncSession = Depends(get_db)):
    """Categories flagged for kitchen display."""
    try:
        return await fetch_kds_categories(db)
    except SQLAlchemyError as e:
        raise database_unavailable(e)


@router.get("/orders", response_model=OrdersResponse)
async def get_orders(
    categories: Optional[str] = Query(None, description="Comma separated category codes"),
    db: AsyncSession = Depends(get_db),
):
    """
    Active kitchen tickets for the selected categories, oldest first.

    No categories selected means no tickets, without touching the database.
    """
    codes = parse_category_codes(categories)
    try:
        rows = await fetch_active_order_rows(db, codes)
    except SQLAlchemyError as e:
        raise database_unavailable(e)

    tickets = build_tickets(rows)
    return OrdersResponse(orders=tickets, count=len(tickets), fetched_at=datetime.now())


@router.post("/orders/{order_number}/finish", response_model=FinishResponse)
async def finish(
    order_number: int,
    current_user: Optional[CurrentUser] = Depends(get_current_user_optional),
    db: AsyncSession = Depends(get_db),
):
    """
    Mark every active line of the order finished.

    Lines are stamped with the finish time, the acting user ("system" when
    anonymous), the whole minutes taken and whether they ran late.
    """
    finished_by = current_user.name if current_user else "system"

    try:
        result = await finish_order(db, order_number, finished_by=finished_by)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail=f"Order {order_number} not found")
    except SQLAlchemyError as e:
        raise database_unavailable(e)

    await kds_event_bus.publish({
        "type": ORDER_FINISHED,
        "order_number": order_number,
        "finished_by": finished_by,
        "timestamp": result.finished_at.isoformat(),
    })

    await log_activity(
        db,
        current_user.id if current_user else "system",
        finished_by,
        "FINISH_ORDER",
        details={
            "order_number": order_number,
            "lines_finished": result.lines_finished,
            "late_lines": result.late_lines,
        },
    )

    return FinishResponse(
        order_number=result.order_number,
        lines_finished=result.lines_finished,
        late_lines=result.late_lines,
        finished_at=result.finished_at,
        finished_by=result.finished_by,
    )


# =============================================================================
# SSE (Server-Sent Events) for Real-Time Updates
# =============================================================================

@router.get("/events")
async def kds_events(request: Request):
    """
    Server-Sent Events stream for real-time KDS updates.

    Finishing an order publishes ORDER_FINISHED here. Displays subscribe to
    refresh instantly instead of waiting for the next poll.

    No auth required for SSE (connection is long-lived and the
    KDS display may not have convenient auth headers for EventSource).
    """

    async def event_generator():
        queue = kds_event_bus.subscribe()
        try:
            while True:
                # Check if client disconnected
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=30)
                    yield f"data: {json.dumps(event)}\n\n"
                except asyncio.TimeoutError:
                    # Send keepalive comment to prevent connection timeout
                    yield ": keepalive\n\n"
        finally:
            kds_event_bus.unsubscribe(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
