"""
Database connection management and health checks.

Reconnect persists the connection descriptor first and then rebuilds the
pool from it, so the next restart uses the same settings even if this
attempt fails. Sending no descriptor reconnects with the saved one.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from pydantic import BaseModel

import database
from auth.jwt import CurrentUser, get_current_user
from services.activity_log import log_activity
from services.event_bus import kds_event_bus
from services.query_service import QueryError

logger = logging.getLogger(__name__)
router = APIRouter()


class ConnectionRequest(BaseModel):
    server: Optional[str] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    port: Optional[int] = None


@router.post("/reconnect")
async def reconnect(
    request: Optional[ConnectionRequest] = None,
    current_user: CurrentUser = Depends(get_current_user),
):
    changes = request.model_dump(exclude_none=True) if request else {}

    if changes:
        config = database.save_connection_config(changes)
    else:
        config = database.load_connection_config()

    missing = [field for field in database.CONNECTION_FIELDS if not config.get(field)]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing connection fields: {', '.join(missing)}")

    try:
        await database.connect_database(config)
    except SQLAlchemyError as e:
        error = QueryError.from_exception(e)
        logger.error(f"Reconnect requested by {current_user.name} failed: {error.message}")
        raise HTTPException(status_code=503, detail=error.to_detail())
    except Exception as e:
        logger.error(f"Reconnect requested by {current_user.name} failed: {e}")
        raise HTTPException(status_code=503, detail={"message": str(e)})

    logger.info(f"Database reconnected by {current_user.name} to {config['server']}/{config['database']}")

    # A fresh session on the new pool
    async with database.AsyncSessionLocal() as db:
        await log_activity(
            db, current_user.id, current_user.name, "RECONNECT_DATABASE",
            details={"server": config["server"], "database": config["database"]},
            component="system",
        )

    return {"success": True, "message": "Reconnected to database"}


@router.get("/health")
async def health():
    database_up = await database.check_connection()
    return {
        "status": "healthy" if database_up else "degraded",
        "database": "connected" if database_up else "disconnected",
        "sse_subscribers": kds_event_bus.subscriber_count,
    }
