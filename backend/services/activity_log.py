"""
Activity log for privileged display actions (finishing orders, reconnecting
the database, changing custom sounds). The acting user is always passed in
explicitly by the caller.
"""

import json
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.user import ActivityLog

logger = logging.getLogger(__name__)


async def log_activity(
    db: AsyncSession,
    user_id: str,
    user_name: Optional[str],
    action: str,
    details: Optional[dict] = None,
    component: str = "kds",
) -> bool:
    """
    Record an action. Returns False if the entry could not be written.

    A failed audit write never fails the action it describes, so errors are
    logged and the session rolled back instead of raised.
    """
    try:
        db.add(ActivityLog(
            user_id=user_id,
            user_name=user_name,
            action=action,
            details=json.dumps(details or {}, default=str),
            component=component,
            timestamp=datetime.utcnow(),
        ))
        await db.commit()
        return True
    except Exception as e:
        logger.error(f"Failed to log activity '{action}' for {user_name}: {e}")
        await db.rollback()
        return False
