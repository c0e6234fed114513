"""
Parameterized query endpoint for maintenance tools.

Errors come back as a 503 whose detail holds the database diagnostics
(message, state, line number, procedure, server).
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

import database
from auth.jwt import CurrentUser, get_current_user
from services.query_service import QueryError, run_query

logger = logging.getLogger(__name__)
router = APIRouter()


class QueryRequest(BaseModel):
    query: str
    params: list[Any] = []


@router.post("")
async def execute_query(
    request: QueryRequest,
    current_user: CurrentUser = Depends(get_current_user),
):
    if not request.query.strip():
        raise HTTPException(status_code=400, detail="Query is required")

    logger.info(f"Query requested by {current_user.name}")
    try:
        return await run_query(database.get_engine(), request.query, request.params)
    except QueryError as e:
        raise HTTPException(status_code=503, detail=e.to_detail())
