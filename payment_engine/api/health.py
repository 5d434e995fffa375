"""Liveness endpoint."""

from fastapi import APIRouter, Request
from sqlalchemy import text

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request):
    async with request.app.state.session_factory() as session:
        await session.execute(text("SELECT 1"))
    return {
        "status": "ok",
        "active_pollers": len(request.app.state.engine.poller),
    }
