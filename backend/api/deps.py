"""
Stockwise API Dependencies

Dependency injection for the receiving engine and caller identity.
"""

from functools import lru_cache

from fastapi import Header

from core.config import get_settings
from db.session import AsyncSessionLocal
from supply_chain.engine import ReceivingEngine


@lru_cache
def get_engine() -> ReceivingEngine:
    """Process-wide engine bound to the application database."""
    return ReceivingEngine(AsyncSessionLocal, settings=get_settings())


async def get_actor(
    x_user_id: str = Header("system"),
    x_user_name: str | None = Header(None),
) -> dict:
    """Caller identity for audit attribution. Authentication happens upstream."""
    return {"user_id": x_user_id, "user_name": x_user_name}
