from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from funnel_lab.core.database import STORE_UNAVAILABLE_ERRORS, get_db

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check"""
    return {"status": "healthy", "service": "funnel-lab"}


@router.get("/health/db")
async def health_check_db(db: AsyncSession = Depends(get_db)):
    """Database health check"""
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except STORE_UNAVAILABLE_ERRORS as e:
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}
