from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text

from opswatch.src.db.database import get_db

router = APIRouter(tags=["health"])

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "opswatch"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "database": str(e)}

@router.get("/health/all")
async def full_health_check(request: Request, db: AsyncSession = Depends(get_db)):
    """Combined health check for the database and background loops."""
    health = {
        "api": "healthy",
        "database": "unknown",
        "realtime_hub": "unknown",
    }

    try:
        await db.execute(text("SELECT 1"))
        health["database"] = "healthy"
    except Exception as e:
        health["database"] = f"unhealthy: {e}"

    hub = getattr(request.app.state, "hub", None)
    health["realtime_hub"] = "healthy" if hub is not None and hub.is_running else "stopped"

    scheduler = getattr(request.app.state, "scheduler", None)
    overall = "healthy" if all(v == "healthy" for v in health.values()) else "degraded"

    return {
        "status": overall,
        "services": health,
        "scheduler_running": bool(scheduler and scheduler.is_running),
    }
