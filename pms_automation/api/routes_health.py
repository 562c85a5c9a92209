from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from pms_automation.db.session import get_session

router = APIRouter(tags=["health"])

@router.get("/")
def root():
    return {"service": "pms-automation", "version": "0.1.0"}

@router.get("/health")
def health():
    return {"status": "ok"}

@router.get("/ready")
async def ready(session: AsyncSession = Depends(get_session)):
    # ready means the job store answers
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"database unavailable: {type(e).__name__}")
    return {"ready": True}
