from fastapi import APIRouter, Depends, status
from loguru import logger
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fileflow.api.dependencies import get_db_session

router = APIRouter()


class HealthCheck(BaseModel):
    status: str
    database: bool


@router.get(
    "",
    response_model=HealthCheck,
    status_code=status.HTTP_200_OK,
    summary="系统健康检查",
    description="检查API和数据库的状态",
)
async def health_check(db: AsyncSession = Depends(get_db_session)):
    """
    系统健康检查
    """
    db_status = True
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"数据库健康检查失败: {str(e)}")
        db_status = False

    return {
        "status": "healthy" if db_status else "unhealthy",
        "database": db_status,
    }
