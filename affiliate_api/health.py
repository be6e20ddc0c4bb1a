"""
Health check endpoints
"""
import logging
from typing import Optional

from fastapi import APIRouter, Response
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from shared.database import AsyncSessionLocal
from shared.redis_client import cache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["health"])


async def check_postgresql():
    async with AsyncSessionLocal() as session:
        await session.execute(text("SELECT 1"))


async def check_redis():
    await cache.ping()


CHECKS = {
    "postgresql": check_postgresql,
    "redis": check_redis,
}


async def run_check(service: str) -> Optional[str]:
    """
    Проверить сервис

    Returns:
        None если сервис доступен, иначе текст ошибки
    """
    try:
        await CHECKS[service]()
        return None
    except (SQLAlchemyError, RedisError, OSError) as e:
        logger.error(f"{service} health check failed: {e}")
        return str(e)


async def single_check(service: str, response: Response) -> dict:
    error = await run_check(service)
    if error is None:
        return {"status": "healthy", "service": service}

    response.status_code = 503
    return {"status": "unhealthy", "service": service, "error": error}


@router.get("")
async def health_check():
    """Базовый health check"""
    return {"status": "healthy", "service": "Affiliate API"}


@router.get("/db")
async def health_check_db(response: Response):
    return await single_check("postgresql", response)


@router.get("/redis")
async def health_check_redis(response: Response):
    return await single_check("redis", response)


@router.get("/all")
async def health_check_all(response: Response):
    """
    Полный health check всех сервисов
    """
    services = {}
    for service in CHECKS:
        error = await run_check(service)
        services[service] = "healthy" if error is None else f"unhealthy: {error}"

    healthy = all(state == "healthy" for state in services.values())
    if not healthy:
        response.status_code = 503

    return {"status": "healthy" if healthy else "unhealthy", "services": services}
