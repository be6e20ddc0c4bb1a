"""
FastAPI приложение партнёрской программы
Реестр партнёров, трекинг, рефералы, соревнования и выплаты
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from shared.database import init_db, close_db
from shared.redis_client import close_redis
from shared.config import LOG_LEVEL, LOG_FORMAT, DATA_DIR
from shared.errors import AffiliateError
from shared import admin_notifier
from affiliate_api.routes.affiliates import router as affiliates_router
from affiliate_api.routes.referrals import router as referrals_router
from affiliate_api.routes.competitions import router as competitions_router
from affiliate_api.routes.payouts import router as payouts_router
from affiliate_api.webhooks.sales import router as sales_router
from affiliate_api.health import router as health_router

# Настройка логирования
logging.basicConfig(
    level=LOG_LEVEL,
    format=LOG_FORMAT,
    handlers=[
        logging.FileHandler(DATA_DIR / "logs" / "affiliate_api.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifecycle manager для FastAPI
    """
    # Startup
    logger.info("🚀 Starting Affiliate API...")

    # Инициализация БД
    await init_db()
    logger.info("✅ Database initialized")

    if admin_notifier.get_send_func() is None:
        admin_notifier.set_send_func(admin_notifier.log_send)
        logger.info("Admin notifications go to the log")

    yield

    # Shutdown
    logger.info("🛑 Shutting down Affiliate API...")
    await close_db()
    await close_redis()
    logger.info("✅ Affiliate API stopped")


# Создание FastAPI приложения
app = FastAPI(
    title="Affiliate Program API",
    description="Affiliate accounts, attribution, competitions and payouts",
    version="1.0.0",
    lifespan=lifespan
)


# Подключение роутеров (вложенные пути раньше /api/affiliates/{affiliate_id})
app.include_router(health_router)
app.include_router(referrals_router)
app.include_router(competitions_router)
app.include_router(payouts_router)
app.include_router(affiliates_router)
app.include_router(sales_router)


@app.get("/")
async def root():
    return {
        "status": "ok",
        "service": "Affiliate Program API",
        "version": "1.0.0"
    }


@app.exception_handler(AffiliateError)
async def affiliate_error_handler(request: Request, exc: AffiliateError):
    """
    Ошибки предметной области -> {"success": false, "error": {...}}
    """
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()}
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in errors
    ) or "Invalid request"

    return JSONResponse(
        status_code=422,
        content={"success": False, "error": {"message": message, "code": "VALIDATION_ERROR"}}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Глобальный обработчик ошибок
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": {"message": "Internal server error", "code": "INTERNAL_ERROR"}}
    )


def main():
    import uvicorn
    from shared.config import API_HOST, API_PORT

    uvicorn.run(
        "affiliate_api.main:app",
        host=API_HOST,
        port=API_PORT,
        reload=False,
        log_level=LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
