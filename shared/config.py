"""
Конфигурация приложения
"""
import os
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Базовые пути
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))

load_dotenv(BASE_DIR / ".env")

# PostgreSQL
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost/affiliates")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "40"))
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "10000"))  # ни один запрос не висит вечно

# Redis
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# Партнёрская программа
DEFAULT_COMMISSION_RATE = Decimal(os.getenv("DEFAULT_COMMISSION_RATE", "0.10"))  # 10%
_commission_cap = os.getenv("AFFILIATE_COMMISSION_CAP", "")
AFFILIATE_COMMISSION_CAP: Optional[Decimal] = Decimal(_commission_cap) if _commission_cap else None
AFFILIATE_CODE_PREFIX = "AFF"
PAYOUT_METHODS = ["bank_transfer", "paypal", "stripe", "crypto"]

# Выплаты
PAYOUT_MINIMUM_AMOUNT = Decimal(os.getenv("PAYOUT_MINIMUM_AMOUNT", "0"))

# Соревнования
DEFAULT_PRIZE_SPLITS = [Decimal("0.5"), Decimal("0.3"), Decimal("0.2")]
LEADERBOARD_DEFAULT_PAGE_SIZE = 100
LEADERBOARD_MAX_PAGE_SIZE = 500

# Пагинация списков
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Rate limiting (анти-абуз кликов)
RATE_LIMIT_CLICKS_PER_HOUR = int(os.getenv("RATE_LIMIT_CLICKS_PER_HOUR", "30"))  # на одного посетителя

# Cookie атрибуции перехода по партнёрской ссылке
ATTRIBUTION_COOKIE_MAX_AGE = int(os.getenv("ATTRIBUTION_COOKIE_DAYS", "30")) * 24 * 60 * 60
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() == "true"

# Webhook продаж
SALES_WEBHOOK_SECRET = os.getenv("SALES_WEBHOOK_SECRET", "")

# Администраторы (список user id)
ADMIN_IDS_STR = os.getenv("ADMIN_IDS", "")  # Через запятую: "user-1,user-2"
ADMIN_IDS: List[str] = [uid.strip() for uid in ADMIN_IDS_STR.split(",") if uid.strip()]

# API Server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("PORT", "8080"))

# Логирование
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Создание директорий
DATA_DIR.mkdir(exist_ok=True)
(DATA_DIR / "logs").mkdir(exist_ok=True)
