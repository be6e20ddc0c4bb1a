"""
SQLAlchemy модели базы данных
"""
import enum
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum as SQLEnum, ForeignKey, Index,
    Integer, JSON, Numeric, String, Text, Uuid
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base, relationship

from shared.config import (
    DATABASE_URL,
    DB_MAX_OVERFLOW,
    DB_POOL_SIZE,
    DB_STATEMENT_TIMEOUT_MS,
)
from shared.errors import AffiliateError, StorageError

logger = logging.getLogger(__name__)

# Создаем базовый класс
Base = declarative_base()

# JSONB на PostgreSQL, обычный JSON в остальных СУБД (тесты на SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Текущее время в UTC без tzinfo (так хранятся все даты)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def enum_column(enum_cls, name: str, **kwargs) -> Column:
    """Колонка-enum, хранящая значения ("active"), а не имена ("ACTIVE")"""
    return Column(
        SQLEnum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e]),
        **kwargs
    )


def _async_url(url: str) -> str:
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


# Создаем async engine
engine = create_async_engine(
    _async_url(DATABASE_URL),
    echo=False,
    pool_pre_ping=True,
    pool_size=DB_POOL_SIZE,
    max_overflow=DB_MAX_OVERFLOW,
    connect_args={"server_settings": {"statement_timeout": str(DB_STATEMENT_TIMEOUT_MS)}}
    if _async_url(DATABASE_URL).startswith("postgresql+asyncpg") else {}
)

# Создаем session maker
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


# ========== Модели ==========

class AffiliateStatus(str, enum.Enum):
    """Статусы партнёра"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class PayoutStatus(str, enum.Enum):
    """Статусы выплаты"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Affiliate(Base):
    """Партнёры"""
    __tablename__ = "affiliates"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), unique=True, nullable=False, index=True)
    affiliate_code = Column(String(50), unique=True, nullable=False, index=True)
    commission_rate = Column(Numeric(5, 4), nullable=False)
    total_earnings = Column(Numeric(12, 2), default=0, nullable=False)  # только атомарные инкременты
    total_referrals = Column(Integer, default=0, nullable=False)  # только атомарные инкременты
    status = enum_column(AffiliateStatus, "affiliate_status", default=AffiliateStatus.ACTIVE, nullable=False)
    payout_method = Column(String(50), default="bank_transfer", nullable=False)
    payout_details = Column(JSONType, nullable=True)
    suspension_reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    clicks = relationship("AffiliateClick", back_populates="affiliate")
    payouts = relationship("AffiliatePayout", back_populates="affiliate")

    __table_args__ = (
        Index('idx_affiliates_status', 'status'),
    )

    def snapshot(self) -> dict:
        """Снимок полей для аудита"""
        return {
            "affiliate_code": self.affiliate_code,
            "commission_rate": str(self.commission_rate),
            "status": self.status.value if self.status else None,
            "payout_method": self.payout_method,
            "total_earnings": str(self.total_earnings),
            "total_referrals": self.total_referrals,
        }


class AffiliateClick(Base):
    """Переходы по партнёрским ссылкам"""
    __tablename__ = "affiliate_clicks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    affiliate_id = Column(Uuid, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(String(255), nullable=True)
    visitor_ip = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    referrer_url = Column(Text, nullable=True)
    landing_page = Column(Text, nullable=True)
    converted = Column(Boolean, default=False, nullable=False)  # false -> true один раз
    converted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    affiliate = relationship("Affiliate", back_populates="clicks")

    __table_args__ = (
        Index('idx_affiliate_clicks_affiliate_id', 'affiliate_id'),
        Index('idx_affiliate_clicks_created_at', 'created_at'),
        Index('idx_affiliate_clicks_converted', 'converted'),
    )


class AffiliatePayout(Base):
    """Выплаты партнёрам"""
    __tablename__ = "affiliate_payouts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    affiliate_id = Column(Uuid, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    amount = Column(Numeric(12, 2), default=0, nullable=False)
    status = enum_column(PayoutStatus, "payout_status", default=PayoutStatus.PENDING, nullable=False)
    payout_method = Column(String(50), nullable=False)
    payout_details = Column(JSONType, nullable=True)
    idempotency_key = Column(String(255), unique=True, nullable=True)
    failure_reason = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    # Relationships
    affiliate = relationship("Affiliate", back_populates="payouts")

    __table_args__ = (
        Index('idx_affiliate_payouts_affiliate_id', 'affiliate_id'),
        Index('idx_affiliate_payouts_status', 'status'),
    )


class AffiliateAuditLog(Base):
    """Журнал изменений партнёров (до/после)"""
    __tablename__ = "affiliate_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    affiliate_id = Column(Uuid, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    action = Column(String(50), nullable=False)  # register, suspend, reactivate, adjust_rate, update_payout
    actor_id = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)
    before = Column(JSONType, nullable=True)
    after = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('idx_audit_affiliate_id', 'affiliate_id'),
    )


# ========== Функции для работы с БД ==========

@asynccontextmanager
async def transaction(session: AsyncSession, operation: str, **context):
    """
    Единица работы: commit при успехе, rollback при любой ошибке.

    Ошибки предметной области пробрасываются как есть, сбои SQLAlchemy
    заворачиваются в StorageError и логируются с контекстом.
    """
    try:
        yield session
        await session.commit()
    except AffiliateError:
        await session.rollback()
        raise
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Storage error in {operation} {context}: {e}", exc_info=True)
        raise StorageError(f"Storage failure during {operation}") from e


async def init_db():
    """Инициализация базы данных"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:
    """Получить сессию БД"""
    async with AsyncSessionLocal() as session:
        yield session


async def close_db():
    """Закрыть соединение с БД"""
    await engine.dispose()


# Импортируем модели рефералов и соревнований после определения всех моделей
from shared.referral_model import AffiliateReferral, ReferralStatus  # noqa: E402
from shared.competition_model import (  # noqa: E402
    AffiliateCompetition, CompetitionParticipant, CompetitionStatus
)
