"""
Сервис реестра партнёров
"""
import hashlib
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import select, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import (
    Affiliate, AffiliateAuditLog, AffiliateClick, AffiliateReferral,
    AffiliateStatus, ReferralStatus, transaction, utcnow
)
from shared.config import AFFILIATE_CODE_PREFIX, DEFAULT_COMMISSION_RATE
from shared.errors import (
    ConflictError, InvalidInputError, NotFoundError, UnknownOrInactiveAffiliateError
)
from shared.validation import (
    ensure_valid, sanitize_reason, to_decimal, to_naive_utc,
    validate_commission_rate, validate_date_range, validate_payout_method
)

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "earnings": Affiliate.total_earnings,
    "referrals": Affiliate.total_referrals,
    "created_at": Affiliate.created_at,
}

# Окно по умолчанию для метрик: количество периодов до end_date
PERIOD_WINDOWS = {"day": 30, "week": 12, "month": 12, "year": 5}


class AffiliateService:
    """Сервис для работы с партнёрами"""

    @staticmethod
    def generate_affiliate_code(user_id: str) -> str:
        """
        Генерация партнёрского кода: AFF + 8 hex-символов
        """
        hash_object = hashlib.md5(f"{user_id}:{uuid.uuid4()}".encode())
        return f"{AFFILIATE_CODE_PREFIX}{hash_object.hexdigest()[:8].upper()}"

    @staticmethod
    def _audit(
        session: AsyncSession,
        affiliate: Affiliate,
        action: str,
        before: Optional[dict],
        actor_id: Optional[str] = None,
        reason: Optional[str] = None
    ):
        """
        Записать изменение партнёра в журнал (до/после)
        """
        after = affiliate.snapshot()
        session.add(AffiliateAuditLog(
            affiliate_id=affiliate.id,
            action=action,
            actor_id=actor_id,
            reason=reason,
            before=before,
            after=after
        ))
        logger.info(
            f"Audit affiliate {affiliate.id}: action={action} actor={actor_id or '-'} "
            f"before={before} after={after}"
        )

    @staticmethod
    async def register(
        session: AsyncSession,
        user_id: str,
        payout_method: str,
        payout_details: Optional[dict] = None,
        commission_rate: Optional[Decimal] = None
    ) -> Affiliate:
        """
        Регистрация пользователя в партнёрской программе

        Raises:
            ConflictError: у пользователя уже есть партнёрский аккаунт
        """
        rate = DEFAULT_COMMISSION_RATE if commission_rate is None else to_decimal(commission_rate, "commission_rate")
        ensure_valid(validate_commission_rate(rate), code="INVALID_RATE")
        ensure_valid(validate_payout_method(payout_method), code="INVALID_PAYOUT_METHOD")

        async with transaction(session, "register_affiliate", user_id=user_id):
            result = await session.execute(
                select(Affiliate.id).where(Affiliate.user_id == user_id)
            )
            if result.scalar_one_or_none():
                logger.info(f"User {user_id} already has an affiliate account")
                raise ConflictError("User already has an affiliate account", code="ALREADY_REGISTERED")

            affiliate = Affiliate(
                user_id=user_id,
                affiliate_code=AffiliateService.generate_affiliate_code(user_id),
                commission_rate=rate,
                total_earnings=Decimal("0"),
                total_referrals=0,
                status=AffiliateStatus.ACTIVE,
                payout_method=payout_method,
                payout_details=payout_details or {}
            )
            session.add(affiliate)

            try:
                await session.flush()
            except IntegrityError:
                # Параллельная регистрация того же пользователя упёрлась в unique(user_id)
                logger.warning(f"Concurrent registration for user {user_id}")
                raise ConflictError("User already has an affiliate account", code="ALREADY_REGISTERED")

            AffiliateService._audit(session, affiliate, "register", before=None, actor_id=user_id)

        logger.info(f"Registered affiliate {affiliate.affiliate_code} for user {user_id} (rate={rate})")
        return affiliate

    @staticmethod
    async def get(session: AsyncSession, user_id: str) -> Affiliate:
        """
        Получить партнёра по пользователю

        Raises:
            NotFoundError
        """
        result = await session.execute(
            select(Affiliate)
            .where(Affiliate.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        affiliate = result.scalar_one_or_none()
        if not affiliate:
            raise NotFoundError("Affiliate not found")
        return affiliate

    @staticmethod
    async def get_by_id(session: AsyncSession, affiliate_id: uuid.UUID, for_update: bool = False) -> Affiliate:
        # Счётчики меняются атомарными UPDATE мимо ORM, поэтому всегда перечитываем строку
        query = (
            select(Affiliate)
            .where(Affiliate.id == affiliate_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        affiliate = result.scalar_one_or_none()
        if not affiliate:
            raise NotFoundError("Affiliate not found")
        return affiliate

    @staticmethod
    async def get_active_by_code(session: AsyncSession, affiliate_code: str) -> Affiliate:
        """
        Найти активного партнёра по коду

        Raises:
            UnknownOrInactiveAffiliateError
        """
        result = await session.execute(
            select(Affiliate)
            .where(
                Affiliate.affiliate_code == (affiliate_code or "").strip().upper(),
                Affiliate.status == AffiliateStatus.ACTIVE
            )
            .execution_options(populate_existing=True)
        )
        affiliate = result.scalar_one_or_none()
        if not affiliate:
            raise UnknownOrInactiveAffiliateError("Invalid affiliate code")
        return affiliate

    @staticmethod
    async def suspend(
        session: AsyncSession,
        affiliate_id: uuid.UUID,
        reason: str,
        actor_id: Optional[str] = None
    ) -> Affiliate:
        """
        Заблокировать партнёра (идемпотентно)
        """
        reason = sanitize_reason(reason)

        async with transaction(session, "suspend_affiliate", affiliate_id=affiliate_id):
            affiliate = await AffiliateService.get_by_id(session, affiliate_id, for_update=True)

            if affiliate.status == AffiliateStatus.SUSPENDED:
                logger.info(f"Affiliate {affiliate_id} already suspended, no-op")
                return affiliate

            before = affiliate.snapshot()
            affiliate.status = AffiliateStatus.SUSPENDED
            affiliate.suspension_reason = reason
            await session.flush()

            AffiliateService._audit(session, affiliate, "suspend", before, actor_id=actor_id, reason=reason)

        logger.warning(f"Affiliate {affiliate_id} suspended: {reason}")
        return affiliate

    @staticmethod
    async def reactivate(
        session: AsyncSession,
        affiliate_id: uuid.UUID,
        actor_id: Optional[str] = None
    ) -> Affiliate:
        """
        Снять блокировку (идемпотентно)
        """
        async with transaction(session, "reactivate_affiliate", affiliate_id=affiliate_id):
            affiliate = await AffiliateService.get_by_id(session, affiliate_id, for_update=True)

            if affiliate.status == AffiliateStatus.ACTIVE:
                return affiliate

            before = affiliate.snapshot()
            affiliate.status = AffiliateStatus.ACTIVE
            affiliate.suspension_reason = None
            await session.flush()

            AffiliateService._audit(session, affiliate, "reactivate", before, actor_id=actor_id)

        logger.info(f"Affiliate {affiliate_id} reactivated")
        return affiliate

    @staticmethod
    async def adjust_rate(
        session: AsyncSession,
        affiliate_id: uuid.UUID,
        new_rate: Decimal,
        actor_id: Optional[str] = None
    ) -> Affiliate:
        """
        Изменить ставку комиссии

        Уже созданные рефералы не пересчитываются: ставка снимается в момент продажи.
        """
        new_rate = to_decimal(new_rate, "commission_rate")
        ensure_valid(validate_commission_rate(new_rate), code="INVALID_RATE")

        async with transaction(session, "adjust_rate", affiliate_id=affiliate_id):
            affiliate = await AffiliateService.get_by_id(session, affiliate_id, for_update=True)

            before = affiliate.snapshot()
            affiliate.commission_rate = new_rate
            await session.flush()

            AffiliateService._audit(session, affiliate, "adjust_rate", before, actor_id=actor_id)

        logger.info(f"Affiliate {affiliate_id} rate changed {before['commission_rate']} -> {new_rate}")
        return affiliate

    @staticmethod
    async def update_payout_details(
        session: AsyncSession,
        user_id: str,
        payout_method: str,
        payout_details: Optional[dict] = None
    ) -> Affiliate:
        """
        Обновить способ выплаты (self-service)
        """
        ensure_valid(validate_payout_method(payout_method), code="INVALID_PAYOUT_METHOD")

        async with transaction(session, "update_payout_details", user_id=user_id):
            affiliate = await AffiliateService.get(session, user_id)

            before = affiliate.snapshot()
            affiliate.payout_method = payout_method
            if payout_details is not None:
                affiliate.payout_details = payout_details
            await session.flush()

            AffiliateService._audit(session, affiliate, "update_payout", before, actor_id=user_id)

        return affiliate

    @staticmethod
    async def list_affiliates(
        session: AsyncSession,
        status: Optional[AffiliateStatus] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20
    ) -> Dict:
        """
        Список партнёров с пагинацией (для админки)
        """
        conditions = []
        if status:
            conditions.append(Affiliate.status == status)

        result = await session.execute(
            select(func.count(Affiliate.id)).where(*conditions)
        )
        total = result.scalar() or 0

        column = SORT_COLUMNS.get(sort_by, Affiliate.created_at)
        order = column.asc() if sort_order == "asc" else column.desc()

        result = await session.execute(
            select(Affiliate)
            .where(*conditions)
            .order_by(order, Affiliate.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )

        return {
            "affiliates": result.scalars().all(),
            "total": total,
            "page": page,
            "limit": limit
        }

    @staticmethod
    async def get_stats(session: AsyncSession, affiliate_id: uuid.UUID, now: Optional[datetime] = None) -> Dict:
        """
        Статистика партнёра для дашборда
        """
        affiliate = await AffiliateService.get_by_id(session, affiliate_id)
        now = now or utcnow()

        # Ожидающие подтверждения комиссии
        result = await session.execute(
            select(func.coalesce(func.sum(AffiliateReferral.commission_earned), 0)).where(
                AffiliateReferral.affiliate_id == affiliate_id,
                AffiliateReferral.status == ReferralStatus.PENDING
            )
        )
        pending_earnings = Decimal(str(result.scalar() or 0))

        # Текущий месяц
        start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        result = await session.execute(
            select(
                func.count(AffiliateReferral.id),
                func.coalesce(func.sum(AffiliateReferral.commission_earned), 0)
            ).where(
                and_(
                    AffiliateReferral.affiliate_id == affiliate_id,
                    AffiliateReferral.status != ReferralStatus.CANCELLED,
                    AffiliateReferral.created_at >= start_of_month
                )
            )
        )
        month_referrals, month_earnings = result.one()

        # Клики и конверсия
        result = await session.execute(
            select(func.count(AffiliateClick.id)).where(AffiliateClick.affiliate_id == affiliate_id)
        )
        click_count = result.scalar() or 0

        result = await session.execute(
            select(func.count(AffiliateClick.id)).where(
                AffiliateClick.affiliate_id == affiliate_id,
                AffiliateClick.converted.is_(True)
            )
        )
        converted_clicks = result.scalar() or 0

        # Топ продуктов
        earnings_sum = func.sum(AffiliateReferral.commission_earned)
        result = await session.execute(
            select(
                AffiliateReferral.product_id,
                func.count(AffiliateReferral.id),
                earnings_sum
            )
            .where(
                AffiliateReferral.affiliate_id == affiliate_id,
                AffiliateReferral.product_id.is_not(None),
                AffiliateReferral.status != ReferralStatus.CANCELLED
            )
            .group_by(AffiliateReferral.product_id)
            .order_by(earnings_sum.desc())
            .limit(5)
        )
        top_products = [
            {
                "product_id": product_id,
                "referrals": referrals,
                "earnings": Decimal(str(earnings or 0))
            }
            for product_id, referrals, earnings in result.all()
        ]

        return {
            "total_earnings": affiliate.total_earnings,
            "total_referrals": affiliate.total_referrals,
            "pending_earnings": pending_earnings,
            "click_count": click_count,
            "conversion_rate": round(converted_clicks / click_count, 4) if click_count else 0.0,
            "this_month_earnings": Decimal(str(month_earnings or 0)),
            "this_month_referrals": month_referrals or 0,
            "top_products": top_products
        }

    @staticmethod
    async def get_performance_metrics(
        session: AsyncSession,
        affiliate_id: uuid.UUID,
        period: str = "month",
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        now: Optional[datetime] = None
    ) -> Dict:
        """
        Динамика партнёра по периодам (день, неделя, месяц, год)

        Без явных границ берётся окно по умолчанию для периода:
        30 дней, 12 недель, 12 месяцев или 5 лет до end_date.
        Отменённые рефералы в заработок не входят.
        """
        if period not in PERIOD_WINDOWS:
            raise InvalidInputError(
                f"Unsupported period. Available: {', '.join(PERIOD_WINDOWS)}", code="INVALID_PERIOD"
            )

        end = to_naive_utc(end_date) if end_date else (now or utcnow())
        start = to_naive_utc(start_date) if start_date else period_window_start(period, end)
        ensure_valid(validate_date_range(start, end), code="INVALID_DATE_RANGE")

        buckets: Dict[datetime, dict] = {}

        def bucket(moment: datetime) -> dict:
            key = period_start(period, moment)
            if key not in buckets:
                buckets[key] = {
                    "period_start": key,
                    "referrals": 0,
                    "earnings": Decimal("0"),
                    "clicks": 0,
                    "conversions": 0
                }
            return buckets[key]

        result = await session.execute(
            select(
                AffiliateReferral.created_at,
                AffiliateReferral.commission_earned,
                AffiliateReferral.status
            ).where(
                AffiliateReferral.affiliate_id == affiliate_id,
                AffiliateReferral.created_at >= start,
                AffiliateReferral.created_at <= end
            )
        )
        for created_at, earned, status in result.all():
            entry = bucket(created_at)
            entry["referrals"] += 1
            if status != ReferralStatus.CANCELLED:
                entry["earnings"] += Decimal(str(earned))

        result = await session.execute(
            select(AffiliateClick.created_at, AffiliateClick.converted).where(
                AffiliateClick.affiliate_id == affiliate_id,
                AffiliateClick.created_at >= start,
                AffiliateClick.created_at <= end
            )
        )
        for created_at, converted in result.all():
            entry = bucket(created_at)
            entry["clicks"] += 1
            if converted:
                entry["conversions"] += 1

        return {
            "period": period,
            "start_date": start,
            "end_date": end,
            "data": [buckets[key] for key in sorted(buckets)]
        }


def period_start(period: str, moment: datetime) -> datetime:
    """Начало периода, в который попадает moment"""
    day = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "day":
        return day
    if period == "week":
        return day - timedelta(days=day.weekday())
    if period == "month":
        return day.replace(day=1)
    return day.replace(month=1, day=1)


def period_window_start(period: str, end: datetime) -> datetime:
    """Начало окна по умолчанию для периода"""
    if period == "month":
        months = end.year * 12 + end.month - 1 - PERIOD_WINDOWS["month"]
        return end.replace(year=months // 12, month=months % 12 + 1, day=1)
    if period == "year":
        return end.replace(year=end.year - PERIOD_WINDOWS["year"], month=1, day=1)
    days = PERIOD_WINDOWS[period] * (7 if period == "week" else 1)
    return end - timedelta(days=days)
