"""
Сервис учёта переходов по партнёрским ссылкам
"""
import hashlib
import logging
import uuid
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import AffiliateClick, transaction, utcnow
from shared.redis_client import cache
from shared.config import RATE_LIMIT_CLICKS_PER_HOUR
from shared.errors import NotFoundError, RateLimitedError
from affiliate_api.services.affiliate_service import AffiliateService

logger = logging.getLogger(__name__)


class ClickService:
    """Сервис учёта кликов и конверсий"""

    @staticmethod
    def visitor_fingerprint(visitor_ip: Optional[str], user_agent: Optional[str]) -> str:
        """
        Отпечаток посетителя (IP + User-Agent)
        """
        raw = f"{visitor_ip or '-'}|{user_agent or '-'}"
        return hashlib.sha256(raw.encode()).hexdigest()[:16]

    @staticmethod
    async def check_rate_limit(affiliate_code: str, fingerprint: str):
        """
        Проверить лимит кликов посетителя по одному коду

        При ошибке Redis клик пропускается без лимита.

        Raises:
            RateLimitedError
        """
        cache_key = f"rate_limit:click:{affiliate_code}:{fingerprint}"

        try:
            count = await cache.incr(cache_key, ttl=3600)  # TTL 1 час
        except RedisError as e:
            logger.warning(f"Click rate limit unavailable, skipping check: {e}")
            return

        if count > RATE_LIMIT_CLICKS_PER_HOUR:
            logger.warning(
                f"Click rate limit exceeded for code {affiliate_code}: "
                f"fingerprint={fingerprint}, count={count}"
            )
            raise RateLimitedError("Too many clicks, try again later")

    @staticmethod
    async def record_click(
        session: AsyncSession,
        affiliate_code: str,
        visitor_ip: Optional[str],
        user_agent: Optional[str],
        product_id: Optional[str] = None,
        referrer_url: Optional[str] = None,
        landing_page: Optional[str] = None
    ) -> AffiliateClick:
        """
        Записать переход по партнёрской ссылке

        Raises:
            UnknownOrInactiveAffiliateError: код не принадлежит активному партнёру
            RateLimitedError: слишком много кликов от одного посетителя
        """
        affiliate = await AffiliateService.get_active_by_code(session, affiliate_code)

        fingerprint = ClickService.visitor_fingerprint(visitor_ip, user_agent)
        await ClickService.check_rate_limit(affiliate.affiliate_code, fingerprint)

        async with transaction(session, "record_click", affiliate_code=affiliate_code):
            click = AffiliateClick(
                affiliate_id=affiliate.id,
                product_id=product_id,
                visitor_ip=visitor_ip,
                user_agent=user_agent,
                referrer_url=referrer_url,
                landing_page=landing_page,
                converted=False
            )
            session.add(click)
            await session.flush()

        logger.info(
            f"Tracked click {click.id} for affiliate {affiliate.id} "
            f"product={product_id or '-'} fingerprint={fingerprint}"
        )
        return click

    @staticmethod
    async def get_click(session: AsyncSession, click_id: uuid.UUID) -> AffiliateClick:
        result = await session.execute(
            select(AffiliateClick)
            .where(AffiliateClick.id == click_id)
            .execution_options(populate_existing=True)
        )
        click = result.scalar_one_or_none()
        if not click:
            raise NotFoundError("Click not found")
        return click

    @staticmethod
    async def mark_converted(session: AsyncSession, click_id: uuid.UUID) -> AffiliateClick:
        """
        Отметить клик как сконвертированный

        Переход false -> true выполняется один раз условным UPDATE;
        повторный вызов - идемпотентный no-op.
        """
        async with transaction(session, "mark_click_converted", click_id=click_id):
            result = await session.execute(
                update(AffiliateClick)
                .where(
                    AffiliateClick.id == click_id,
                    AffiliateClick.converted.is_(False)
                )
                .values(converted=True, converted_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            click = await ClickService.get_click(session, click_id)

        if result.rowcount == 0:
            logger.info(f"Click {click_id} already converted, no-op")
        else:
            logger.info(f"Click {click_id} converted (affiliate {click.affiliate_id})")

        return click
