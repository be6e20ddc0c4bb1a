"""
Сервис учёта рефералов (продаж по партнёрским ссылкам)
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import (
    Affiliate, AffiliateClick, AffiliateReferral, AffiliateStatus,
    ReferralStatus, transaction, utcnow
)
from shared.referral_model import can_transition
from shared.config import AFFILIATE_COMMISSION_CAP
from shared.errors import (
    ConflictError, IllegalTransitionError, InvalidInputError,
    NotFoundError, UnknownOrInactiveAffiliateError
)
from shared.validation import ensure_valid, sanitize_reason, to_decimal, validate_sale_amount
from affiliate_api.services.commission import commission, quantize_money
from affiliate_api.services.competition_service import CompetitionService
from affiliate_api.services.affiliate_service import AffiliateService
from affiliate_api.services.click_service import ClickService

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "created_at": AffiliateReferral.created_at,
    "sale_amount": AffiliateReferral.sale_amount,
    "commission": AffiliateReferral.commission_earned,
}


class ReferralService:
    """Сервис для работы с рефералами"""

    @staticmethod
    async def get_referral(session: AsyncSession, referral_id: uuid.UUID) -> AffiliateReferral:
        """
        Получить реферал

        Raises:
            NotFoundError
        """
        result = await session.execute(
            select(AffiliateReferral)
            .where(AffiliateReferral.id == referral_id)
            .execution_options(populate_existing=True)
        )
        referral = result.scalar_one_or_none()
        if not referral:
            raise NotFoundError("Referral not found")
        return referral

    @staticmethod
    async def get_by_sale_id(session: AsyncSession, external_sale_id: str) -> Optional[AffiliateReferral]:
        result = await session.execute(
            select(AffiliateReferral)
            .where(AffiliateReferral.external_sale_id == external_sale_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def validated_amount(sale_amount) -> Decimal:
        """
        Сумма продажи: > 0, не точнее копейки

        Raises:
            InvalidInputError
        """
        sale_amount = to_decimal(sale_amount, "sale_amount")
        ensure_valid(validate_sale_amount(sale_amount), code="INVALID_AMOUNT")
        return quantize_money(sale_amount)

    @staticmethod
    async def _click_owner(session: AsyncSession, click_id: uuid.UUID) -> Optional[uuid.UUID]:
        result = await session.execute(
            select(AffiliateClick.affiliate_id).where(AffiliateClick.id == click_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _add_earnings(session: AsyncSession, affiliate_id: uuid.UUID, amount: Decimal):
        """Атомарно изменить total_earnings (amount может быть отрицательным)"""
        await session.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate_id)
            .values(total_earnings=Affiliate.total_earnings + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def record_referral(
        session: AsyncSession,
        affiliate_id: uuid.UUID,
        referred_user_id: str,
        sale_amount: Decimal,
        product_id: Optional[str] = None,
        referral_source: Optional[str] = None,
        click_id: Optional[uuid.UUID] = None,
        external_sale_id: Optional[str] = None
    ) -> AffiliateReferral:
        """
        Зафиксировать продажу по партнёрке

        Реферал, счётчик total_referrals и активность в соревнованиях
        пишутся одной транзакцией. Повтор с тем же external_sale_id
        возвращает уже созданный реферал.

        Raises:
            UnknownOrInactiveAffiliateError: партнёр не найден или не активен
            InvalidInputError: некорректная сумма, самореферал или чужой клик
        """
        sale_amount = ReferralService.validated_amount(sale_amount)

        if external_sale_id:
            existing = await ReferralService.get_by_sale_id(session, external_sale_id)
            if existing:
                logger.info(f"Sale {external_sale_id} already recorded as referral {existing.id}")
                return existing

        try:
            async with transaction(session, "record_referral", affiliate_id=affiliate_id, sale_id=external_sale_id):
                result = await session.execute(
                    select(Affiliate)
                    .where(Affiliate.id == affiliate_id)
                    .execution_options(populate_existing=True)
                )
                affiliate = result.scalar_one_or_none()
                if not affiliate or affiliate.status != AffiliateStatus.ACTIVE:
                    raise UnknownOrInactiveAffiliateError("Affiliate not found or not active")

                if referred_user_id == affiliate.user_id:
                    logger.warning(f"Self-referral attempt by user {referred_user_id}")
                    raise InvalidInputError("Affiliates can not refer themselves", code="SELF_REFERRAL")

                if click_id and await ReferralService._click_owner(session, click_id) != affiliate_id:
                    raise InvalidInputError("Click does not belong to this affiliate", code="INVALID_CLICK")

                # Ставка читается один раз и сохраняется в реферале
                rate = affiliate.commission_rate
                earned = commission(sale_amount, rate, AFFILIATE_COMMISSION_CAP)

                referral = AffiliateReferral(
                    affiliate_id=affiliate_id,
                    referred_user_id=referred_user_id,
                    product_id=product_id,
                    click_id=click_id,
                    external_sale_id=external_sale_id,
                    sale_amount=sale_amount,
                    commission_rate=rate,
                    commission_earned=earned,
                    status=ReferralStatus.PENDING,
                    referral_source=referral_source
                )
                session.add(referral)

                try:
                    await session.flush()
                except IntegrityError:
                    # Единственное уникальное поле реферала - external_sale_id
                    if not external_sale_id:
                        raise
                    raise ConflictError("Sale already recorded", code="DUPLICATE_SALE")

                await session.execute(
                    update(Affiliate)
                    .where(Affiliate.id == affiliate_id)
                    .values(total_referrals=Affiliate.total_referrals + 1, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )

                await CompetitionService.record_referral_activity(session, affiliate_id, referral)

        except ConflictError as e:
            # Параллельная доставка той же продажи: отдаём победителя гонки
            if e.code != "DUPLICATE_SALE" or not external_sale_id:
                raise
            existing = await ReferralService.get_by_sale_id(session, external_sale_id)
            if not existing:
                raise
            logger.info(f"Sale {external_sale_id} recorded concurrently as referral {existing.id}")
            return existing

        logger.info(
            f"Recorded referral {referral.id} for affiliate {affiliate_id}: "
            f"sale {sale_amount} x {rate} = {earned}"
        )
        return referral

    @staticmethod
    async def approve(session: AsyncSession, referral_id: uuid.UUID) -> AffiliateReferral:
        """
        Подтвердить реферал: pending -> approved, комиссия добавляется к заработку

        Raises:
            NotFoundError
            IllegalTransitionError: реферал не в статусе pending
        """
        async with transaction(session, "approve_referral", referral_id=referral_id):
            result = await session.execute(
                update(AffiliateReferral)
                .where(
                    AffiliateReferral.id == referral_id,
                    AffiliateReferral.status == ReferralStatus.PENDING
                )
                .values(status=ReferralStatus.APPROVED, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

            referral = await ReferralService.get_referral(session, referral_id)
            if result.rowcount == 0:
                raise IllegalTransitionError(
                    f"Can not approve referral in status {referral.status.value}"
                )

            await ReferralService._add_earnings(session, referral.affiliate_id, referral.commission_earned)

        logger.info(f"Approved referral {referral_id}: +{referral.commission_earned} to affiliate {referral.affiliate_id}")
        return referral

    @staticmethod
    async def cancel(
        session: AsyncSession,
        referral_id: uuid.UUID,
        reason: Optional[str] = None
    ) -> AffiliateReferral:
        """
        Отменить реферал (из pending или approved)

        Для approved комиссия вычитается из заработка. Реферал, захваченный
        выплатой, отменить нельзя.

        Raises:
            NotFoundError
            IllegalTransitionError: реферал уже выплачен или отменён
            ConflictError: реферал в выплате или изменён параллельно
        """
        reason = sanitize_reason(reason)

        async with transaction(session, "cancel_referral", referral_id=referral_id):
            referral = await ReferralService.get_referral(session, referral_id)
            observed = referral.status

            if not can_transition(observed, ReferralStatus.CANCELLED):
                raise IllegalTransitionError(f"Can not cancel referral in status {observed.value}")

            if referral.payout_id is not None:
                raise ConflictError("Referral is claimed by a payout", code="CLAIMED_BY_PAYOUT")

            result = await session.execute(
                update(AffiliateReferral)
                .where(
                    AffiliateReferral.id == referral_id,
                    AffiliateReferral.status == observed,
                    AffiliateReferral.payout_id.is_(None)
                )
                .values(
                    status=ReferralStatus.CANCELLED,
                    cancellation_reason=reason,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.warning(f"Referral {referral_id} changed while cancelling")
                raise ConflictError("Referral was modified concurrently, retry", code="CONCURRENT_UPDATE")

            if observed == ReferralStatus.APPROVED:
                await ReferralService._add_earnings(session, referral.affiliate_id, -referral.commission_earned)

            referral = await ReferralService.get_referral(session, referral_id)

        logger.info(f"Cancelled referral {referral_id} (was {observed.value}): {reason or '-'}")
        return referral

    @staticmethod
    async def list_referrals(
        session: AsyncSession,
        affiliate_id: uuid.UUID,
        status: Optional[ReferralStatus] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20
    ) -> Dict:
        conditions = [AffiliateReferral.affiliate_id == affiliate_id]
        if status:
            conditions.append(AffiliateReferral.status == status)
        if start_date:
            conditions.append(AffiliateReferral.created_at >= start_date)
        if end_date:
            conditions.append(AffiliateReferral.created_at <= end_date)

        result = await session.execute(
            select(func.count(AffiliateReferral.id)).where(*conditions)
        )
        total = result.scalar() or 0

        column = SORT_COLUMNS.get(sort_by, AffiliateReferral.created_at)
        order = column.asc() if sort_order == "asc" else column.desc()

        result = await session.execute(
            select(AffiliateReferral)
            .where(*conditions)
            .order_by(order, AffiliateReferral.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )

        return {
            "referrals": result.scalars().all(),
            "total": total,
            "page": page,
            "limit": limit
        }

    @staticmethod
    async def _record_attributed(
        session: AsyncSession,
        affiliate: Affiliate,
        buyer_id: str,
        sale_amount: Decimal,
        product_id: Optional[str],
        click_id: Optional[uuid.UUID],
        referral_source: str,
        sale_id: Optional[str]
    ) -> AffiliateReferral:
        """
        Записать продажу, приписанную партнёру по коду, и отметить клик

        Клик засчитывается только если он принадлежит тому же партнёру.
        """
        affiliate_id = affiliate.id
        if click_id and await ReferralService._click_owner(session, click_id) != affiliate_id:
            logger.warning(f"Sale {sale_id or '-'}: click {click_id} does not belong to affiliate {affiliate_id}, ignoring click")
            click_id = None

        referral = await ReferralService.record_referral(
            session,
            affiliate_id=affiliate_id,
            referred_user_id=buyer_id,
            sale_amount=sale_amount,
            product_id=product_id,
            referral_source=referral_source,
            click_id=click_id,
            external_sale_id=sale_id
        )

        # При повторной доставке конверсия тоже повторяется (идемпотентно)
        if referral.click_id:
            await ClickService.mark_converted(session, referral.click_id)

        return referral

    @staticmethod
    async def process_sale_event(
        session: AsyncSession,
        sale_id: str,
        buyer_id: str,
        sale_amount: Decimal,
        affiliate_code: Optional[str] = None,
        product_id: Optional[str] = None,
        click_id: Optional[uuid.UUID] = None,
        referral_source: Optional[str] = None
    ) -> Optional[AffiliateReferral]:
        """
        Обработать событие о завершённой продаже от маркетплейса

        Продажи без кода, с неизвестным кодом и самореферальные пропускаются.

        Returns:
            Реферал или None, если продажа не приписана партнёру

        Raises:
            InvalidInputError: некорректная сумма (проверяется до поиска кода)
        """
        sale_amount = ReferralService.validated_amount(sale_amount)

        if not affiliate_code:
            logger.debug(f"Sale {sale_id} has no affiliate code, skipping")
            return None

        try:
            affiliate = await AffiliateService.get_active_by_code(session, affiliate_code)
        except UnknownOrInactiveAffiliateError:
            logger.warning(f"Sale {sale_id} references unknown or inactive code {affiliate_code}, skipping")
            return None

        if buyer_id == affiliate.user_id:
            logger.warning(f"Sale {sale_id}: buyer {buyer_id} used own affiliate code, skipping")
            return None

        return await ReferralService._record_attributed(
            session,
            affiliate,
            buyer_id=buyer_id,
            sale_amount=sale_amount,
            product_id=product_id,
            click_id=click_id,
            referral_source=referral_source or ("link" if click_id else "code"),
            sale_id=sale_id
        )

    @staticmethod
    async def convert_tracked_visit(
        session: AsyncSession,
        buyer_id: str,
        affiliate_code: Optional[str],
        sale_amount: Decimal,
        product_id: Optional[str] = None,
        click_id: Optional[uuid.UUID] = None,
        sale_id: Optional[str] = None
    ) -> AffiliateReferral:
        """
        Конверсия посетителя, пришедшего по партнёрской ссылке

        Код и клик берутся из cookie, выставленной при трекинге перехода.
        В отличие от webhook, отказ возвращается покупателю ошибкой.

        Raises:
            InvalidInputError: нет cookie с кодом, некорректная сумма, самореферал
            UnknownOrInactiveAffiliateError: код больше не активен
        """
        sale_amount = ReferralService.validated_amount(sale_amount)

        if not affiliate_code:
            raise InvalidInputError("No affiliate referral found", code="NO_REFERRAL")

        affiliate = await AffiliateService.get_active_by_code(session, affiliate_code)

        return await ReferralService._record_attributed(
            session,
            affiliate,
            buyer_id=buyer_id,
            sale_amount=sale_amount,
            product_id=product_id,
            click_id=click_id,
            referral_source="link",
            sale_id=sale_id
        )
