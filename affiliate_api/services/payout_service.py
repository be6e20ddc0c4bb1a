"""
Сервис выплат партнёрам

Выплата захватывает подтверждённые рефералы одним условным UPDATE:
реферал с payout_id уже принадлежит другой выплате и повторно не попадёт.
"""
import logging
import uuid
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import (
    AffiliatePayout, AffiliateReferral, AffiliateStatus, PayoutStatus,
    ReferralStatus, transaction, utcnow
)
from shared.config import PAYOUT_MINIMUM_AMOUNT
from shared.errors import (
    ConflictError, ForbiddenError, IllegalTransitionError, InvalidInputError, NotFoundError
)
from shared.validation import sanitize_reason
from shared.admin_notifier import notify_admin_error
from affiliate_api.services.affiliate_service import AffiliateService

logger = logging.getLogger(__name__)


class PayoutService:
    """Сервис для работы с выплатами"""

    @staticmethod
    async def get_payout(session: AsyncSession, payout_id: uuid.UUID) -> AffiliatePayout:
        """
        Получить выплату

        Raises:
            NotFoundError
        """
        result = await session.execute(
            select(AffiliatePayout)
            .where(AffiliatePayout.id == payout_id)
            .execution_options(populate_existing=True)
        )
        payout = result.scalar_one_or_none()
        if not payout:
            raise NotFoundError("Payout not found")
        return payout

    @staticmethod
    async def get_by_idempotency_key(session: AsyncSession, idempotency_key: str) -> Optional[AffiliatePayout]:
        result = await session.execute(
            select(AffiliatePayout)
            .where(AffiliatePayout.idempotency_key == idempotency_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _replay(payout: AffiliatePayout, affiliate_id: uuid.UUID) -> AffiliatePayout:
        """Повтор запроса с тем же ключом идемпотентности"""
        if payout.affiliate_id != affiliate_id:
            raise ConflictError("Idempotency key is already used", code="IDEMPOTENCY_KEY_REUSED")
        logger.info(f"Payout {payout.id} returned for repeated idempotency key")
        return payout

    @staticmethod
    async def create_payout(
        session: AsyncSession,
        affiliate_id: uuid.UUID,
        idempotency_key: Optional[str] = None
    ) -> AffiliatePayout:
        """
        Создать выплату по всем подтверждённым и ещё не захваченным рефералам

        Raises:
            ForbiddenError: партнёр заблокирован
            InvalidInputError: нечего выплачивать или сумма ниже минимальной
        """
        if idempotency_key:
            existing = await PayoutService.get_by_idempotency_key(session, idempotency_key)
            if existing:
                return PayoutService._replay(existing, affiliate_id)

        try:
            async with transaction(session, "create_payout", affiliate_id=affiliate_id):
                # Блокировка партнёра упорядочивает выплаты одного партнёра
                affiliate = await AffiliateService.get_by_id(session, affiliate_id, for_update=True)
                if affiliate.status == AffiliateStatus.SUSPENDED:
                    raise ForbiddenError("Suspended affiliates can not request payouts", code="AFFILIATE_SUSPENDED")

                payout = AffiliatePayout(
                    affiliate_id=affiliate_id,
                    amount=Decimal("0"),
                    status=PayoutStatus.PENDING,
                    payout_method=affiliate.payout_method,
                    payout_details=affiliate.payout_details,
                    idempotency_key=idempotency_key
                )
                session.add(payout)

                try:
                    await session.flush()
                except IntegrityError:
                    raise ConflictError("Idempotency key is already used", code="DUPLICATE_IDEMPOTENCY_KEY")

                # Захват: только approved без payout_id
                result = await session.execute(
                    update(AffiliateReferral)
                    .where(
                        AffiliateReferral.affiliate_id == affiliate_id,
                        AffiliateReferral.status == ReferralStatus.APPROVED,
                        AffiliateReferral.payout_id.is_(None)
                    )
                    .values(payout_id=payout.id, updated_at=utcnow())
                    .returning(AffiliateReferral.commission_earned)
                    .execution_options(synchronize_session=False)
                )
                amounts = [Decimal(str(amount)) for amount in result.scalars().all()]

                if not amounts:
                    raise InvalidInputError("No approved referrals to pay out", code="NOTHING_TO_PAY")

                total = sum(amounts, Decimal("0"))
                if total < PAYOUT_MINIMUM_AMOUNT:
                    raise InvalidInputError(
                        f"Payout amount {total} is below minimum {PAYOUT_MINIMUM_AMOUNT}",
                        code="MINIMUM_PAYOUT"
                    )

                payout.amount = total
                await session.flush()

        except ConflictError as e:
            if e.code != "DUPLICATE_IDEMPOTENCY_KEY":
                raise
            existing = await PayoutService.get_by_idempotency_key(session, idempotency_key)
            if not existing:
                raise
            return PayoutService._replay(existing, affiliate_id)

        logger.info(
            f"Created payout {payout.id} for affiliate {affiliate_id}: "
            f"{len(amounts)} referral(s), amount {total}"
        )
        return payout

    @staticmethod
    async def _transition(
        session: AsyncSession,
        payout_id: uuid.UUID,
        expected: PayoutStatus,
        target: PayoutStatus,
        **values
    ) -> AffiliatePayout:
        """
        Условный переход статуса выплаты (внутри транзакции вызывающего)
        """
        result = await session.execute(
            update(AffiliatePayout)
            .where(
                AffiliatePayout.id == payout_id,
                AffiliatePayout.status == expected
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )

        payout = await PayoutService.get_payout(session, payout_id)
        if result.rowcount == 0:
            raise IllegalTransitionError(
                f"Can not move payout from {payout.status.value} to {target.value}"
            )
        return payout

    @staticmethod
    async def start_processing(session: AsyncSession, payout_id: uuid.UUID) -> AffiliatePayout:
        """pending -> processing"""
        async with transaction(session, "start_payout_processing", payout_id=payout_id):
            payout = await PayoutService._transition(
                session, payout_id, PayoutStatus.PENDING, PayoutStatus.PROCESSING
            )

        logger.info(f"Payout {payout_id} is processing")
        return payout

    @staticmethod
    async def mark_completed(session: AsyncSession, payout_id: uuid.UUID) -> AffiliatePayout:
        """
        Завершить выплату: processing -> completed, захваченные рефералы -> paid
        """
        async with transaction(session, "complete_payout", payout_id=payout_id):
            payout = await PayoutService._transition(
                session, payout_id, PayoutStatus.PROCESSING, PayoutStatus.COMPLETED,
                processed_at=utcnow()
            )

            result = await session.execute(
                update(AffiliateReferral)
                .where(
                    AffiliateReferral.payout_id == payout_id,
                    AffiliateReferral.status == ReferralStatus.APPROVED
                )
                .values(status=ReferralStatus.PAID, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        logger.info(f"Payout {payout_id} completed: {payout.amount}, {result.rowcount} referral(s) paid")
        return payout

    @staticmethod
    async def mark_failed(session: AsyncSession, payout_id: uuid.UUID, reason: str) -> AffiliatePayout:
        """
        Провал выплаты: processing -> failed

        Захват снимается, и рефералы попадут в следующую выплату.
        """
        reason = sanitize_reason(reason)

        async with transaction(session, "fail_payout", payout_id=payout_id):
            payout = await PayoutService._transition(
                session, payout_id, PayoutStatus.PROCESSING, PayoutStatus.FAILED,
                failure_reason=reason, processed_at=utcnow()
            )

            result = await session.execute(
                update(AffiliateReferral)
                .where(AffiliateReferral.payout_id == payout_id)
                .values(payout_id=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount

        logger.error(f"Payout {payout_id} failed: {reason}. Released {released} referral(s)")

        await notify_admin_error(
            "Payout failed",
            context={
                "payout_id": payout_id,
                "affiliate_id": payout.affiliate_id,
                "amount": payout.amount,
                "reason": reason or "-",
            }
        )
        return payout

    @staticmethod
    async def list_payouts(
        session: AsyncSession,
        affiliate_id: uuid.UUID,
        status: Optional[PayoutStatus] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict:
        conditions = [AffiliatePayout.affiliate_id == affiliate_id]
        if status:
            conditions.append(AffiliatePayout.status == status)

        result = await session.execute(
            select(func.count(AffiliatePayout.id)).where(*conditions)
        )
        total = result.scalar() or 0

        result = await session.execute(
            select(AffiliatePayout)
            .where(*conditions)
            .order_by(AffiliatePayout.created_at.desc(), AffiliatePayout.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )

        return {
            "payouts": result.scalars().all(),
            "total": total,
            "page": page,
            "limit": limit
        }
