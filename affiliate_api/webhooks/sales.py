"""
Webhook о завершённых продажах маркетплейса
Идемпотентная обработка: одна продажа -> не более одного реферала
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import get_session
from shared.config import SALES_WEBHOOK_SECRET
from shared.errors import UnauthorizedError
from affiliate_api.schemas import SaleEvent
from affiliate_api.services.referral_service import ReferralService

logger = logging.getLogger(__name__)

router = APIRouter()


def verify_webhook_secret(secret: Optional[str]) -> bool:
    """
    Проверка общего секрета (сравнение за постоянное время)
    """
    if not SALES_WEBHOOK_SECRET:
        logger.error("SALES_WEBHOOK_SECRET is not configured, rejecting sale webhook")
        return False
    if not secret:
        return False
    return hmac.compare_digest(secret.encode(), SALES_WEBHOOK_SECRET.encode())


@router.post("/webhook/sales")
async def sales_webhook(
    event: SaleEvent,
    x_webhook_secret: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_session)
):
    """
    Обработка события о продаже

    Повторная доставка того же sale_id возвращает тот же реферал.
    """
    if not verify_webhook_secret(x_webhook_secret):
        logger.warning(f"Sale webhook {event.sale_id} rejected: invalid secret")
        raise UnauthorizedError("Invalid webhook secret")

    logger.info(
        f"Received sale webhook: sale_id={event.sale_id}, buyer={event.buyer_id}, "
        f"amount={event.sale_amount}, code={event.affiliate_code_used or '-'}"
    )

    referral = await ReferralService.process_sale_event(
        session,
        sale_id=event.sale_id,
        buyer_id=event.buyer_id,
        sale_amount=event.sale_amount,
        affiliate_code=event.affiliate_code_used,
        product_id=event.product_id,
        click_id=event.click_id,
        referral_source=event.referral_source
    )

    if referral is None:
        return {"success": True, "data": {"status": "ignored"}}

    return {
        "success": True,
        "data": {
            "status": "recorded",
            "referral_id": str(referral.id),
            "commission_earned": str(referral.commission_earned)
        }
    }
