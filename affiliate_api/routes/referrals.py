"""
Эндпоинты рефералов
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import Affiliate, ReferralStatus, get_session
from shared.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from shared.validation import to_naive_utc
from affiliate_api.middleware.auth import CurrentUser, get_current_affiliate, require_admin
from affiliate_api.schemas import CancelReferralRequest, RecordReferralRequest
from affiliate_api.serializers import page, serialize_referral
from affiliate_api.services.referral_service import ReferralService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/affiliates/referrals", tags=["referrals"])


@router.get("")
async def list_my_referrals(
    status: Optional[ReferralStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sort_by: str = Query("created_at", pattern="^(created_at|sale_amount|commission)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page_number: int = Query(1, ge=1, alias="page"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    affiliate: Affiliate = Depends(get_current_affiliate),
    session: AsyncSession = Depends(get_session)
):
    """Рефералы текущего партнёра"""
    result = await ReferralService.list_referrals(
        session,
        affiliate.id,
        status=status,
        start_date=to_naive_utc(start_date),
        end_date=to_naive_utc(end_date),
        sort_by=sort_by,
        sort_order=sort_order,
        page=page_number,
        limit=limit
    )
    items = [serialize_referral(r) for r in result["referrals"]]
    return {"success": True, "data": page(items, result)}


@router.post("", status_code=201)
async def record_referral(
    body: RecordReferralRequest,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    """Ручная запись продажи (админ)"""
    referral = await ReferralService.record_referral(
        session,
        affiliate_id=body.affiliate_id,
        referred_user_id=body.referred_user_id,
        sale_amount=body.sale_amount,
        product_id=body.product_id,
        referral_source=body.referral_source,
        click_id=body.click_id,
        external_sale_id=body.external_sale_id
    )
    return {"success": True, "data": serialize_referral(referral)}


@router.post("/{referral_id}/approve")
async def approve_referral(
    referral_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    referral = await ReferralService.approve(session, referral_id)
    return {"success": True, "data": serialize_referral(referral)}


@router.post("/{referral_id}/cancel")
async def cancel_referral(
    referral_id: UUID,
    body: CancelReferralRequest,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    referral = await ReferralService.cancel(session, referral_id, body.reason)
    return {"success": True, "data": serialize_referral(referral)}
