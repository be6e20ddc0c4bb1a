"""
Эндпоинты реестра партнёров и трекинга кликов
"""
import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import Affiliate, AffiliateStatus, get_session
from shared.config import (
    ATTRIBUTION_COOKIE_MAX_AGE, COOKIE_SECURE, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
)
from shared.admin_notifier import notify_admin_info
from affiliate_api.middleware.auth import (
    CurrentUser, get_current_affiliate, get_current_user, require_admin
)
from affiliate_api.schemas import (
    AdjustRateRequest, ConvertVisitRequest, RegisterAffiliateRequest, SuspendAffiliateRequest,
    TrackClickRequest, UpdatePayoutDetailsRequest
)
from affiliate_api.serializers import (
    page, serialize_affiliate, serialize_click, serialize_metrics,
    serialize_referral, serialize_stats
)
from affiliate_api.services.affiliate_service import AffiliateService
from affiliate_api.services.click_service import ClickService
from affiliate_api.services.referral_service import ReferralService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/affiliates", tags=["affiliates"])

# Cookie атрибуции: код партнёра, клик и продукт
REF_COOKIE = "affiliate_ref"
CLICK_COOKIE = "affiliate_click"
PRODUCT_COOKIE = "affiliate_product"


@router.post("", status_code=201)
async def register_affiliate(
    body: RegisterAffiliateRequest,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session)
):
    """Регистрация в партнёрской программе"""
    affiliate = await AffiliateService.register(
        session,
        user_id=user.user_id,
        payout_method=body.payout_method,
        payout_details=body.payout_details
    )
    return {"success": True, "data": serialize_affiliate(affiliate)}


@router.get("")
async def list_affiliates(
    status: Optional[AffiliateStatus] = None,
    sort_by: str = Query("created_at", pattern="^(earnings|referrals|created_at)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page_number: int = Query(1, ge=1, alias="page"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    """Список партнёров (админ)"""
    result = await AffiliateService.list_affiliates(
        session, status=status, sort_by=sort_by, sort_order=sort_order,
        page=page_number, limit=limit
    )
    items = [serialize_affiliate(a) for a in result["affiliates"]]
    return {"success": True, "data": page(items, result)}


@router.get("/me")
async def get_me(affiliate: Affiliate = Depends(get_current_affiliate)):
    return {"success": True, "data": serialize_affiliate(affiliate)}


@router.put("/me")
async def update_me(
    body: UpdatePayoutDetailsRequest,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session)
):
    """Изменить способ выплаты"""
    affiliate = await AffiliateService.update_payout_details(
        session, user.user_id, body.payout_method, body.payout_details
    )
    return {"success": True, "data": serialize_affiliate(affiliate)}


@router.get("/me/stats")
async def get_my_stats(
    period: str = Query("month", pattern="^(day|week|month|year)$"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    affiliate: Affiliate = Depends(get_current_affiliate),
    session: AsyncSession = Depends(get_session)
):
    """Статистика и динамика по периодам"""
    affiliate_id = affiliate.id
    stats = await AffiliateService.get_stats(session, affiliate_id)
    metrics = await AffiliateService.get_performance_metrics(
        session, affiliate_id, period=period, start_date=start_date, end_date=end_date
    )
    return {
        "success": True,
        "data": {**serialize_stats(stats), "metrics": serialize_metrics(metrics)}
    }


@router.get("/{affiliate_id}/stats")
async def get_affiliate_stats(
    affiliate_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    stats = await AffiliateService.get_stats(session, affiliate_id)
    return {"success": True, "data": serialize_stats(stats)}


@router.post("/{affiliate_id}/suspend")
async def suspend_affiliate(
    affiliate_id: UUID,
    body: SuspendAffiliateRequest,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    """Заблокировать партнёра (админ)"""
    affiliate = await AffiliateService.suspend(session, affiliate_id, body.reason, actor_id=admin.user_id)
    await notify_admin_info(
        f"Affiliate {affiliate.affiliate_code} suspended by {admin.user_id}: {affiliate.suspension_reason}"
    )
    return {"success": True, "data": serialize_affiliate(affiliate)}


@router.post("/{affiliate_id}/reactivate")
async def reactivate_affiliate(
    affiliate_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    affiliate = await AffiliateService.reactivate(session, affiliate_id, actor_id=admin.user_id)
    return {"success": True, "data": serialize_affiliate(affiliate)}


@router.put("/{affiliate_id}/rate")
async def adjust_rate(
    affiliate_id: UUID,
    body: AdjustRateRequest,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    """Изменить ставку комиссии (админ)"""
    affiliate = await AffiliateService.adjust_rate(
        session, affiliate_id, body.commission_rate, actor_id=admin.user_id
    )
    return {"success": True, "data": serialize_affiliate(affiliate)}


@router.post("/track", status_code=201)
async def track_click(
    body: TrackClickRequest,
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_session)
):
    """
    Трекинг перехода по партнёрской ссылке (публичный)

    Код, клик и продукт запоминаются в cookie для последующей конверсии.
    """
    click = await ClickService.record_click(
        session,
        affiliate_code=body.affiliate_code,
        visitor_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        product_id=body.product_id,
        referrer_url=body.referrer_url or request.headers.get("referer"),
        landing_page=body.landing_page
    )

    attribution = {
        REF_COOKIE: body.affiliate_code.strip().upper(),
        CLICK_COOKIE: str(click.id),
    }
    if body.product_id:
        attribution[PRODUCT_COOKIE] = body.product_id

    for key, value in attribution.items():
        response.set_cookie(
            key,
            value,
            max_age=ATTRIBUTION_COOKIE_MAX_AGE,
            httponly=True,
            secure=COOKIE_SECURE,
            samesite="lax"
        )

    return {"success": True, "data": {"click_id": str(click.id), "tracked": True}}


@router.put("/track")
async def convert_tracked_visit(
    body: ConvertVisitRequest,
    request: Request,
    response: Response,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session)
):
    """
    Конверсия: покупка пользователя, пришедшего по партнёрской ссылке

    Реферал приписывается партнёру из cookie, после чего cookie удаляются.
    """
    click_id = None
    raw_click_id = request.cookies.get(CLICK_COOKIE)
    if raw_click_id:
        try:
            click_id = UUID(raw_click_id)
        except ValueError:
            logger.warning(f"Malformed click cookie from user {user.user_id}, ignoring")

    referral = await ReferralService.convert_tracked_visit(
        session,
        buyer_id=user.user_id,
        affiliate_code=request.cookies.get(REF_COOKIE),
        sale_amount=body.sale_amount,
        product_id=body.product_id or request.cookies.get(PRODUCT_COOKIE),
        click_id=click_id,
        sale_id=body.sale_id
    )

    for key in (REF_COOKIE, PRODUCT_COOKIE, CLICK_COOKIE):
        response.delete_cookie(key, httponly=True, secure=COOKIE_SECURE, samesite="lax")

    return {"success": True, "data": serialize_referral(referral)}


@router.post("/clicks/{click_id}/convert")
async def convert_click(
    click_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    click = await ClickService.mark_converted(session, click_id)
    return {"success": True, "data": serialize_click(click)}
