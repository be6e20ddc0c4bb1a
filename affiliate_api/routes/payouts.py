"""
Эндпоинты выплат
"""
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import Affiliate, PayoutStatus, get_session
from shared.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from shared.errors import NotFoundError
from affiliate_api.middleware.auth import (
    CurrentUser, get_current_affiliate, get_current_user, require_admin
)
from affiliate_api.schemas import CreatePayoutRequest, FailPayoutRequest
from affiliate_api.serializers import page, serialize_payout
from affiliate_api.services.affiliate_service import AffiliateService
from affiliate_api.services.payout_service import PayoutService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/affiliates/payouts", tags=["payouts"])


@router.get("")
async def list_my_payouts(
    status: Optional[PayoutStatus] = None,
    page_number: int = Query(1, ge=1, alias="page"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    affiliate: Affiliate = Depends(get_current_affiliate),
    session: AsyncSession = Depends(get_session)
):
    result = await PayoutService.list_payouts(
        session, affiliate.id, status=status, page=page_number, limit=limit
    )
    items = [serialize_payout(p) for p in result["payouts"]]
    return {"success": True, "data": page(items, result)}


@router.post("", status_code=201)
async def request_payout(
    body: Optional[CreatePayoutRequest] = None,
    idempotency_key: Optional[str] = Header(default=None),
    affiliate: Affiliate = Depends(get_current_affiliate),
    session: AsyncSession = Depends(get_session)
):
    """
    Запросить выплату по всем подтверждённым рефералам

    Ключ идемпотентности берётся из заголовка Idempotency-Key или тела.
    """
    key = idempotency_key or (body.idempotency_key if body else None)
    payout = await PayoutService.create_payout(session, affiliate.id, idempotency_key=key)
    return {"success": True, "data": serialize_payout(payout)}


@router.get("/{payout_id}")
async def get_payout(
    payout_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session)
):
    payout = await PayoutService.get_payout(session, payout_id)

    # Чужие выплаты видит только админ
    if not user.is_admin:
        affiliate = await AffiliateService.get(session, user.user_id)
        if payout.affiliate_id != affiliate.id:
            raise NotFoundError("Payout not found")

    return {"success": True, "data": serialize_payout(payout)}


@router.post("/{payout_id}/process")
async def start_processing(
    payout_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    payout = await PayoutService.start_processing(session, payout_id)
    return {"success": True, "data": serialize_payout(payout)}


@router.post("/{payout_id}/complete")
async def complete_payout(
    payout_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    payout = await PayoutService.mark_completed(session, payout_id)
    return {"success": True, "data": serialize_payout(payout)}


@router.post("/{payout_id}/fail")
async def fail_payout(
    payout_id: UUID,
    body: FailPayoutRequest,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    payout = await PayoutService.mark_failed(session, payout_id, body.reason)
    return {"success": True, "data": serialize_payout(payout)}
