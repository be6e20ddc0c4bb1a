"""
Эндпоинты соревнований
"""
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import Affiliate, CompetitionStatus, get_session
from shared.config import (
    DEFAULT_PAGE_SIZE, LEADERBOARD_DEFAULT_PAGE_SIZE, LEADERBOARD_MAX_PAGE_SIZE, MAX_PAGE_SIZE
)
from affiliate_api.middleware.auth import CurrentUser, get_current_affiliate, require_admin
from affiliate_api.schemas import CreateCompetitionRequest
from affiliate_api.serializers import (
    page, serialize_competition, serialize_leaderboard, serialize_participant
)
from affiliate_api.services.competition_service import CompetitionService, resolve_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/affiliates/competitions", tags=["competitions"])


@router.get("")
async def list_competitions(
    status: Optional[CompetitionStatus] = None,
    sort_by: str = Query("start_date", pattern="^(start_date|end_date|prize_pool|created_at)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page_number: int = Query(1, ge=1, alias="page"),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    session: AsyncSession = Depends(get_session)
):
    result = await CompetitionService.list_competitions(
        session, status=status, sort_by=sort_by, sort_order=sort_order,
        page=page_number, limit=limit
    )
    items = [
        serialize_competition(row["competition"], row["status"], row["participant_count"])
        for row in result["competitions"]
    ]
    return {"success": True, "data": page(items, result)}


@router.post("", status_code=201)
async def create_competition(
    body: CreateCompetitionRequest,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    """Создать соревнование (админ)"""
    competition = await CompetitionService.create(
        session,
        name=body.name,
        description=body.description,
        start_date=body.start_date,
        end_date=body.end_date,
        prize_pool=body.prize_pool,
        rules=body.rules
    )
    return {"success": True, "data": serialize_competition(competition, resolve_status(competition))}


@router.get("/{competition_id}")
async def get_competition(competition_id: UUID, session: AsyncSession = Depends(get_session)):
    competition = await CompetitionService.get(session, competition_id)
    return {"success": True, "data": serialize_competition(competition, resolve_status(competition))}


@router.post("/{competition_id}/join", status_code=201)
async def join_competition(
    competition_id: UUID,
    affiliate: Affiliate = Depends(get_current_affiliate),
    session: AsyncSession = Depends(get_session)
):
    participant = await CompetitionService.join(session, competition_id, affiliate.id)
    return {"success": True, "data": serialize_participant(participant)}


@router.get("/{competition_id}/leaderboard")
async def get_leaderboard(
    competition_id: UUID,
    limit: int = Query(LEADERBOARD_DEFAULT_PAGE_SIZE, ge=1, le=LEADERBOARD_MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session)
):
    board = await CompetitionService.leaderboard(session, competition_id, limit=limit, offset=offset)
    return {"success": True, "data": serialize_leaderboard(board)}


@router.post("/{competition_id}/settle")
async def settle_competition(
    competition_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    """Распределить призы (админ)"""
    participants = await CompetitionService.settle(session, competition_id)
    return {"success": True, "data": [serialize_participant(p) for p in participants]}


@router.post("/{competition_id}/cancel")
async def cancel_competition(
    competition_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session)
):
    competition = await CompetitionService.cancel(session, competition_id, actor_id=admin.user_id)
    return {"success": True, "data": serialize_competition(competition, resolve_status(competition))}
