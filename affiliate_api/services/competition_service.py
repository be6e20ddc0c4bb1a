"""
Сервис соревнований партнёров

Статус соревнования не хранится, а вычисляется по часам при каждом чтении:
фонового планировщика нет. В базе хранится только upcoming или ручной
окончательный cancelled.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import (
    Affiliate, AffiliateCompetition, AffiliateReferral, AffiliateStatus,
    CompetitionParticipant, CompetitionStatus, transaction, utcnow
)
from shared.config import LEADERBOARD_MAX_PAGE_SIZE
from shared.errors import (
    AlreadySettledError, ConflictError, ForbiddenError, IllegalTransitionError,
    InvalidInputError, NotFoundError, NotJoinableError
)
from shared.validation import (
    ensure_valid, to_decimal, to_naive_utc,
    validate_competition_name, validate_date_range, validate_prize_pool
)
from affiliate_api.services import prize_policies
from affiliate_api.services.affiliate_service import AffiliateService

logger = logging.getLogger(__name__)

# Бейджи лидерборда
RANK_BADGES = {1: "🥇", 2: "🥈", 3: "🥉"}
STAR_BADGE = "⭐"
STAR_BADGE_MAX_RANK = 10

SORT_COLUMNS = {
    "start_date": AffiliateCompetition.start_date,
    "end_date": AffiliateCompetition.end_date,
    "prize_pool": AffiliateCompetition.prize_pool,
    "created_at": AffiliateCompetition.created_at,
}

LEADERBOARD_ORDER = (
    CompetitionParticipant.total_revenue.desc(),
    CompetitionParticipant.sales_count.desc(),
    CompetitionParticipant.joined_at.asc(),
    CompetitionParticipant.id.asc(),
)


def resolve_status(competition: AffiliateCompetition, now: Optional[datetime] = None) -> CompetitionStatus:
    """
    Эффективный статус соревнования на момент now
    """
    if competition.status == CompetitionStatus.CANCELLED:
        return CompetitionStatus.CANCELLED

    now = now or utcnow()
    if now < competition.start_date:
        return CompetitionStatus.UPCOMING
    if now < competition.end_date:
        return CompetitionStatus.ACTIVE
    return CompetitionStatus.ENDED


def status_condition(status: CompetitionStatus, now: datetime):
    """
    Тот же расчёт статуса, но как SQL-условие (для фильтров и UPDATE)
    """
    not_cancelled = AffiliateCompetition.status != CompetitionStatus.CANCELLED

    if status == CompetitionStatus.CANCELLED:
        return AffiliateCompetition.status == CompetitionStatus.CANCELLED
    if status == CompetitionStatus.UPCOMING:
        return and_(not_cancelled, AffiliateCompetition.start_date > now)
    if status == CompetitionStatus.ACTIVE:
        return and_(
            not_cancelled,
            AffiliateCompetition.start_date <= now,
            AffiliateCompetition.end_date > now
        )
    return and_(not_cancelled, AffiliateCompetition.end_date <= now)


def rank_badge(rank: int) -> Optional[str]:
    if rank in RANK_BADGES:
        return RANK_BADGES[rank]
    if rank <= STAR_BADGE_MAX_RANK:
        return STAR_BADGE
    return None


class CompetitionService:
    """Сервис для работы с соревнованиями"""

    @staticmethod
    async def create(
        session: AsyncSession,
        name: str,
        start_date: datetime,
        end_date: datetime,
        prize_pool: Decimal,
        description: Optional[str] = None,
        rules: Optional[dict] = None
    ) -> AffiliateCompetition:
        """
        Создать соревнование

        Raises:
            InvalidInputError: неверные даты, отрицательный фонд или правила
        """
        start_date = to_naive_utc(start_date)
        end_date = to_naive_utc(end_date)
        prize_pool = to_decimal(prize_pool, "prize_pool")

        ensure_valid(validate_competition_name(name), code="INVALID_NAME")
        ensure_valid(validate_date_range(start_date, end_date), code="INVALID_DATES")
        ensure_valid(validate_prize_pool(prize_pool), code="INVALID_PRIZE_POOL")
        rules = prize_policies.validate_rules(rules)

        async with transaction(session, "create_competition", name=name):
            competition = AffiliateCompetition(
                name=name.strip(),
                description=description,
                start_date=start_date,
                end_date=end_date,
                prize_pool=prize_pool,
                status=CompetitionStatus.UPCOMING,
                rules=rules
            )
            session.add(competition)
            await session.flush()

        logger.info(
            f"Created competition {competition.id} '{competition.name}' "
            f"{start_date} - {end_date}, prize pool {prize_pool}"
        )
        return competition

    @staticmethod
    async def get(
        session: AsyncSession,
        competition_id: uuid.UUID,
        for_update: bool = False
    ) -> AffiliateCompetition:
        """
        Получить соревнование

        Raises:
            NotFoundError
        """
        query = (
            select(AffiliateCompetition)
            .where(AffiliateCompetition.id == competition_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        competition = result.scalar_one_or_none()
        if not competition:
            raise NotFoundError("Competition not found")
        return competition

    @staticmethod
    async def list_competitions(
        session: AsyncSession,
        status: Optional[CompetitionStatus] = None,
        sort_by: str = "start_date",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 20,
        now: Optional[datetime] = None
    ) -> Dict:
        now = now or utcnow()
        conditions = [status_condition(status, now)] if status else []

        result = await session.execute(
            select(func.count(AffiliateCompetition.id)).where(*conditions)
        )
        total = result.scalar() or 0

        column = SORT_COLUMNS.get(sort_by, AffiliateCompetition.start_date)
        order = column.asc() if sort_order == "asc" else column.desc()

        result = await session.execute(
            select(AffiliateCompetition)
            .where(*conditions)
            .order_by(order, AffiliateCompetition.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )

        # Число участников одним запросом
        competitions = result.scalars().all()
        counts = {}
        if competitions:
            result = await session.execute(
                select(CompetitionParticipant.competition_id, func.count(CompetitionParticipant.id))
                .where(CompetitionParticipant.competition_id.in_([c.id for c in competitions]))
                .group_by(CompetitionParticipant.competition_id)
            )
            counts = dict(result.all())

        return {
            "competitions": [
                {
                    "competition": competition,
                    "status": resolve_status(competition, now),
                    "participant_count": counts.get(competition.id, 0)
                }
                for competition in competitions
            ],
            "total": total,
            "page": page,
            "limit": limit
        }

    @staticmethod
    async def join(
        session: AsyncSession,
        competition_id: uuid.UUID,
        affiliate_id: uuid.UUID,
        now: Optional[datetime] = None
    ) -> CompetitionParticipant:
        """
        Записать партнёра в соревнование

        Строка соревнования блокируется на время вставки, чтобы вступление
        не пересеклось с отменой. Повторное вступление отсекает unique
        (competition_id, affiliate_id).

        Raises:
            NotJoinableError: соревнование завершено или отменено
            ForbiddenError: партнёр не активен
            ConflictError: партнёр уже участвует
        """
        async with transaction(session, "join_competition", competition_id=competition_id, affiliate_id=affiliate_id):
            competition = await CompetitionService.get(session, competition_id, for_update=True)

            status = resolve_status(competition, now)
            if status in (CompetitionStatus.ENDED, CompetitionStatus.CANCELLED):
                raise NotJoinableError(f"Competition is {status.value}, joining is closed")

            affiliate = await AffiliateService.get_by_id(session, affiliate_id)
            if affiliate.status != AffiliateStatus.ACTIVE:
                raise ForbiddenError("Only active affiliates can join competitions", code="AFFILIATE_INACTIVE")

            participant = CompetitionParticipant(
                competition_id=competition_id,
                affiliate_id=affiliate_id,
                sales_count=0,
                total_revenue=Decimal("0"),
                prize_earned=Decimal("0")
            )
            session.add(participant)

            try:
                await session.flush()
            except IntegrityError:
                logger.info(f"Affiliate {affiliate_id} already joined competition {competition_id}")
                raise ConflictError("Already joined this competition", code="ALREADY_JOINED")

        logger.info(f"Affiliate {affiliate_id} joined competition {competition_id}")
        return participant

    @staticmethod
    async def record_activity(
        session: AsyncSession,
        competition_id: uuid.UUID,
        affiliate_id: uuid.UUID,
        referral: AffiliateReferral,
        now: Optional[datetime] = None
    ) -> bool:
        """
        Учесть продажу участника в одном соревновании

        Выполняется в транзакции вызывающего (создание реферала).
        Счётчики меняются только атомарным UPDATE.

        Returns:
            True если соревнование активно и партнёр в нём участвует
        """
        now = now or utcnow()
        active_ids = select(AffiliateCompetition.id).where(
            AffiliateCompetition.id == competition_id,
            status_condition(CompetitionStatus.ACTIVE, now)
        )

        result = await session.execute(
            update(CompetitionParticipant)
            .where(
                CompetitionParticipant.competition_id.in_(active_ids),
                CompetitionParticipant.affiliate_id == affiliate_id
            )
            .values(
                sales_count=CompetitionParticipant.sales_count + 1,
                total_revenue=CompetitionParticipant.total_revenue + referral.sale_amount,
                updated_at=utcnow()
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    @staticmethod
    async def record_referral_activity(
        session: AsyncSession,
        affiliate_id: uuid.UUID,
        referral: AffiliateReferral,
        now: Optional[datetime] = None
    ) -> int:
        """
        Учесть продажу во всех активных соревнованиях партнёра одним UPDATE

        Returns:
            Число обновлённых участий
        """
        now = now or utcnow()
        active_ids = select(AffiliateCompetition.id).where(
            status_condition(CompetitionStatus.ACTIVE, now)
        )

        result = await session.execute(
            update(CompetitionParticipant)
            .where(
                CompetitionParticipant.affiliate_id == affiliate_id,
                CompetitionParticipant.competition_id.in_(active_ids)
            )
            .values(
                sales_count=CompetitionParticipant.sales_count + 1,
                total_revenue=CompetitionParticipant.total_revenue + referral.sale_amount,
                updated_at=utcnow()
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount:
            logger.info(
                f"Referral {referral.id} counted in {result.rowcount} active competition(s) "
                f"for affiliate {affiliate_id}"
            )
        return result.rowcount

    @staticmethod
    async def leaderboard(
        session: AsyncSession,
        competition_id: uuid.UUID,
        limit: int = 100,
        offset: int = 0,
        now: Optional[datetime] = None
    ) -> Dict:
        """
        Лидерборд соревнования

        Места плотные (1..N) и не делятся: при равной выручке выше тот,
        у кого больше продаж, затем кто раньше вступил.
        """
        if limit < 1 or limit > LEADERBOARD_MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {LEADERBOARD_MAX_PAGE_SIZE}", code="INVALID_LIMIT")
        if offset < 0:
            raise InvalidInputError("offset must not be negative", code="INVALID_OFFSET")

        competition = await CompetitionService.get(session, competition_id)

        result = await session.execute(
            select(func.count(CompetitionParticipant.id))
            .where(CompetitionParticipant.competition_id == competition_id)
        )
        total = result.scalar() or 0

        result = await session.execute(
            select(CompetitionParticipant, Affiliate.affiliate_code)
            .join(Affiliate, Affiliate.id == CompetitionParticipant.affiliate_id)
            .where(CompetitionParticipant.competition_id == competition_id)
            .order_by(*LEADERBOARD_ORDER)
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )

        entries = []
        for position, (participant, affiliate_code) in enumerate(result.all(), start=1):
            rank = offset + position
            entries.append({
                "rank": rank,
                "badge": rank_badge(rank),
                "affiliate_id": participant.affiliate_id,
                "affiliate_code": affiliate_code,
                "sales_count": participant.sales_count,
                "total_revenue": participant.total_revenue,
                "prize_earned": participant.prize_earned,
                "joined_at": participant.joined_at
            })

        return {
            "competition": competition,
            "status": resolve_status(competition, now),
            "total": total,
            "limit": limit,
            "offset": offset,
            "entries": entries
        }

    @staticmethod
    async def settle(
        session: AsyncSession,
        competition_id: uuid.UUID,
        now: Optional[datetime] = None
    ) -> List[CompetitionParticipant]:
        """
        Распределить призовой фонд завершённого соревнования

        Одноразово: settled_at выставляется условным UPDATE, второй вызов
        получает AlreadySettledError и ничего не меняет.

        Raises:
            AlreadySettledError: призы уже распределены
            IllegalTransitionError: соревнование ещё не завершено или отменено
        """
        now = now or utcnow()

        async with transaction(session, "settle_competition", competition_id=competition_id):
            competition = await CompetitionService.get(session, competition_id, for_update=True)

            if competition.settled_at is not None:
                raise AlreadySettledError("Competition is already settled")

            status = resolve_status(competition, now)
            if status != CompetitionStatus.ENDED:
                raise IllegalTransitionError(
                    f"Only ended competitions can be settled (status: {status.value})",
                    code="NOT_ENDED"
                )

            result = await session.execute(
                update(AffiliateCompetition)
                .where(
                    AffiliateCompetition.id == competition_id,
                    AffiliateCompetition.settled_at.is_(None)
                )
                .values(settled_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise AlreadySettledError("Competition is already settled")

            policy, params = prize_policies.resolve_policy(competition.rules)
            required_sales = prize_policies.min_sales(competition.rules)

            result = await session.execute(
                select(CompetitionParticipant)
                .where(CompetitionParticipant.competition_id == competition_id)
                .order_by(*LEADERBOARD_ORDER)
                .execution_options(populate_existing=True)
            )
            participants = result.scalars().all()

            eligible = [p for p in participants if p.sales_count >= required_sales]
            prizes = policy.allocate(
                Decimal(str(competition.prize_pool)),
                [Decimal(str(p.total_revenue)) for p in eligible],
                params
            )
            prize_by_id = {p.id: prize for p, prize in zip(eligible, prizes)}

            for rank, participant in enumerate(participants, start=1):
                participant.rank = rank
                participant.prize_earned = prize_by_id.get(participant.id, Decimal("0"))

            competition.settled_at = now
            await session.flush()

        awarded = sum(prize_by_id.values(), Decimal("0"))
        logger.info(
            f"Settled competition {competition_id} with policy {policy.type} v{policy.version}: "
            f"{len(participants)} participants, {len(eligible)} eligible, "
            f"awarded {awarded} of {competition.prize_pool}"
        )
        return participants

    @staticmethod
    async def cancel(
        session: AsyncSession,
        competition_id: uuid.UUID,
        actor_id: Optional[str] = None
    ) -> AffiliateCompetition:
        """
        Отменить соревнование (окончательно)

        Участники удаляются в той же транзакции.
        """
        async with transaction(session, "cancel_competition", competition_id=competition_id):
            competition = await CompetitionService.get(session, competition_id, for_update=True)

            if competition.status == CompetitionStatus.CANCELLED:
                logger.info(f"Competition {competition_id} already cancelled, no-op")
                return competition

            if competition.settled_at is not None:
                raise IllegalTransitionError("Settled competition can not be cancelled", code="ALREADY_SETTLED")

            competition.status = CompetitionStatus.CANCELLED
            result = await session.execute(
                delete(CompetitionParticipant)
                .where(CompetitionParticipant.competition_id == competition_id)
                .execution_options(synchronize_session=False)
            )
            await session.flush()

        logger.warning(
            f"Competition {competition_id} cancelled by {actor_id or '-'}, "
            f"{result.rowcount} participant(s) removed"
        )
        return competition
