"""
Модели соревнований партнёров
"""
import enum
import uuid

from sqlalchemy import (
    Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text,
    UniqueConstraint, Uuid
)

from shared.database import Base, JSONType, enum_column, utcnow


class CompetitionStatus(str, enum.Enum):
    """Статусы соревнования"""
    UPCOMING = "upcoming"
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"  # Ручной и окончательный


class AffiliateCompetition(Base):
    """Соревнования"""
    __tablename__ = "affiliate_competitions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    prize_pool = Column(Numeric(12, 2), default=0, nullable=False)
    # Хранится только upcoming или cancelled, остальное вычисляется по часам
    status = enum_column(CompetitionStatus, "competition_status", default=CompetitionStatus.UPCOMING, nullable=False)
    rules = Column(JSONType, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_competition_dates', 'start_date', 'end_date'),
    )


class CompetitionParticipant(Base):
    """Участники соревнований"""
    __tablename__ = "competition_participants"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    competition_id = Column(Uuid, ForeignKey("affiliate_competitions.id", ondelete="CASCADE"), nullable=False)
    affiliate_id = Column(Uuid, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    sales_count = Column(Integer, default=0, nullable=False)
    total_revenue = Column(Numeric(12, 2), default=0, nullable=False)
    rank = Column(Integer, nullable=True)  # Фиксируется при распределении призов
    prize_earned = Column(Numeric(12, 2), default=0, nullable=False)
    joined_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('competition_id', 'affiliate_id', name='uq_participant_competition_affiliate'),
        Index('idx_participant_affiliate', 'affiliate_id'),
        Index('idx_participant_leaderboard', 'competition_id', 'total_revenue', 'sales_count'),
    )
