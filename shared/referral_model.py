"""
Модель AffiliateReferral: продажа, приписанная партнёру, с комиссией
"""
import enum
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String, Text, Uuid

from shared.database import Base, enum_column, utcnow


class ReferralStatus(str, enum.Enum):
    """Статусы реферала"""
    PENDING = "pending"  # Создан, ждёт подтверждения
    APPROVED = "approved"  # Подтверждён, комиссия начислена
    PAID = "paid"  # Выплачен
    CANCELLED = "cancelled"  # Отменён


# Разрешённые переходы: pending -> approved -> paid, pending|approved -> cancelled
REFERRAL_TRANSITIONS = {
    ReferralStatus.PENDING: {ReferralStatus.APPROVED, ReferralStatus.CANCELLED},
    ReferralStatus.APPROVED: {ReferralStatus.PAID, ReferralStatus.CANCELLED},
    ReferralStatus.PAID: set(),
    ReferralStatus.CANCELLED: set(),
}

# Статусы, комиссия которых входит в total_earnings
EARNING_STATUSES = (ReferralStatus.APPROVED, ReferralStatus.PAID)


def can_transition(current: ReferralStatus, target: ReferralStatus) -> bool:
    return target in REFERRAL_TRANSITIONS[current]


class AffiliateReferral(Base):
    """Рефералы (продажи по партнёрке)"""
    __tablename__ = "affiliate_referrals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    affiliate_id = Column(Uuid, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False)
    referred_user_id = Column(String(255), nullable=False)  # Кто купил
    product_id = Column(String(255), nullable=True)
    click_id = Column(Uuid, ForeignKey("affiliate_clicks.id", ondelete="SET NULL"), nullable=True)
    external_sale_id = Column(String(255), unique=True, nullable=True)  # Одна продажа -> один реферал
    sale_amount = Column(Numeric(12, 2), nullable=False)
    commission_rate = Column(Numeric(5, 4), nullable=False)  # Ставка на момент продажи
    commission_earned = Column(Numeric(12, 2), nullable=False)  # Не меняется после создания
    status = enum_column(ReferralStatus, "referral_status", default=ReferralStatus.PENDING, nullable=False)
    referral_source = Column(String(50), nullable=True)  # link, code, social
    cancellation_reason = Column(Text, nullable=True)
    payout_id = Column(Uuid, ForeignKey("affiliate_payouts.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_referral_affiliate_status', 'affiliate_id', 'status'),
        Index('idx_referral_referred_user', 'referred_user_id'),
        Index('idx_referral_payout', 'payout_id'),
        Index('idx_referral_created_at', 'created_at'),
    )
