"""
Преобразование моделей в JSON-ответы

Деньги отдаются строками ("20.00"), чтобы не терять точность во float.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from shared.database import (
    Affiliate, AffiliateClick, AffiliateCompetition, AffiliatePayout,
    AffiliateReferral, CompetitionParticipant, CompetitionStatus
)
from affiliate_api.services.commission import quantize_money


def money(value) -> Optional[str]:
    if value is None:
        return None
    return str(quantize_money(Decimal(str(value))))


def iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_affiliate(affiliate: Affiliate) -> dict:
    return {
        "id": str(affiliate.id),
        "user_id": affiliate.user_id,
        "affiliate_code": affiliate.affiliate_code,
        "commission_rate": str(affiliate.commission_rate),
        "total_earnings": money(affiliate.total_earnings),
        "total_referrals": affiliate.total_referrals,
        "status": affiliate.status.value,
        "payout_method": affiliate.payout_method,
        "payout_details": affiliate.payout_details or {},
        "suspension_reason": affiliate.suspension_reason,
        "created_at": iso(affiliate.created_at),
    }


def serialize_click(click: AffiliateClick) -> dict:
    return {
        "id": str(click.id),
        "affiliate_id": str(click.affiliate_id),
        "product_id": click.product_id,
        "converted": click.converted,
        "converted_at": iso(click.converted_at),
        "created_at": iso(click.created_at),
    }


def serialize_referral(referral: AffiliateReferral) -> dict:
    return {
        "id": str(referral.id),
        "affiliate_id": str(referral.affiliate_id),
        "referred_user_id": referral.referred_user_id,
        "product_id": referral.product_id,
        "click_id": str(referral.click_id) if referral.click_id else None,
        "external_sale_id": referral.external_sale_id,
        "sale_amount": money(referral.sale_amount),
        "commission_rate": str(referral.commission_rate),
        "commission_earned": money(referral.commission_earned),
        "status": referral.status.value,
        "referral_source": referral.referral_source,
        "cancellation_reason": referral.cancellation_reason,
        "payout_id": str(referral.payout_id) if referral.payout_id else None,
        "created_at": iso(referral.created_at),
    }


def serialize_competition(
    competition: AffiliateCompetition,
    status: CompetitionStatus,
    participant_count: Optional[int] = None
) -> dict:
    data = {
        "id": str(competition.id),
        "name": competition.name,
        "description": competition.description,
        "start_date": iso(competition.start_date),
        "end_date": iso(competition.end_date),
        "prize_pool": money(competition.prize_pool),
        "status": status.value,
        "rules": competition.rules or {},
        "settled_at": iso(competition.settled_at),
    }
    if participant_count is not None:
        data["participant_count"] = participant_count
    return data


def serialize_participant(participant: CompetitionParticipant) -> dict:
    return {
        "competition_id": str(participant.competition_id),
        "affiliate_id": str(participant.affiliate_id),
        "sales_count": participant.sales_count,
        "total_revenue": money(participant.total_revenue),
        "rank": participant.rank,
        "prize_earned": money(participant.prize_earned),
        "joined_at": iso(participant.joined_at),
    }


def serialize_leaderboard(board: dict) -> dict:
    return {
        "competition": serialize_competition(board["competition"], board["status"]),
        "total": board["total"],
        "limit": board["limit"],
        "offset": board["offset"],
        "leaderboard": [
            {
                "rank": entry["rank"],
                "badge": entry["badge"],
                "affiliate_id": str(entry["affiliate_id"]),
                "affiliate_code": entry["affiliate_code"],
                "sales_count": entry["sales_count"],
                "total_revenue": money(entry["total_revenue"]),
                "prize_earned": money(entry["prize_earned"]),
            }
            for entry in board["entries"]
        ],
    }


def serialize_payout(payout: AffiliatePayout) -> dict:
    return {
        "id": str(payout.id),
        "affiliate_id": str(payout.affiliate_id),
        "amount": money(payout.amount),
        "status": payout.status.value,
        "payout_method": payout.payout_method,
        "failure_reason": payout.failure_reason,
        "processed_at": iso(payout.processed_at),
        "created_at": iso(payout.created_at),
    }


def serialize_stats(stats: dict) -> dict:
    return {
        "total_earnings": money(stats["total_earnings"]),
        "total_referrals": stats["total_referrals"],
        "pending_earnings": money(stats["pending_earnings"]),
        "click_count": stats["click_count"],
        "conversion_rate": stats["conversion_rate"],
        "this_month_earnings": money(stats["this_month_earnings"]),
        "this_month_referrals": stats["this_month_referrals"],
        "top_products": [
            {
                "product_id": product["product_id"],
                "referrals": product["referrals"],
                "earnings": money(product["earnings"]),
            }
            for product in stats["top_products"]
        ],
    }


def serialize_metrics(metrics: dict) -> dict:
    return {
        "period": metrics["period"],
        "start_date": iso(metrics["start_date"]),
        "end_date": iso(metrics["end_date"]),
        "data": [
            {
                "period_start": iso(point["period_start"]),
                "referrals": point["referrals"],
                "earnings": money(point["earnings"]),
                "clicks": point["clicks"],
                "conversions": point["conversions"],
            }
            for point in metrics["data"]
        ],
    }


def page(items: list, result: dict) -> dict:
    """Обёртка списка с пагинацией"""
    return {
        "items": items,
        "total": result["total"],
        "page": result["page"],
        "limit": result["limit"],
    }
