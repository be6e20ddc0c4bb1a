from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from shared.database import AffiliateAuditLog, AffiliateClick, AffiliateReferral, AffiliateStatus
from shared.errors import (
    ConflictError, InvalidInputError, NotFoundError, UnknownOrInactiveAffiliateError
)
from affiliate_api.services.affiliate_service import AffiliateService, period_window_start
from affiliate_api.services.click_service import ClickService
from affiliate_api.services.referral_service import ReferralService


async def audit_actions(session, affiliate_id):
    result = await session.execute(
        select(AffiliateAuditLog.action)
        .where(AffiliateAuditLog.affiliate_id == affiliate_id)
        .order_by(AffiliateAuditLog.id)
    )
    return list(result.scalars().all())


async def test_register_creates_active_affiliate(session, make_affiliate):
    affiliate = await make_affiliate("creator-1")

    assert affiliate.status == AffiliateStatus.ACTIVE
    assert affiliate.commission_rate == Decimal("0.10")
    assert affiliate.total_earnings == Decimal("0")
    assert affiliate.total_referrals == 0
    assert affiliate.affiliate_code.startswith("AFF")
    assert len(affiliate.affiliate_code) == 11
    assert await audit_actions(session, affiliate.id) == ["register"]


async def test_register_twice_conflicts(session, make_affiliate):
    await make_affiliate("creator-1")

    with pytest.raises(ConflictError) as exc:
        await make_affiliate("creator-1")
    assert exc.value.code == "ALREADY_REGISTERED"


async def test_register_rejects_unknown_payout_method(session):
    with pytest.raises(InvalidInputError):
        await AffiliateService.register(session, "creator-1", payout_method="cash")


async def test_register_rejects_rate_out_of_range(session, make_affiliate):
    with pytest.raises(InvalidInputError):
        await make_affiliate("creator-1", rate=Decimal("1.5"))


async def test_get_missing_affiliate(session):
    with pytest.raises(NotFoundError):
        await AffiliateService.get(session, "nobody")


async def test_suspend_is_idempotent(session, make_affiliate):
    affiliate = await make_affiliate()

    suspended = await AffiliateService.suspend(session, affiliate.id, "fraud  suspected", actor_id="admin-1")
    assert suspended.status == AffiliateStatus.SUSPENDED
    assert suspended.suspension_reason == "fraud suspected"

    again = await AffiliateService.suspend(session, affiliate.id, "other reason")
    assert again.status == AffiliateStatus.SUSPENDED
    assert again.suspension_reason == "fraud suspected"

    assert await audit_actions(session, affiliate.id) == ["register", "suspend"]


async def test_suspended_code_is_not_resolvable(session, make_affiliate):
    affiliate = await make_affiliate()
    await AffiliateService.suspend(session, affiliate.id, "spam")

    with pytest.raises(UnknownOrInactiveAffiliateError):
        await AffiliateService.get_active_by_code(session, affiliate.affiliate_code)


async def test_reactivate_restores_status(session, make_affiliate):
    affiliate = await make_affiliate()
    await AffiliateService.suspend(session, affiliate.id, "spam")

    reactivated = await AffiliateService.reactivate(session, affiliate.id, actor_id="admin-1")

    assert reactivated.status == AffiliateStatus.ACTIVE
    assert reactivated.suspension_reason is None
    found = await AffiliateService.get_active_by_code(session, affiliate.affiliate_code.lower())
    assert found.id == affiliate.id


async def test_adjust_rate_writes_audit_snapshot(session, make_affiliate):
    affiliate = await make_affiliate()

    await AffiliateService.adjust_rate(session, affiliate.id, Decimal("0.25"), actor_id="admin-1")

    result = await session.execute(
        select(AffiliateAuditLog).where(AffiliateAuditLog.action == "adjust_rate")
    )
    entry = result.scalar_one()
    assert entry.actor_id == "admin-1"
    assert Decimal(entry.before["commission_rate"]) == Decimal("0.10")
    assert Decimal(entry.after["commission_rate"]) == Decimal("0.25")


async def test_update_payout_details(session, make_affiliate):
    await make_affiliate("creator-1")

    affiliate = await AffiliateService.update_payout_details(
        session, "creator-1", "crypto", {"wallet": "0xabc"}
    )

    assert affiliate.payout_method == "crypto"
    assert affiliate.payout_details == {"wallet": "0xabc"}


async def test_list_affiliates_filters_and_paginates(session, make_affiliate):
    first = await make_affiliate("creator-1")
    await make_affiliate("creator-2")
    await make_affiliate("creator-3")
    await AffiliateService.suspend(session, first.id, "spam")

    result = await AffiliateService.list_affiliates(session, status=AffiliateStatus.ACTIVE, page=1, limit=1)

    assert result["total"] == 2
    assert len(result["affiliates"]) == 1


async def test_stats_for_new_affiliate(session, make_affiliate):
    affiliate = await make_affiliate()

    stats = await AffiliateService.get_stats(session, affiliate.id)

    assert stats["total_earnings"] == Decimal("0")
    assert stats["pending_earnings"] == Decimal("0")
    assert stats["click_count"] == 0
    assert stats["conversion_rate"] == 0.0
    assert stats["top_products"] == []


async def backdate(session, model, row_id, moment):
    await session.execute(update(model).where(model.id == row_id).values(created_at=moment))
    await session.commit()


async def test_performance_metrics_grouped_by_day(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    now = datetime(2026, 3, 15, 12, 0)

    first = await make_referral(affiliate, "100", buyer="buyer-1")
    second = await make_referral(affiliate, "200", buyer="buyer-2")
    refunded = await make_referral(affiliate, "50", buyer="buyer-3")
    await ReferralService.cancel(session, refunded.id, "refund")
    click = await ClickService.record_click(session, affiliate.affiliate_code, "203.0.113.7", "Mozilla/5.0")
    await ClickService.mark_converted(session, click.id)

    await backdate(session, AffiliateReferral, first.id, now - timedelta(days=2))
    await backdate(session, AffiliateReferral, second.id, now - timedelta(days=1))
    await backdate(session, AffiliateReferral, refunded.id, now - timedelta(days=1))
    await backdate(session, AffiliateClick, click.id, now - timedelta(days=1))

    metrics = await AffiliateService.get_performance_metrics(session, affiliate.id, period="day", now=now)

    assert metrics["start_date"] == now - timedelta(days=30)
    assert metrics["data"] == [
        {
            "period_start": datetime(2026, 3, 13),
            "referrals": 1,
            "earnings": Decimal("10.00"),
            "clicks": 0,
            "conversions": 0
        },
        {
            "period_start": datetime(2026, 3, 14),
            "referrals": 2,
            "earnings": Decimal("20.00"),
            "clicks": 1,
            "conversions": 1
        },
    ]

    monthly = await AffiliateService.get_performance_metrics(session, affiliate.id, period="month", now=now)
    assert [point["period_start"] for point in monthly["data"]] == [datetime(2026, 3, 1)]
    assert monthly["data"][0]["referrals"] == 3


async def test_performance_metrics_respect_explicit_range(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    referral = await make_referral(affiliate, "100")
    await backdate(session, AffiliateReferral, referral.id, datetime(2025, 6, 10))

    metrics = await AffiliateService.get_performance_metrics(
        session, affiliate.id, period="week",
        start_date=datetime(2026, 1, 1), end_date=datetime(2026, 2, 1)
    )

    assert metrics["data"] == []


async def test_performance_metrics_reject_unknown_period(session, make_affiliate):
    affiliate = await make_affiliate()

    with pytest.raises(InvalidInputError) as exc:
        await AffiliateService.get_performance_metrics(session, affiliate.id, period="decade")
    assert exc.value.code == "INVALID_PERIOD"


@pytest.mark.parametrize("period, expected", [
    ("day", datetime(2026, 2, 13, 12, 0)),
    ("week", datetime(2025, 12, 21, 12, 0)),
    ("month", datetime(2025, 3, 1, 12, 0)),
    ("year", datetime(2021, 1, 1, 12, 0)),
])
def test_default_metrics_window(period, expected):
    assert period_window_start(period, datetime(2026, 3, 15, 12, 0)) == expected
