import random
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from shared.database import AffiliateReferral, ReferralStatus
from shared.errors import (
    ConflictError, IllegalTransitionError, InvalidInputError,
    NotFoundError, UnknownOrInactiveAffiliateError
)
from affiliate_api.services.affiliate_service import AffiliateService
from affiliate_api.services.click_service import ClickService
from affiliate_api.services.payout_service import PayoutService
from affiliate_api.services.referral_service import ReferralService


async def earnings(session, affiliate_id):
    return (await AffiliateService.get_by_id(session, affiliate_id)).total_earnings


async def referral_count(session):
    result = await session.execute(select(func.count(AffiliateReferral.id)))
    return result.scalar()


async def test_sale_creates_pending_referral(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()

    referral = await make_referral(affiliate, "200.00")

    assert referral.status == ReferralStatus.PENDING
    assert referral.commission_earned == Decimal("20.00")
    assert referral.commission_rate == Decimal("0.10")

    refreshed = await AffiliateService.get_by_id(session, affiliate.id)
    assert refreshed.total_referrals == 1
    assert refreshed.total_earnings == Decimal("0")


async def test_approve_then_cancel_moves_earnings(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    referral = await make_referral(affiliate, "200.00")

    approved = await ReferralService.approve(session, referral.id)
    assert approved.status == ReferralStatus.APPROVED
    assert await earnings(session, affiliate.id) == Decimal("20.00")

    cancelled = await ReferralService.cancel(session, referral.id, "refund")
    assert cancelled.status == ReferralStatus.CANCELLED
    assert cancelled.cancellation_reason == "refund"
    assert await earnings(session, affiliate.id) == Decimal("0")


async def test_cancel_pending_does_not_touch_earnings(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    referral = await make_referral(affiliate, "50")

    await ReferralService.cancel(session, referral.id)

    assert await earnings(session, affiliate.id) == Decimal("0")
    refreshed = await AffiliateService.get_by_id(session, affiliate.id)
    assert refreshed.total_referrals == 1


# После отката сессии ORM-объекты просрочены, поэтому id берутся заранее

async def test_approve_twice_is_illegal(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    affiliate_id = affiliate.id
    referral_id = (await make_referral(affiliate, "100")).id
    await ReferralService.approve(session, referral_id)

    with pytest.raises(IllegalTransitionError):
        await ReferralService.approve(session, referral_id)
    assert await earnings(session, affiliate_id) == Decimal("10.00")


async def test_cancelled_is_terminal(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    referral_id = (await make_referral(affiliate, "100")).id
    await ReferralService.cancel(session, referral_id)

    with pytest.raises(IllegalTransitionError):
        await ReferralService.approve(session, referral_id)
    with pytest.raises(IllegalTransitionError):
        await ReferralService.cancel(session, referral_id)


async def test_rate_is_snapshotted_at_sale(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    before = await make_referral(affiliate, "100", buyer="buyer-1")

    await AffiliateService.adjust_rate(session, affiliate.id, Decimal("0.30"))
    after = await make_referral(affiliate, "100", buyer="buyer-2")

    assert (await ReferralService.get_referral(session, before.id)).commission_earned == Decimal("10.00")
    assert after.commission_earned == Decimal("30.00")


async def test_rejects_non_positive_amount(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()

    with pytest.raises(InvalidInputError):
        await make_referral(affiliate, "0")
    with pytest.raises(InvalidInputError):
        await make_referral(affiliate, "-5")


@pytest.mark.parametrize("amount", ["0.004", "10.005", "0.001"])
async def test_rejects_amount_finer_than_cent(session, make_affiliate, make_referral, amount):
    affiliate = await make_affiliate()

    with pytest.raises(InvalidInputError) as exc:
        await make_referral(affiliate, amount)

    assert exc.value.code == "INVALID_AMOUNT"
    assert await referral_count(session) == 0


async def test_trailing_zeros_are_stored_as_cents(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()

    referral = await make_referral(affiliate, "99.900")

    stored = await ReferralService.get_referral(session, referral.id)
    assert stored.sale_amount == Decimal("99.90")
    assert stored.commission_earned == Decimal("9.99")


async def test_rejects_self_referral(session, make_affiliate, make_referral):
    affiliate = await make_affiliate("creator-1")

    with pytest.raises(InvalidInputError) as exc:
        await make_referral(affiliate, "100", buyer="creator-1")
    assert exc.value.code == "SELF_REFERRAL"


async def test_rejects_suspended_affiliate(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    affiliate_id = affiliate.id
    await AffiliateService.suspend(session, affiliate_id, "spam")

    with pytest.raises(UnknownOrInactiveAffiliateError):
        await make_referral(affiliate, "100")

    refreshed = await AffiliateService.get_by_id(session, affiliate_id)
    assert refreshed.total_referrals == 0


async def test_unknown_click_is_rejected_not_reported_as_duplicate(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    affiliate_id = affiliate.id

    with pytest.raises(InvalidInputError) as exc:
        await make_referral(affiliate, "100", click_id=uuid.uuid4(), external_sale_id="sale-unique-1")

    assert exc.value.code == "INVALID_CLICK"
    assert await ReferralService.get_by_sale_id(session, "sale-unique-1") is None
    assert (await AffiliateService.get_by_id(session, affiliate_id)).total_referrals == 0


async def test_click_of_another_affiliate_is_rejected(session, make_affiliate, make_referral):
    owner = await make_affiliate("creator-1")
    other = await make_affiliate("creator-2")
    click = await ClickService.record_click(session, other.affiliate_code, "203.0.113.7", "Mozilla/5.0")

    with pytest.raises(InvalidInputError) as exc:
        await make_referral(owner, "100", click_id=click.id)

    assert exc.value.code == "INVALID_CLICK"
    assert await referral_count(session) == 0


async def test_unknown_referral(session):
    with pytest.raises(NotFoundError):
        await ReferralService.approve(session, uuid.uuid4())


async def test_duplicate_sale_id_returns_existing(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()

    first = await make_referral(affiliate, "100", external_sale_id="sale-1")
    second = await make_referral(affiliate, "100", external_sale_id="sale-1")

    assert first.id == second.id
    assert await referral_count(session) == 1
    assert (await AffiliateService.get_by_id(session, affiliate.id)).total_referrals == 1


async def test_claimed_referral_can_not_be_cancelled(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    affiliate_id = affiliate.id
    referral_id = (await make_referral(affiliate, "100")).id
    await ReferralService.approve(session, referral_id)
    await PayoutService.create_payout(session, affiliate_id)

    with pytest.raises(ConflictError) as exc:
        await ReferralService.cancel(session, referral_id)
    assert exc.value.code == "CLAIMED_BY_PAYOUT"
    assert await earnings(session, affiliate_id) == Decimal("10.00")


async def test_earnings_match_approved_and_paid_commissions(session, make_affiliate):
    affiliate_id = (await make_affiliate()).id
    rng = random.Random(20240501)
    referral_ids = []

    for step in range(60):
        action = rng.choice(["record", "record", "approve", "cancel"])
        if action == "record" or not referral_ids:
            amount = Decimal(rng.randint(1, 50_000)) / 100
            referral = await ReferralService.record_referral(
                session, affiliate_id=affiliate_id, referred_user_id=f"buyer-{step}", sale_amount=amount
            )
            referral_ids.append(referral.id)
            continue

        target_id = rng.choice(referral_ids)
        try:
            if action == "approve":
                await ReferralService.approve(session, target_id)
            else:
                await ReferralService.cancel(session, target_id)
        except IllegalTransitionError:
            pass

    result = await session.execute(
        select(AffiliateReferral.commission_earned).where(
            AffiliateReferral.affiliate_id == affiliate_id,
            AffiliateReferral.status.in_([ReferralStatus.APPROVED, ReferralStatus.PAID])
        )
    )
    expected = sum((Decimal(str(value)) for value in result.scalars().all()), Decimal("0"))
    assert await earnings(session, affiliate_id) == expected


async def test_list_referrals_filters_by_status(session, make_affiliate, make_referral):
    affiliate = await make_affiliate()
    first = await make_referral(affiliate, "100", buyer="buyer-1")
    await make_referral(affiliate, "200", buyer="buyer-2")
    await ReferralService.approve(session, first.id)

    result = await ReferralService.list_referrals(session, affiliate.id, status=ReferralStatus.APPROVED)

    assert result["total"] == 1
    assert result["referrals"][0].id == first.id


async def test_sale_event_converts_click(session, make_affiliate):
    affiliate = await make_affiliate()
    click = await ClickService.record_click(session, affiliate.affiliate_code, "203.0.113.7", "Mozilla/5.0")

    referral = await ReferralService.process_sale_event(
        session,
        sale_id="order-77",
        buyer_id="buyer-1",
        sale_amount=Decimal("80"),
        affiliate_code=affiliate.affiliate_code,
        click_id=click.id
    )

    assert referral.click_id == click.id
    assert referral.referral_source == "link"
    assert (await ClickService.get_click(session, click.id)).converted is True


async def test_sale_event_ignores_foreign_click(session, make_affiliate):
    owner = await make_affiliate("creator-1")
    other = await make_affiliate("creator-2")
    click = await ClickService.record_click(session, other.affiliate_code, "203.0.113.7", "Mozilla/5.0")

    referral = await ReferralService.process_sale_event(
        session,
        sale_id="order-78",
        buyer_id="buyer-1",
        sale_amount=Decimal("80"),
        affiliate_code=owner.affiliate_code,
        click_id=click.id
    )

    assert referral.click_id is None
    assert (await ClickService.get_click(session, click.id)).converted is False


@pytest.mark.parametrize("code", [None, "", "AFFUNKNOWN"])
async def test_sale_event_without_valid_code_is_ignored(session, code):
    referral = await ReferralService.process_sale_event(
        session, sale_id="order-1", buyer_id="buyer-1", sale_amount=Decimal("10"), affiliate_code=code
    )
    assert referral is None


@pytest.mark.parametrize("code", [None, "AFFUNKNOWN"])
async def test_sale_event_amount_is_validated_before_code(session, code):
    with pytest.raises(InvalidInputError) as exc:
        await ReferralService.process_sale_event(
            session, sale_id="order-1", buyer_id="buyer-1", sale_amount=Decimal("-5"), affiliate_code=code
        )
    assert exc.value.code == "INVALID_AMOUNT"


async def test_sale_event_self_referral_is_ignored(session, make_affiliate):
    affiliate = await make_affiliate("creator-1")

    referral = await ReferralService.process_sale_event(
        session, sale_id="order-1", buyer_id="creator-1",
        sale_amount=Decimal("10"), affiliate_code=affiliate.affiliate_code
    )

    assert referral is None


async def test_tracked_visit_converts_to_referral(session, make_affiliate):
    affiliate = await make_affiliate()
    click = await ClickService.record_click(
        session, affiliate.affiliate_code, "203.0.113.7", "Mozilla/5.0", product_id="course-42"
    )

    referral = await ReferralService.convert_tracked_visit(
        session,
        buyer_id="buyer-1",
        affiliate_code=affiliate.affiliate_code,
        sale_amount=Decimal("150"),
        product_id="course-42",
        click_id=click.id
    )

    assert referral.affiliate_id == affiliate.id
    assert referral.referral_source == "link"
    assert referral.commission_earned == Decimal("15.00")
    assert (await ClickService.get_click(session, click.id)).converted is True


async def test_tracked_visit_without_code_is_rejected(session):
    with pytest.raises(InvalidInputError) as exc:
        await ReferralService.convert_tracked_visit(
            session, buyer_id="buyer-1", affiliate_code=None, sale_amount=Decimal("10")
        )
    assert exc.value.code == "NO_REFERRAL"


async def test_tracked_visit_by_the_affiliate_is_rejected(session, make_affiliate):
    affiliate = await make_affiliate("creator-1")

    with pytest.raises(InvalidInputError) as exc:
        await ReferralService.convert_tracked_visit(
            session, buyer_id="creator-1", affiliate_code=affiliate.affiliate_code, sale_amount=Decimal("10")
        )
    assert exc.value.code == "SELF_REFERRAL"
