"""
Pydantic модели тел запросов
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class RegisterAffiliateRequest(BaseModel):
    payout_method: str = "bank_transfer"
    payout_details: Optional[Dict[str, Any]] = None


class UpdatePayoutDetailsRequest(BaseModel):
    payout_method: str
    payout_details: Optional[Dict[str, Any]] = None


class SuspendAffiliateRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class AdjustRateRequest(BaseModel):
    commission_rate: Decimal = Field(..., ge=0, le=1)


class TrackClickRequest(BaseModel):
    affiliate_code: str = Field(..., min_length=1, max_length=50)
    product_id: Optional[str] = None
    referrer_url: Optional[str] = None
    landing_page: Optional[str] = None


class ConvertVisitRequest(BaseModel):
    """Покупка посетителя, пришедшего по ссылке (код партнёра в cookie)"""

    sale_amount: Decimal
    product_id: Optional[str] = None
    sale_id: Optional[str] = Field(default=None, max_length=255)


class RecordReferralRequest(BaseModel):
    affiliate_id: UUID
    referred_user_id: str = Field(..., min_length=1)
    sale_amount: Decimal
    product_id: Optional[str] = None
    referral_source: Optional[str] = None
    click_id: Optional[UUID] = None
    external_sale_id: Optional[str] = None


class CancelReferralRequest(BaseModel):
    reason: Optional[str] = None


class CreateCompetitionRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    start_date: datetime
    end_date: datetime
    prize_pool: Decimal = Field(default=Decimal("0"), ge=0)
    rules: Optional[Dict[str, Any]] = None


class CreatePayoutRequest(BaseModel):
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class FailPayoutRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class SaleEvent(BaseModel):
    """Событие о завершённой продаже от маркетплейса"""

    sale_id: str = Field(..., min_length=1, max_length=255)
    buyer_id: str = Field(..., min_length=1)
    sale_amount: Decimal
    product_id: Optional[str] = None
    affiliate_code_used: Optional[str] = None
    click_id: Optional[UUID] = None
    referral_source: Optional[str] = None
