from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

# Money travels as a JSON number; Decimal inside the service layer.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


class CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python; accepts either on input."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# --- Subscription ---
class SubscriptionOut(CamelModel):
    type: str
    status: str
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    suspend_reason: Optional[str] = None
    suspended_at: Optional[datetime] = None
    in_grace_period: bool = False
    grace_ends_at: Optional[datetime] = None


class PricingOut(CamelModel):
    deposit_minimum: Money
    order_fee: Money
    monthly_price: Money


class SubscriptionResponse(CamelModel):
    success: bool = True
    merchant_id: int
    subscription: Optional[SubscriptionOut] = None
    currency: str
    balance: Optional[Money] = None  # deposit mode only
    pricing: Optional[PricingOut] = None
    pending_suspension: bool = False
    pending_suspension_reason: Optional[str] = None
    is_open: bool


class SwitchRequest(CamelModel):
    target_type: str


class SwitchResponse(CamelModel):
    success: bool = True
    subscription: SubscriptionOut
    is_open: bool


class SwitchOptionsResponse(CamelModel):
    success: bool = True
    current_type: str
    status: str
    balance: Money
    currency: str
    monthly_ends_at: Optional[datetime] = None
    can_switch_to_deposit: bool
    can_switch_to_monthly: bool


class HistoryEntryOut(CamelModel):
    id: int
    event_type: str
    actor: str
    old_type: Optional[str] = None
    old_status: Optional[str] = None
    new_type: Optional[str] = None
    new_status: Optional[str] = None
    reason: Optional[str] = None
    balance_snapshot: Optional[Money] = None
    metadata: Optional[dict[str, Any]] = Field(default=None, validation_alias="event_metadata")
    created_at: datetime


class HistoryResponse(CamelModel):
    success: bool = True
    items: List[HistoryEntryOut]
    total: int
    limit: int
    offset: int


# --- Payment requests ---
class PaymentRequestCreate(CamelModel):
    type: str
    amount: Optional[Decimal] = None
    months: Optional[int] = None


class PaymentRequestConfirm(CamelModel):
    transfer_notes: Optional[str] = Field(default=None, max_length=1000)


class PaymentRequestReject(CamelModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class PaymentRequestOut(CamelModel):
    id: int
    merchant_id: int
    type: str
    status: str
    amount: Money
    currency: str
    months_requested: Optional[int] = None
    transfer_notes: Optional[str] = None
    expires_at: datetime
    confirmed_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime


class PaymentRequestList(CamelModel):
    success: bool = True
    items: List[PaymentRequestOut]


# --- Balance ---
class BalanceTransactionOut(CamelModel):
    id: int
    type: str
    amount: Money
    balance_before: Money
    balance_after: Money
    description: Optional[str] = None
    payment_request_id: Optional[int] = None
    order_id: Optional[int] = None
    created_at: datetime


class BalanceResponse(CamelModel):
    success: bool = True
    currency: str
    balance: Money
    last_topup_at: Optional[datetime] = None
    transactions: List[BalanceTransactionOut] = []


class BalanceAdjustRequest(CamelModel):
    amount: Decimal
    description: str = Field(..., min_length=1, max_length=500)


# --- Orders ---
class OrderCompleteResponse(CamelModel):
    success: bool = True
    order_id: int
    status: str
    fee_charged: Optional[Money] = None
    balance_after: Optional[Money] = None


# --- Notifications ---
class NotificationOut(CamelModel):
    id: int
    kind: str
    title: str
    body: str
    payload: dict[str, Any]
    created_at: datetime
    read_at: Optional[datetime] = None


class NotificationList(CamelModel):
    success: bool = True
    items: List[NotificationOut]


# --- Admin ---
class AdminSubscriptionUpdate(CamelModel):
    type: Optional[str] = None
    status: Optional[str] = None
    extend_trial_days: Optional[int] = Field(default=None, ge=1, le=365)
    suspend_reason: Optional[str] = Field(default=None, max_length=255)
    reactivate: bool = False
    note: Optional[str] = Field(default=None, max_length=500)


class MerchantCreate(CamelModel):
    code: str = Field(..., min_length=2, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    timezone: Optional[str] = None

    @field_validator("code")
    @classmethod
    def code_is_slug(cls, v: str) -> str:
        v = v.strip().lower()
        if not all(ch.isalnum() or ch in "-_" for ch in v):
            raise ValueError("code may contain letters, digits, '-' and '_' only")
        return v


class MerchantCreated(CamelModel):
    success: bool = True
    merchant_id: int
    code: str
    currency: str
    subscription: SubscriptionOut


class CurrencyPricingIn(CamelModel):
    deposit_minimum: Decimal = Field(..., ge=0)
    order_fee: Decimal = Field(..., ge=0)
    monthly_price: Decimal = Field(..., gt=0)


class PlanSettingsBody(CamelModel):
    trial_days: int = Field(..., ge=0, le=365)
    trial_grace_days: int = Field(..., ge=0, le=60)
    monthly_grace_days: int = Field(..., ge=0, le=60)
    deposit_grace_days: int = Field(..., ge=0, le=60)
    payment_request_expiry_hours: int = Field(..., ge=1, le=24 * 30)
    pricing: dict[str, CurrencyPricingIn] = {}


class PlanSettingsResponse(PlanSettingsBody):
    success: bool = True
    pricing: dict[str, PricingOut] = {}


# --- Cron ---
class CronTaskOut(CamelModel):
    task: str
    success: bool
    count: int
    actions: dict[str, int] = {}
    errors: List[dict[str, Any]] = []


class CronRunResponse(CamelModel):
    success: bool
    skipped: bool
    job: str
    duration_ms: int
    tasks: List[CronTaskOut] = []


# --- Public ---
class PublicMerchantOut(CamelModel):
    success: bool = True
    code: str
    name: str
    currency: str
    is_open: bool
    accepting_orders: bool
