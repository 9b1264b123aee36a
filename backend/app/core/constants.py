"""
Shared constants for the billing engine.

Enum values are stored as plain strings in the database; always write
`.value` when persisting.
"""
from decimal import Decimal
from enum import Enum


class SubscriptionType(str, Enum):
    NONE = "NONE"
    TRIAL = "TRIAL"
    DEPOSIT = "DEPOSIT"
    MONTHLY = "MONTHLY"


class SubscriptionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CANCELLED = "CANCELLED"


class SuspendReason(str, Enum):
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    MONTHLY_EXPIRED = "MONTHLY_EXPIRED"
    DEPOSIT_DEPLETED = "DEPOSIT_DEPLETED"


# Reasons the engine owns; anything else (admin free text) is never auto-reactivated.
AUTO_SUSPEND_REASONS = frozenset(r.value for r in SuspendReason)


class HistoryEvent(str, Enum):
    CREATED = "CREATED"
    GRACE_STARTED = "GRACE_STARTED"
    GRACE_CLEARED = "GRACE_CLEARED"
    SUSPENDED = "SUSPENDED"
    REACTIVATED = "REACTIVATED"
    MANUAL_SWITCH = "MANUAL_SWITCH"
    MODE_SWITCHED = "MODE_SWITCHED"
    ADMIN_OVERRIDE = "ADMIN_OVERRIDE"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"


class Actor(str, Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    OWNER = "owner"


class PaymentRequestType(str, Enum):
    DEPOSIT_TOPUP = "DEPOSIT_TOPUP"
    MONTHLY_SUBSCRIPTION = "MONTHLY_SUBSCRIPTION"


class PaymentRequestStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


OPEN_PAYMENT_REQUEST_STATUSES = (
    PaymentRequestStatus.PENDING.value,
    PaymentRequestStatus.CONFIRMED.value,
)


class BalanceTransactionType(str, Enum):
    TOPUP = "TOPUP"
    ORDER_FEE = "ORDER_FEE"
    ADJUSTMENT = "ADJUSTMENT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


MIN_MONTHS = 1
MAX_MONTHS = 12

# Merchant-local days before a trial or monthly period ends that get a warning.
EXPIRY_WARNING_DAYS = (7, 3, 1)

# ---------------------------------------------------------------------------
# Decimal helpers
# ---------------------------------------------------------------------------
ZERO = Decimal("0")
ONE_CENT = Decimal("0.01")
