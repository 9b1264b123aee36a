# backend/app/services/__init__.py
"""
Services layer for billing logic.
Keeps API endpoints thin and the subscription engine testable and reusable.
"""

from backend.app.services.cache import CacheService
from backend.app.services.plans import (
    PlanService,
    PlanSettings,
    CurrencyPricing,
)
from backend.app.services.notifications import (
    NotificationService,
    RenderedNotification,
    render_notification,
)
from backend.app.services.balance import (
    BalanceService,
    InsufficientBalanceError,
)
from backend.app.services.subscription_store import SubscriptionStore
from backend.app.services.auto_switch import (
    AutoSwitchEngine,
    Action,
    CheckResult,
    decide,
    run_check,
    opportunistic_check,
)
from backend.app.services.pending_suspension import (
    PendingSuspension,
    pending_suspension,
)
from backend.app.services.payment_requests import (
    PaymentRequestService,
    PaymentRequestNotFoundError,
    OpenPaymentRequestExistsError,
    InvalidPaymentRequestStatusError,
)
from backend.app.services.subscriptions import (
    SubscriptionService,
    SubscriptionCancelledError,
    AdminOverride,
)
from backend.app.services.merchants import MerchantService
from backend.app.services.orders import (
    OrderService,
    InvalidOrderStatusError,
)
from backend.app.services.cron import (
    CronService,
    CronRunResult,
    TaskResult,
)

__all__ = [
    # Cache service
    "CacheService",
    # Plan settings
    "PlanService",
    "PlanSettings",
    "CurrencyPricing",
    # Notifications
    "NotificationService",
    "RenderedNotification",
    "render_notification",
    # Balance ledger
    "BalanceService",
    "InsufficientBalanceError",
    # Subscription engine
    "SubscriptionStore",
    "AutoSwitchEngine",
    "Action",
    "CheckResult",
    "decide",
    "run_check",
    "opportunistic_check",
    "PendingSuspension",
    "pending_suspension",
    # Payment requests
    "PaymentRequestService",
    "PaymentRequestNotFoundError",
    "OpenPaymentRequestExistsError",
    "InvalidPaymentRequestStatusError",
    # Subscription service
    "SubscriptionService",
    "SubscriptionCancelledError",
    "AdminOverride",
    # Merchants and orders
    "MerchantService",
    "OrderService",
    "InvalidOrderStatusError",
    # Scheduled jobs
    "CronService",
    "CronRunResult",
    "TaskResult",
]
