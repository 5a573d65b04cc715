from clubpay.services.billing.billing_cycles import BillingCycleResult, BillingCycleService
from clubpay.services.billing.customers import CustomerService
from clubpay.services.billing.invoices import InvoiceLedger
from clubpay.services.billing.mandates import MandateService, SetupFlowStart
from clubpay.services.billing.payment_methods import PaymentMethodService
from clubpay.services.billing.reconciler import (
    SUSPENSION_THRESHOLD,
    PaymentOutcome,
    PaymentReconciler,
    ProrationPreview,
)
from clubpay.services.billing.subscriptions import (
    SYSTEM_ACTOR,
    VALID_TRANSITIONS,
    WEBHOOK_ACTOR,
    Actor,
    SubscriptionService,
    TierChange,
)
from clubpay.services.billing.tiers import Tiers, tiers
from clubpay.services.billing.webhooks import (
    EventKind,
    EventResult,
    WebhookProcessor,
    WebhookResult,
)

__all__ = [
    "SUSPENSION_THRESHOLD",
    "SYSTEM_ACTOR",
    "VALID_TRANSITIONS",
    "WEBHOOK_ACTOR",
    "Actor",
    "BillingCycleResult",
    "BillingCycleService",
    "CustomerService",
    "EventKind",
    "EventResult",
    "InvoiceLedger",
    "MandateService",
    "PaymentMethodService",
    "PaymentOutcome",
    "PaymentReconciler",
    "ProrationPreview",
    "SetupFlowStart",
    "SubscriptionService",
    "TierChange",
    "Tiers",
    "WebhookProcessor",
    "WebhookResult",
    "tiers",
]
