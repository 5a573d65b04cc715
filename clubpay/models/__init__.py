from clubpay.models.billing import (  # noqa: F401
    ActorType,
    BillingFrequency,
    Invoice,
    InvoiceStatus,
    MembershipTier,
    Subscription,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
)
from clubpay.models.club import UserChild  # noqa: F401
from clubpay.models.payment import (  # noqa: F401
    MandateStatus,
    PaymentCustomer,
    PaymentMandate,
    PaymentMethod,
    PaymentMethodStatus,
    PaymentMethodType,
    PaymentStatus,
    ProviderPayment,
    WebhookRecord,
)
