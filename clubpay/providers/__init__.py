from clubpay.config import Settings
from clubpay.providers.base import PaymentProvider
from clubpay.providers.gocardless import GoCardlessProvider


def build_providers(settings: Settings) -> dict[str, PaymentProvider]:
    """Construct one client per configured provider for this process."""
    gocardless = GoCardlessProvider(
        access_token=settings.gocardless_access_token,
        environment=settings.gocardless_environment,
        webhook_secret=settings.gocardless_webhook_secret,
    )
    return {gocardless.name: gocardless}


__all__ = ["GoCardlessProvider", "PaymentProvider", "build_providers"]
