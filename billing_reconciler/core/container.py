from dataclasses import dataclass

from ..application.services.auth_service import UserAuthService
from .config import BillingConfig, Settings
from ..domain.ports.persistence import PersistenceGateway
from ..services.apple_client import AppleReceiptClient
from ..services.apple_notifications import AppleNotificationProcessor
from ..services.apple_receipt import AppleReceiptValidator
from ..services.idempotency import IdempotencyLedger
from ..services.stripe_gateway import StripeGateway
from ..services.stripe_webhook import StripeWebhookReconciler
from ..services.subscription_service import SubscriptionService


@dataclass(slots=True)
class ApplicationContainer:
    """Dependency registry shared across the FastAPI application lifecycle."""

    settings: Settings
    billing_config: BillingConfig
    persistence: PersistenceGateway
    ledger: IdempotencyLedger
    auth_service: UserAuthService
    stripe_gateway: StripeGateway
    webhook_reconciler: StripeWebhookReconciler
    apple_client: AppleReceiptClient
    receipt_validator: AppleReceiptValidator
    notification_processor: AppleNotificationProcessor
    subscription_service: SubscriptionService
