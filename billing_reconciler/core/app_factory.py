from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings
from .container import ApplicationContainer
from .dependencies import get_persistence_gateway
from .logging import configure_logging
from ..application.services.auth_service import UserAuthService
from ..domain.catalog import DEFAULT_TIERS
from ..domain.ports.persistence import PersistenceGateway
from ..infrastructure.persistence.sqlite import SQLitePersistence
from ..presentation.api.routers import apple as apple_router
from ..presentation.api.routers import stripe_webhook as stripe_webhook_router
from ..presentation.api.routers import subscriptions as subscriptions_router
from ..services.apple_client import AppleReceiptClient
from ..services.apple_jws import SignedPayloadVerifier, load_root_certificates
from ..services.apple_notifications import AppleNotificationProcessor
from ..services.apple_receipt import AppleReceiptValidator
from ..services.idempotency import IdempotencyLedger
from ..services.stripe_gateway import StripeGateway
from ..services.stripe_webhook import StripeWebhookReconciler
from ..services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


def create_application(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()

    app = FastAPI(title="Billing Reconciler", lifespan=_create_lifespan(settings))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(stripe_webhook_router.router)
    app.include_router(apple_router.router)
    app.include_router(subscriptions_router.router)

    @app.get("/health")
    async def health(
        persistence: PersistenceGateway = Depends(get_persistence_gateway),
    ) -> Dict[str, Any]:
        return {"ok": True, "processed_events": persistence.count_processed_events()}

    return app


def build_container(settings: Settings) -> ApplicationContainer:
    billing_config = settings.billing_config()
    persistence = SQLitePersistence(settings.database_path)
    persistence.seed_tiers(DEFAULT_TIERS)
    ledger = IdempotencyLedger(persistence)
    stripe_gateway = StripeGateway(billing_config)
    apple_client = AppleReceiptClient(
        billing_config.platform_shared_secret,
        timeout=settings.apple_verify_timeout,
    )
    if settings.apple_root_cert_path:
        apple_roots = load_root_certificates(settings.apple_root_cert_path)
    else:
        logger.warning("APPLE_ROOT_CERT_PATH is not set; App Store notifications will be rejected")
        apple_roots = []
    return ApplicationContainer(
        settings=settings,
        billing_config=billing_config,
        persistence=persistence,
        ledger=ledger,
        auth_service=UserAuthService(
            secret_key=settings.auth_jwt_secret,
            algorithm=settings.auth_jwt_algorithm,
            audience=settings.auth_jwt_audience,
        ),
        stripe_gateway=stripe_gateway,
        webhook_reconciler=StripeWebhookReconciler(
            persistence,
            ledger,
            billing_config,
            tolerance=settings.stripe_webhook_tolerance,
        ),
        apple_client=apple_client,
        receipt_validator=AppleReceiptValidator(persistence, ledger, apple_client, billing_config),
        notification_processor=AppleNotificationProcessor(
            persistence, ledger, billing_config, SignedPayloadVerifier(apple_roots)
        ),
        subscription_service=SubscriptionService(persistence, stripe_gateway),
    )


def _create_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        container = build_container(settings)
        app.state.container = container  # type: ignore[attr-defined]
        logger.info("Billing reconciler started with database %s", settings.database_path)

        try:
            yield
        finally:
            await container.apple_client.close()
            container.persistence.close()

    return lifespan
