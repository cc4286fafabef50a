"""Stripe webhook endpoint."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from ....core.dependencies import get_webhook_reconciler
from ....domain.errors import BillingError
from ....services.stripe_webhook import StripeWebhookReconciler

router = APIRouter(prefix="/api/stripe", tags=["Stripe Webhooks"])


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    reconciler: StripeWebhookReconciler = Depends(get_webhook_reconciler),
) -> Dict[str, Any]:
    """Acknowledge a Stripe event once its signature checks out, whatever the processing outcome."""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    try:
        outcome = reconciler.handle(payload, signature)
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return outcome.to_response()
