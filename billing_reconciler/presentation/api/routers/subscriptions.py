"""Subscription lifecycle and entitlement endpoints for app users."""

from fastapi import APIRouter, Depends, HTTPException, Response

from ....application.services.auth_service import AuthenticatedUser
from ....core.dependencies import get_subscription_service
from ....domain.errors import BillingError
from ....services.subscription_service import SubscriptionService
from ...api.dependencies import require_user
from ...api.schemas.billing import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    EntitlementResponse,
    RefundRequestPayload,
    RefundResponse,
    SwitchBillingCycleRequest,
    SwitchBillingCycleResponse,
)

router = APIRouter(prefix="/api/billing", tags=["Billing"])


@router.post("/subscriptions", response_model=CreateSubscriptionResponse)
async def create_subscription(
    payload: CreateSubscriptionRequest,
    user: AuthenticatedUser = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Create a subscription and return the client secret for payment confirmation."""
    try:
        return await service.create_subscription(user.user_id, user.email, payload.billing_cycle)
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.post("/subscriptions/switch-cycle", response_model=SwitchBillingCycleResponse)
async def switch_billing_cycle(
    payload: SwitchBillingCycleRequest,
    user: AuthenticatedUser = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        return await service.switch_billing_cycle(user.user_id, payload.new_billing_cycle)
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.post("/subscriptions/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    payload: CancelSubscriptionRequest,
    user: AuthenticatedUser = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        return await service.cancel_subscription(user.user_id, immediate=payload.immediate)
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.post("/refunds", response_model=RefundResponse)
async def request_refund(
    payload: RefundRequestPayload,
    user: AuthenticatedUser = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Refund the latest payment while inside the refund window."""
    try:
        return await service.request_refund(user.user_id, payload.reason)
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    response: Response,
    user: AuthenticatedUser = Depends(require_user),
    service: SubscriptionService = Depends(get_subscription_service),
):
    response.headers["Cache-Control"] = "no-store"
    try:
        return service.get_entitlement(user.user_id)
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
