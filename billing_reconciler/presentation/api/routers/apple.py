"""App Store receipt validation and server notification endpoints."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from ....core.dependencies import get_notification_processor, get_receipt_validator
from ....domain.errors import BillingError
from ....services.apple_notifications import AppleNotificationProcessor
from ....services.apple_receipt import AppleReceiptValidator, ReceiptRejectedError
from ..schemas.apple import AppleNotificationRequest, ReceiptValidationRequest

router = APIRouter(prefix="/api/apple", tags=["Apple In-App Purchase"])


@router.post("/receipts")
async def validate_receipt(
    payload: ReceiptValidationRequest,
    validator: AppleReceiptValidator = Depends(get_receipt_validator),
):
    """Validate a receipt with Apple and grant the purchased tier."""
    try:
        result = await validator.validate(payload.receipt_data, payload.user_id)
    except ReceiptRejectedError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())
    return result.to_response()


@router.post("/notifications", include_in_schema=False)
async def apple_notification(
    payload: AppleNotificationRequest,
    processor: AppleNotificationProcessor = Depends(get_notification_processor),
) -> Dict[str, Any]:
    try:
        outcome = processor.handle(payload.signed_payload)
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    return outcome.to_response()
