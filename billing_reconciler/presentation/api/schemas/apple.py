"""Pydantic schemas for the App Store endpoints."""

from typing import Optional

from pydantic import BaseModel, Field


class ReceiptValidationRequest(BaseModel):
    receipt_data: Optional[str] = Field(None, alias="receiptData", description="Base64 encoded receipt")
    user_id: Optional[str] = Field(None, alias="userId")


class AppleNotificationRequest(BaseModel):
    signed_payload: Optional[str] = Field(None, alias="signedPayload")
