# api/payment_routes.py
# ============================================================================
# PAYMENT + WEBHOOK ENDPOINTS
# ============================================================================
# /payments/{provider}/initiate|capture|verify  (bearer auth)
# /webhooks/{provider}                          (provider signature auth)
# ============================================================================

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from api.auth import get_actor
from pipeline.gateway import PaymentGateway, ReconcileReport
from schemas.commerce import (
    HELD_PAYMENT_STATUSES,
    Actor,
    EntityType,
    Payer,
    SubscriptionStatus,
)

logger = structlog.get_logger().bind(component="payment_routes")

router = APIRouter(tags=["payments"])


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class InitiateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: EntityType
    entity_id: str = Field(..., alias="entityId", min_length=1)
    amount: Optional[float] = Field(default=None, ge=0)
    email: Optional[str] = None
    name: Optional[str] = None


class InitiateResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider: str
    reference: str
    redirect_url: Optional[str] = Field(default=None, alias="redirectUrl")
    access_code: Optional[str] = Field(default=None, alias="accessCode")
    amount: float
    currency: str


class CaptureRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    provider_transaction_id: str = Field(..., alias="providerTransactionId", min_length=1)
    payer_id: Optional[str] = Field(default=None, alias="payerId")


class VerifyRequest(BaseModel):
    reference: str = Field(..., min_length=1)


class ConfirmResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    type: EntityType
    status: str
    payment_status: str = Field(alias="paymentStatus")
    duplicate: bool = False

    @classmethod
    def from_report(cls, report: ReconcileReport) -> "ConfirmResponse":
        if report.entity_type == EntityType.ORDER:
            success = report.payment_status in HELD_PAYMENT_STATUSES
        else:
            success = report.status == SubscriptionStatus.ACTIVE.value
        return cls(
            success=success and not report.anomaly,
            type=report.entity_type,
            status=report.status,
            payment_status=report.payment_status.value,
            duplicate=report.duplicate,
        )


# ============================================================================
# PAYMENT ENDPOINTS
# ============================================================================

@router.post("/payments/{provider}/initiate")
async def initiate_payment(
    provider: str,
    body: InitiateRequest,
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Create a provider checkout for an order or subscription."""
    payer = Payer(email=body.email, name=body.name or "") if body.email else None
    session = await gateway.initiate(
        provider,
        body.type,
        body.entity_id,
        actor,
        amount=body.amount,
        payer=payer,
    )
    return InitiateResponse(
        provider=session.provider.value,
        reference=session.reference,
        redirect_url=session.redirect_url,
        access_code=session.access_code,
        amount=session.amount,
        currency=session.currency,
    ).model_dump(by_alias=True)


@router.post("/payments/{provider}/capture")
async def capture_payment(
    provider: str,
    body: CaptureRequest,
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Redirect return for two-phase providers: authorize then capture."""
    report = await gateway.confirm(provider, body.provider_transaction_id, actor, payer_id=body.payer_id)
    return ConfirmResponse.from_report(report).model_dump(by_alias=True)


@router.post("/payments/{provider}/verify")
async def verify_payment(
    provider: str,
    body: VerifyRequest,
    actor: Actor = Depends(get_actor),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Redirect return for single-phase providers."""
    report = await gateway.confirm(provider, body.reference, actor)
    return ConfirmResponse.from_report(report).model_dump(by_alias=True)


# ============================================================================
# WEBHOOKS
# ============================================================================

@router.post("/webhooks/{provider}")
async def provider_webhook(provider: str, request: Request, gateway: PaymentGateway = Depends(get_gateway)):
    """
    Provider webhook. Signature failures are rejected with 401; anything
    else that authenticates is acknowledged so the provider stops retrying.
    """
    payload = await request.body()
    return await gateway.process_webhook(provider, payload, dict(request.headers))
