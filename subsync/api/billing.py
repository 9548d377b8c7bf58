"""
Billing API routes.

Surface:
- GET  /api/billing/plans: Public tier catalogue
- POST /api/billing/checkout: Create checkout session
- POST /api/billing/portal: Create portal session
- POST /api/billing/webhook: Handle Stripe webhooks
- GET  /api/billing/status: Get caller's billing status
- POST /api/billing/trial: Start the free trial

Errors are raised as AppError subclasses and rendered by the handlers in
core/errors.py.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from subsync.core.auth import Identity, get_current_identity
from subsync.features.billing.service import BillingService, get_billing_service
from subsync.features.billing.status import format_price, summarize
from subsync.features.billing.store import utc_now


router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session. The user comes from the caller identity."""
    plan_id: str
    success_url: str
    cancel_url: str


class CheckoutResponse(BaseModel):
    session_id: str
    redirect_url: str


class PortalRequest(BaseModel):
    return_url: str


class PortalResponse(BaseModel):
    redirect_url: str


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    description: str
    price: Optional[Dict[str, Any]]  # None = custom pricing
    features: List[str]
    purchasable: bool
    limits: Dict[str, Any]


class BillingStatusResponse(BaseModel):
    tier: Optional[str]
    status: Optional[str]
    active: bool
    message: str
    limits: Optional[Dict[str, Any]]
    current_period_end: Optional[str]  # ISO8601
    trial_ends_at: Optional[str]  # ISO8601
    has_billing_account: bool


@router.get("/plans", response_model=List[PlanResponse])
def list_plans(service: BillingService = Depends(get_billing_service)):
    """Tier catalogue for the pricing page. Price ids are not exposed."""
    return [
        PlanResponse(
            plan_id=definition.tier.value,
            name=definition.name,
            description=definition.description,
            price=format_price(definition.monthly_price_cents),
            features=list(definition.features),
            purchasable=definition.purchasable,
            limits=definition.limits.model_dump(),
        )
        for definition in service.catalog.definitions.values()
    ]


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    request: CheckoutRequest,
    identity: Identity = Depends(get_current_identity),
    service: BillingService = Depends(get_billing_service),
):
    """
    Create Stripe checkout session.

    Returns:
        {"session_id": "cs_...", "redirect_url": "https://checkout.stripe.com/..."}

    Errors:
        401: No caller identity
        400: Unknown or non-purchasable plan_id
        503: Stripe or database temporarily unavailable
    """
    result = service.sessions.create_checkout_session(
        user_id=identity.user_id,
        plan_id=request.plan_id,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        email=identity.email,
    )
    return CheckoutResponse(session_id=result.session_id, redirect_url=result.redirect_url)


@router.post("/portal", response_model=PortalResponse)
def create_portal(
    request: PortalRequest,
    identity: Identity = Depends(get_current_identity),
    service: BillingService = Depends(get_billing_service),
):
    """
    Create Stripe billing portal session.

    Errors:
        401: No caller identity
        409: User never checked out (no Stripe customer)
        503: Stripe or database temporarily unavailable
    """
    result = service.sessions.create_portal_session(identity.user_id, request.return_url)
    return PortalResponse(redirect_url=result.redirect_url)


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    service: BillingService = Depends(get_billing_service),
):
    """
    Handle Stripe webhook events.

    The raw body is read untouched; signature verification needs the exact
    bytes Stripe signed.

    Returns:
        {"received": true, "event_id": ..., "action": ...}

    Errors:
        400: Invalid signature or payload
        503: Transient failure, Stripe will redeliver
    """
    body = await request.body()
    outcome = await run_in_threadpool(service.webhooks.handle_inbound, body, stripe_signature)
    return {
        "received": True,
        "event_id": outcome.event_id,
        "action": outcome.action.value,
        "duplicate": outcome.duplicate,
    }


@router.get("/status", response_model=BillingStatusResponse)
def get_status(
    identity: Identity = Depends(get_current_identity),
    service: BillingService = Depends(get_billing_service),
):
    """Caller's billing record summary; all-null fields when no record exists."""
    record = service.store.get(identity.user_id)
    return summarize(record, utc_now())


@router.post("/trial", response_model=BillingStatusResponse)
def start_trial(
    identity: Identity = Depends(get_current_identity),
    service: BillingService = Depends(get_billing_service),
):
    """Start the free trial. Repeating the call returns the current status."""
    record = service.trials.start_trial(identity.user_id)
    return summarize(record, utc_now())
