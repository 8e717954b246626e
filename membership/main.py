"""
Membership API
FastAPI app exposing the Stripe webhook endpoint and the subscription facade routes.
Run with: uvicorn membership.main:app --port 8000
"""
import logging
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from supabase import create_client

from membership.config import Settings, get_settings
from membership.content_release import ReleasedContent
from membership.errors import SignatureVerificationFailed, SubscriptionError
from membership.gateway import StripeGateway
from membership.gateway_policy import GatewayCallPolicy
from membership.logging_config import setup_logging
from membership.models import (
    ActionResult,
    PaymentMethodSummary,
    ProrationPreview,
    SubscriptionStatusView,
    payload_field,
)
from membership.notifications import LoggingNotifier
from membership.pricing import PriceTable
from membership.service import SubscriptionService, status_view
from membership.store import (
    InMemoryEventLedger,
    InMemorySubscriptionStore,
    SupabaseEventLedger,
    SupabaseSubscriptionStore,
    UserLocks,
)
from membership.webhooks import WebhookDispatcher

logger = logging.getLogger(__name__)


class BillingComponents:
    """Service and dispatcher sharing one store, lock registry and gateway"""

    def __init__(self, settings: Settings, service: SubscriptionService, dispatcher: WebhookDispatcher):
        self.settings = settings
        self.service = service
        self.dispatcher = dispatcher


def build_components(settings: Settings) -> BillingComponents:
    prices = PriceTable.from_settings(settings)
    gateway = StripeGateway(settings.stripe_secret_key)

    if settings.store_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set for MEMBERSHIP_STORE=supabase")
        # Service role key bypasses RLS for backend writes
        client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        store = SupabaseSubscriptionStore(client)
        ledger = SupabaseEventLedger(client)
    else:
        logger.warning("Using in-memory subscription store (MEMBERSHIP_STORE=%s)", settings.store_backend)
        store = InMemorySubscriptionStore()
        ledger = InMemoryEventLedger()

    locks = UserLocks()
    policy = GatewayCallPolicy.from_settings(settings)
    notifier = LoggingNotifier()
    service = SubscriptionService(gateway, store, prices, settings, locks, policy, notifier)
    dispatcher = WebhookDispatcher(
        gateway,
        store,
        locks,
        prices,
        policy,
        webhook_secret=settings.stripe_webhook_secret,
        ledger=ledger,
        notifier=notifier,
        mutation_attempts=settings.record_mutation_attempts,
    )
    return BillingComponents(settings, service, dispatcher)


# ========== Request models ==========

class UserRequest(BaseModel):
    user_id: str


class UpgradeRequest(BaseModel):
    user_id: str
    tier: str
    interval: str = "month"
    email: Optional[str] = None


class DowngradeRequest(BaseModel):
    user_id: str
    tier: str
    interval: Optional[str] = None


class CancelRequest(BaseModel):
    user_id: str
    immediate: bool = False


class PreviewRequest(BaseModel):
    user_id: str
    tier: str
    interval: Optional[str] = None


def create_app(components: Optional[BillingComponents] = None) -> FastAPI:
    """Build the app. Components are created from the environment on first use unless injected."""
    app = FastAPI(
        title="Membership API",
        description="Subscription lifecycle service: tiers, billing webhooks and reconciliation",
        version="1.0.0",
    )
    app.state.components = components

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[get_settings().frontend_url] if components is None else [components.settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        settings = app.state.components.settings if app.state.components else get_settings()
        setup_logging(settings.log_level)
        logger.info(
            "Membership API starting (environment=%s, store=%s, stripe configured=%s)",
            settings.environment, settings.store_backend, bool(settings.stripe_secret_key),
        )

    def get_components() -> BillingComponents:
        if app.state.components is None:
            app.state.components = build_components(get_settings())
        return app.state.components

    def get_service(components: BillingComponents = Depends(get_components)) -> SubscriptionService:
        return components.service

    @app.exception_handler(SubscriptionError)
    async def subscription_error_handler(request: Request, exc: SubscriptionError):
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "error": exc.code, "message": exc.message, "details": exc.details},
        )

    @app.get("/health")
    @app.get("/api/health")
    async def health_check():
        return {"status": "healthy"}

    # ========== Subscription facade ==========

    @app.post("/api/subscription/register-basic", response_model=SubscriptionStatusView, tags=["Subscription"])
    async def register_basic(body: UserRequest, service: SubscriptionService = Depends(get_service)):
        record = await service.register_basic(body.user_id)
        return status_view(record)

    @app.get("/api/subscription/{user_id}", response_model=SubscriptionStatusView, tags=["Subscription"])
    async def subscription_status(user_id: str, service: SubscriptionService = Depends(get_service)):
        return await service.status(user_id)

    @app.get("/api/subscription/{user_id}/content", response_model=List[ReleasedContent], tags=["Subscription"])
    async def subscription_content(user_id: str, service: SubscriptionService = Depends(get_service)):
        return await service.released_content(user_id)

    @app.get("/api/subscription/{user_id}/payment-methods", response_model=List[PaymentMethodSummary], tags=["Subscription"])
    async def payment_methods(user_id: str, service: SubscriptionService = Depends(get_service)):
        return await service.list_payment_methods(user_id)

    @app.post("/api/subscription/upgrade", response_model=ActionResult, response_model_exclude_none=True, tags=["Subscription"])
    async def upgrade(body: UpgradeRequest, service: SubscriptionService = Depends(get_service)):
        return await service.upgrade(body.user_id, body.tier, body.interval, email=body.email)

    @app.post("/api/subscription/downgrade", response_model=ActionResult, response_model_exclude_none=True, tags=["Subscription"])
    async def downgrade(body: DowngradeRequest, service: SubscriptionService = Depends(get_service)):
        return await service.downgrade(body.user_id, body.tier, body.interval)

    @app.post("/api/subscription/cancel", response_model=ActionResult, response_model_exclude_none=True, tags=["Subscription"])
    async def cancel(body: CancelRequest, service: SubscriptionService = Depends(get_service)):
        return await service.cancel(body.user_id, immediate=body.immediate)

    @app.post("/api/subscription/reactivate", response_model=ActionResult, response_model_exclude_none=True, tags=["Subscription"])
    async def reactivate(body: UserRequest, service: SubscriptionService = Depends(get_service)):
        return await service.reactivate(body.user_id)

    @app.post("/api/subscription/preview", response_model=ProrationPreview, tags=["Subscription"])
    async def preview(body: PreviewRequest, service: SubscriptionService = Depends(get_service)):
        return await service.preview_change(body.user_id, body.tier, body.interval)

    # ========== Stripe Webhook ==========

    @app.get("/api/webhooks/stripe", tags=["Webhooks"])
    async def stripe_webhook_get():
        """Webhook endpoint health check"""
        settings = app.state.components.settings if app.state.components else get_settings()
        env_status = {
            "STRIPE_SECRET_KEY": bool(settings.stripe_secret_key),
            "STRIPE_WEBHOOK_SECRET": bool(settings.stripe_webhook_secret),
        }
        all_configured = all(env_status.values())
        return {
            "status": "ok" if all_configured else "warning",
            "message": "Stripe Webhook endpoint is active. Use POST method for actual webhook events."
            if all_configured else "Endpoint is active but some environment variables are missing.",
            "endpoint": "/api/webhooks/stripe",
            "methods": ["POST", "GET"],
            "environment_variables": env_status,
            "ready": all_configured,
        }

    @app.post("/api/webhooks/stripe", tags=["Webhooks"])
    async def stripe_webhook(request: Request):
        """Verify and dispatch a Stripe event. Only infrastructure failures return 5xx."""
        body = await request.body()
        sig_header = request.headers.get("stripe-signature")
        if not sig_header:
            logger.warning("SECURITY: webhook rejected, missing stripe-signature header")
            raise HTTPException(status_code=400, detail="Missing stripe-signature header")

        try:
            dispatcher = get_components().dispatcher
        except ValueError as e:
            logger.error("Webhook received but billing is not configured: %s", e)
            raise HTTPException(status_code=500, detail=str(e))

        if not dispatcher.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured")
            raise HTTPException(status_code=500, detail="STRIPE_WEBHOOK_SECRET not configured")

        try:
            event = dispatcher.verify(body, sig_header)
        except SignatureVerificationFailed as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            outcome = await dispatcher.dispatch(event)
        except Exception as e:
            # Server error makes Stripe redeliver the event
            logger.exception("Error processing webhook event %s [id: %s]", payload_field(event, "type"), payload_field(event, "id"))
            raise HTTPException(status_code=500, detail=f"Error processing webhook event: {e}")

        return {
            "status": "success",
            "event_type": outcome.event_type,
            "event_id": outcome.event_id,
            "outcome": outcome.status,
        }

    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    setup_logging(settings.log_level)
    uvicorn.run(app, host="127.0.0.1", port=8000, log_level="info")
