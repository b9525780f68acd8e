"""
Ledger Service: deck purchases, balance top-ups and creator payouts.

    uvicorn --factory ledger_service.main:create_app
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import jwt
from fastapi import FastAPI, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from common.documentation import create_custom_openapi, PURCHASE_DOCS, WEBHOOK_DOCS
from common.error_handling import AccountNotFound, add_error_handlers
from common.retry import retry_call, STORAGE_RETRY_CONFIG
from common.schemas import (
    BalanceView, OnboardingRequest, OnboardingStatus, OwnedItemsView, PayoutRequest, PayoutResult,
    PublishItem, PurchaseRequest, PurchaseResult, TopUpRequest, TopUpResult,
)
from common.security import LEDGER_AUDIENCE, bearer_token, verify_token
from common.settings import settings
from common.tracing import ledger_tracer, tracing_middleware
from ledger_service.db import make_engine, make_session_factory
from ledger_service.engine import ReconciliationEngine
from ledger_service.expiry_worker import sweep_once
from ledger_service.gateway import PaymentGateway, StripeGateway
from ledger_service.models import Base
from ledger_service.store import LedgerStore, utcnow

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Internal calls (catalog publishing, maintenance) carry a down-scoped token
async def internal_auth(authorization: Optional[str] = Header(None)):
    token = bearer_token(authorization)
    if token is None:
        raise HTTPException(401, "missing bearer token")
    try:
        verify_token(token, audience=LEDGER_AUDIENCE)
    except jwt.PyJWTError as e:
        raise HTTPException(401, f"invalid internal token: {e}")

def create_app(db_engine=None, gateway: PaymentGateway = None, clock=utcnow) -> FastAPI:
    db_engine = db_engine if db_engine is not None else make_engine()
    store = LedgerStore(make_session_factory(db_engine), clock=clock)
    reconciler = ReconciliationEngine(store, gateway or StripeGateway(), clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=db_engine)
        logger.info("Ledger service started")
        yield

    app = FastAPI(title="Ledger Service", version="1.0.0", lifespan=lifespan)
    app.state.reconciler = reconciler
    add_error_handlers(app)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, ledger_tracer)

    app.openapi = lambda: create_custom_openapi(
        app, "Ledger Service", "1.0.0", "Balance-funded deck purchases reconciled with processor webhooks"
    )

    # ------------------------------------------------------------------
    # Purchases and top-ups
    # ------------------------------------------------------------------

    @app.post("/purchase", response_model=PurchaseResult, response_model_exclude_none=True,
              tags=["Purchases"], description=PURCHASE_DOCS)
    def purchase(req: PurchaseRequest):
        outcome = retry_call(reconciler.request_purchase, STORAGE_RETRY_CONFIG, req.buyer_id, req.item_id)
        return PurchaseResult(
            status=outcome.status,
            url=outcome.url,
            purchase_intent_id=outcome.purchase_intent_id,
            top_up_intent_id=outcome.top_up_intent_id,
            amount_minor_units=outcome.amount,
        )

    @app.post("/topup", response_model=TopUpResult, tags=["Top-ups"])
    def topup(req: TopUpRequest):
        top_up = retry_call(reconciler.request_top_up, STORAGE_RETRY_CONFIG, req.user_id, req.amount_minor_units)
        return TopUpResult(url=top_up.redirect_url, top_up_intent_id=top_up.id)

    @app.post("/webhook", tags=["Webhooks"], description=WEBHOOK_DOCS)
    async def webhook(request: Request, stripe_signature: Optional[str] = Header(None)):
        # Raw bytes: the signature covers the body exactly as sent
        payload = await request.body()
        outcome = await run_in_threadpool(reconciler.on_webhook, payload, stripe_signature)
        return {"received": True, "outcome": outcome}

    # ------------------------------------------------------------------
    # Read views
    # ------------------------------------------------------------------

    @app.get("/accounts/{user_id}/balance", response_model=BalanceView, tags=["Accounts"])
    def balance(user_id: str):
        try:
            amount = store.get_balance(user_id)
        except AccountNotFound:
            amount = 0
        return BalanceView(user_id=user_id, balance_minor_units=amount, currency=reconciler.currency)

    @app.get("/accounts/{user_id}/items", response_model=OwnedItemsView, tags=["Accounts"])
    def owned_items(user_id: str):
        return OwnedItemsView(user_id=user_id, item_ids=store.list_owned_items(user_id))

    # ------------------------------------------------------------------
    # Creators
    # ------------------------------------------------------------------

    @app.get("/creators/{creator_id}/onboarding", response_model=OnboardingStatus, tags=["Creators"])
    def onboarding_status(creator_id: str):
        return OnboardingStatus(**reconciler.get_onboarding_status(creator_id))

    @app.post("/creators/{creator_id}/onboarding", tags=["Creators"])
    def start_onboarding(creator_id: str, req: OnboardingRequest):
        return {"url": reconciler.start_onboarding(creator_id, req.email)}

    @app.post("/creators/{creator_id}/payouts", response_model=PayoutResult, tags=["Creators"])
    def payout(creator_id: str, req: PayoutRequest):
        outcome = reconciler.request_payout(creator_id, req.amount_minor_units)
        return PayoutResult(payout_id=outcome.payout_id, transfer_id=outcome.transfer_id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @app.post("/catalog", dependencies=[Depends(internal_auth)], tags=["Administration"])
    def publish(req: PublishItem):
        item = store.publish_item(req.item_id, req.owner_id, req.price_minor_units, req.title)
        return {"itemId": item.id, "ownerId": item.owner_id, "priceMinorUnits": item.price, "title": item.title}

    @app.post("/maintenance/expire", dependencies=[Depends(internal_auth)], tags=["Administration"])
    def expire():
        return sweep_once(reconciler)

    @app.get("/health", tags=["Health"])
    def health():
        return {"ok": True, "service": "ledger", "currency": settings.currency}

    return app
