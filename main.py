"""
GlobalConnect — main.py
─────────────────────────────────────────────────────────────────
Central entry point. All routers mount here.

Start server:
    uvicorn main:app --reload --port 8000

File map:
    globalconnect/rates.py      → /api/rates/*       (public rate card)
    globalconnect/wallet.py     → /api/wallet/*      (balance, ledger, deduct)
    globalconnect/calls.py      → /api/calls/*       (initiate, end, status)
    globalconnect/payment.py    → /api/payments/*    (stripe, razorpay)
    globalconnect/enterprise.py → /api/enterprise/*  (shared credits)
    globalconnect/admin.py      → /api/admin/*       (console)
─────────────────────────────────────────────────────────────────
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from globalconnect.core.config import cfg
from globalconnect.core.database import init_all_tables
from globalconnect.core.errors import BillingError
from globalconnect.models.payment import Provider
from globalconnect.payment import PaymentProvider, PaymentService
from globalconnect.rates import RateService
from globalconnect.wallet import WalletService
from globalconnect.calls import CallService
from globalconnect.enterprise import EnterpriseService
from globalconnect import rates, wallet, calls, payment, enterprise, admin

# ── Logging ───────────────────────────────────
logging.basicConfig(
    level   = logging.INFO,
    format  = "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt = "%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("globalconnect.main")

VERSION = "1.0.0"


# ─────────────────────────────────────────────
# Startup / Shutdown
# ─────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 GlobalConnect starting [{cfg.ENV}]")
    await init_all_tables(app.state.db_path)
    if not cfg.stripe_ready:
        logger.warning("⚠️  Stripe keys not set, Stripe intents/webhooks will be rejected")
    if not cfg.razorpay_ready:
        logger.warning("⚠️  Razorpay keys not set, Razorpay orders/webhooks will be rejected")
    logger.info("✅ GlobalConnect is live.")

    yield  # App runs here

    logger.info("GlobalConnect shutting down.")


# ─────────────────────────────────────────────
# App factory
# ─────────────────────────────────────────────
def create_app(
    db_path: Optional[str] = None,
    payment_providers: Optional[Dict[Provider, PaymentProvider]] = None,
) -> FastAPI:
    """
    Build the app with its services on app.state.
    Tests pass their own db_path and fake payment providers.
    """
    app = FastAPI(
        title       = "GlobalConnect API",
        description = "Prepaid international calling: balances, call billing, top-ups",
        version     = VERSION,
        docs_url    = "/docs"  if not cfg.is_production else None,
        redoc_url   = "/redoc" if not cfg.is_production else None,
        lifespan    = lifespan,
    )

    path = db_path or cfg.DB_PATH
    wallet_service     = WalletService(path)
    rate_service       = RateService(path)
    enterprise_service = EnterpriseService(wallet_service, path)

    app.state.db_path    = path
    app.state.wallet     = wallet_service
    app.state.rates      = rate_service
    app.state.enterprise = enterprise_service
    app.state.calls      = CallService(wallet_service, rate_service, enterprise_service, path)
    app.state.payments   = PaymentService(wallet_service, payment_providers, path)

    # ── CORS ──────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins     = [cfg.FRONTEND_URL],
        allow_credentials = True,
        allow_methods     = ["*"],
        allow_headers     = ["*"],
    )

    # ── Routers ───────────────────────────────
    app.include_router(rates.router)
    app.include_router(wallet.router)
    app.include_router(calls.router)
    app.include_router(payment.router)
    app.include_router(enterprise.router)
    app.include_router(admin.router)

    # ── Error handlers ────────────────────────
    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code = exc.status_code,
            content     = jsonable_encoder({"error": exc.code, "detail": exc.message}),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error: {exc}", exc_info=True)
        return JSONResponse(
            status_code = 500,
            content     = {"error": "internal_error", "detail": "Internal server error."},
        )

    # ── Health ────────────────────────────────
    @app.get("/health", tags=["system"])
    async def health():
        """Quick ping for the load balancer / uptime monitor."""
        return {
            "status":   "ok",
            "app":      "GlobalConnect",
            "version":  VERSION,
            "env":      cfg.ENV,
            "stripe":   cfg.stripe_ready,
            "razorpay": cfg.razorpay_ready,
        }

    @app.get("/", tags=["system"])
    async def root():
        return {"message": "GlobalConnect API is running. Docs at /docs"}

    return app


app = create_app()


# ─────────────────────────────────────────────
# Run
# ─────────────────────────────────────────────
if __name__ == "__main__":
    import os
    import uvicorn
    uvicorn.run(
        "main:app",
        host   = "0.0.0.0",
        port   = int(os.getenv("PORT", 8000)),
        reload = not cfg.is_production,
    )
