"""
GlobalConnect — core/config.py
─────────────────────────────────────────────────────────────────
Single source of truth for ALL environment variables.

Every other file imports from here, no os.getenv() scattered
across wallet.py, calls.py, payment.py etc.

Usage:
    from globalconnect.core.config import cfg

    print(cfg.DB_PATH)
    print(cfg.STRIPE_SECRET_KEY)
─────────────────────────────────────────────────────────────────
"""

import os
from dotenv import load_dotenv

load_dotenv()


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # ── App ───────────────────────────────────
    ENV:          str = os.getenv("ENV", "development")   # "production" in prod
    DB_PATH:      str = os.getenv("DB_PATH", "globalconnect.db")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:5173")

    # ── Identity provider (Supabase-issued JWTs) ─
    AUTH_JWT_SECRET:   str = os.getenv("AUTH_JWT_SECRET", "dev-secret-change-in-prod!")
    AUTH_JWT_AUDIENCE: str = os.getenv("AUTH_JWT_AUDIENCE", "")   # "" = no aud check
    ALGORITHM:         str = "HS256"

    # ── Stripe ────────────────────────────────
    STRIPE_SECRET_KEY:     str = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_API_BASE:       str = os.getenv("STRIPE_API_BASE", "https://api.stripe.com")
    STRIPE_TOLERANCE_SECS: int = 300

    # ── Razorpay ──────────────────────────────
    RAZORPAY_KEY_ID:         str = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET:     str = os.getenv("RAZORPAY_KEY_SECRET", "")
    RAZORPAY_WEBHOOK_SECRET: str = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
    RAZORPAY_API_BASE:       str = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com")

    # ── Billing ───────────────────────────────
    DEFAULT_CURRENCY:       str  = os.getenv("DEFAULT_CURRENCY", "USD")
    PIN_RATE_AT_INITIATION: bool = _bool_env("PIN_RATE_AT_INITIATION", True)
    STALE_CALL_MINUTES:     int  = int(os.getenv("STALE_CALL_MINUTES", "240"))
    DEFAULT_MAX_MEMBERS:    int  = int(os.getenv("DEFAULT_MAX_MEMBERS", "50"))

    # ── Database ──────────────────────────────
    DB_BUSY_TIMEOUT: float = float(os.getenv("DB_BUSY_TIMEOUT", "10"))   # seconds
    DB_MAX_RETRY:    int   = int(os.getenv("DB_MAX_RETRY", "3"))
    DB_RETRY_DELAY:  float = 0.05   # seconds, multiplied by attempt number

    # ── Shortcuts ─────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def is_dev(self) -> bool:
        return self.ENV == "development"

    @property
    def stripe_ready(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY)

    @property
    def razorpay_ready(self) -> bool:
        return bool(self.RAZORPAY_KEY_ID and self.RAZORPAY_KEY_SECRET)

    def __repr__(self):
        return (
            f"<Config env={self.ENV} db={self.DB_PATH} "
            f"stripe={'✓' if self.stripe_ready else '✗'} "
            f"razorpay={'✓' if self.razorpay_ready else '✗'}>"
        )


# Single global instance, import this everywhere
cfg = Config()
