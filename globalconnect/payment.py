"""
GlobalConnect — payment.py
─────────────────────────────────────────────────────────────────
Payment Reconciliation
- Stripe  → PaymentIntent (USD and other card currencies)
- Razorpay → Order (INR)
- Webhooks: signature FIRST, then parse, then credit exactly once

Both providers are called over their REST APIs with httpx.
Webhook bodies are normalized into PaymentEvent before they reach
the reconciliation logic.

ENDPOINTS:
  POST /api/payments/intent
  POST /api/payments/webhook/{provider}
  GET  /api/payments/history
─────────────────────────────────────────────────────────────────
"""

import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional, Dict, Any, List

import httpx
from fastapi import APIRouter, Depends, Header, Request
from pydantic import Field

from globalconnect.core.config import cfg
from globalconnect.core.database import get_db, run_in_transaction, now_iso, new_id
from globalconnect.core.errors import (
    AlreadySettled, InvalidAmount, InvalidProvider, InvalidSignature,
    InvalidPayload, NotFound, ProviderError,
)
from globalconnect.core.money import (
    to_money, to_units, from_units, minor_to_money, money_to_minor, Number,
)
from globalconnect.core.schemas import ApiModel
from globalconnect.core.security import Identity, get_current_identity
from globalconnect.models.payment import (
    PaymentRecord, PaymentStatus, Provider, EventKind, ProviderCharge, PaymentEvent,
)
from globalconnect.wallet import WalletService, REASON_TOPUP

logger = logging.getLogger("globalconnect.payment")


def _decode_json(payload: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        raise InvalidPayload("Webhook body is not valid JSON")
    if not isinstance(body, dict):
        raise InvalidPayload("Webhook body must be a JSON object")
    return body


# ─────────────────────────────────────────────
# Provider adapters
# ─────────────────────────────────────────────
class PaymentProvider(ABC):
    """
    One adapter per payment provider.
    `transport` is handed to httpx.AsyncClient (tests pass a MockTransport).
    """

    name: Provider

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=10.0)

    @abstractmethod
    async def create_charge(
        self, amount: Decimal, currency: str, metadata: Dict[str, str]
    ) -> ProviderCharge:
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        ...

    @abstractmethod
    def parse_event(self, payload: bytes) -> PaymentEvent:
        ...


class StripeProvider(PaymentProvider):
    name = Provider.STRIPE

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        tolerance: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(transport)
        self.secret_key     = secret_key if secret_key is not None else cfg.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else cfg.STRIPE_WEBHOOK_SECRET
        self.api_base       = (api_base or cfg.STRIPE_API_BASE).rstrip("/")
        self.tolerance      = cfg.STRIPE_TOLERANCE_SECS if tolerance is None else tolerance

    async def create_charge(self, amount, currency, metadata) -> ProviderCharge:
        if not self.secret_key:
            raise ProviderError("Stripe not configured. Add STRIPE_SECRET_KEY to environment variables.")

        data = {
            "amount":   money_to_minor(amount),          # cents
            "currency": currency.lower(),
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = value

        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.api_base}/v1/payment_intents",
                    headers={"Authorization": f"Bearer {self.secret_key}"},
                    data=data,
                )
        except httpx.HTTPError as e:
            logger.error(f"Stripe request failed: {e}")
            raise ProviderError("Failed to reach Stripe")

        if resp.status_code != 200:
            logger.error(f"Stripe intent creation failed: {resp.status_code} {resp.text}")
            raise ProviderError("Failed to create Stripe payment intent")

        intent = resp.json()
        return ProviderCharge(reference=intent["id"], handle=intent.get("client_secret", ""))

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """
        Stripe-Signature: t=<unix>,v1=<hex>[,v1=<hex>]
        v1 = HMAC-SHA256(secret, "<t>." + body)
        """
        if not self.webhook_secret:
            logger.warning("Stripe webhook rejected: STRIPE_WEBHOOK_SECRET not set")
            return False
        if not signature:
            return False

        pairs = [kv.split("=", 1) for kv in signature.split(",") if "=" in kv]
        timestamp = next((v.strip() for k, v in pairs if k.strip() == "t"), "")
        signatures = [v.strip() for k, v in pairs if k.strip() == "v1"]
        if not timestamp or not signatures:
            return False

        try:
            ts = int(timestamp)
        except ValueError:
            return False
        if self.tolerance and abs(time.time() - ts) > self.tolerance:
            logger.warning(f"Stripe webhook timestamp outside tolerance: {ts}")
            return False

        signed_payload = f"{timestamp}.".encode() + payload
        expected = hmac.new(self.webhook_secret.encode(), signed_payload, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(expected, s) for s in signatures)

    def parse_event(self, payload: bytes) -> PaymentEvent:
        body = _decode_json(payload)
        event_type = body.get("type") or ""
        if event_type != "payment_intent.succeeded":
            return PaymentEvent(kind=EventKind.OTHER, event_type=event_type)

        intent = (body.get("data") or {}).get("object") or {}
        metadata = intent.get("metadata") or {}
        minor = intent.get("amount_received") or intent.get("amount")
        if not intent.get("id") or minor is None:
            raise InvalidPayload("payment_intent.succeeded without id/amount")

        return PaymentEvent(
            kind               = EventKind.CAPTURED,
            event_type         = event_type,
            owner_id           = metadata.get("userId"),
            payment_id         = metadata.get("paymentId"),
            provider_reference = intent["id"],
            amount             = minor_to_money(minor),
            currency           = (intent.get("currency") or "").upper() or None,
        )


class RazorpayProvider(PaymentProvider):
    name = Provider.RAZORPAY

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(transport)
        self.key_id         = key_id if key_id is not None else cfg.RAZORPAY_KEY_ID
        self.key_secret     = key_secret if key_secret is not None else cfg.RAZORPAY_KEY_SECRET
        self.webhook_secret = webhook_secret if webhook_secret is not None else cfg.RAZORPAY_WEBHOOK_SECRET
        self.api_base       = (api_base or cfg.RAZORPAY_API_BASE).rstrip("/")

    async def create_charge(self, amount, currency, metadata) -> ProviderCharge:
        if not self.key_id or not self.key_secret:
            raise ProviderError(
                "Payment gateway not configured. Add RAZORPAY_KEY_ID and "
                "RAZORPAY_KEY_SECRET to environment variables."
            )

        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.api_base}/v1/orders",
                    auth=(self.key_id, self.key_secret),
                    json={
                        "amount":   money_to_minor(amount),   # paise
                        "currency": currency.upper(),
                        "receipt":  metadata.get("paymentId", ""),
                        "notes":    metadata,
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Razorpay request failed: {e}")
            raise ProviderError("Failed to reach Razorpay")

        if resp.status_code != 200:
            logger.error(f"Razorpay order creation failed: {resp.status_code} {resp.text}")
            raise ProviderError("Failed to create Razorpay order")

        order = resp.json()
        return ProviderCharge(
            reference = order["id"],
            handle    = order["id"],
            extra     = {"key": self.key_id, "amount": order.get("amount")},
        )

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        """X-Razorpay-Signature = hex HMAC-SHA256(webhook secret, raw body)."""
        if not self.webhook_secret:
            logger.warning("Razorpay webhook rejected: RAZORPAY_WEBHOOK_SECRET not set")
            return False
        if not signature:
            return False
        expected = hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip())

    def parse_event(self, payload: bytes) -> PaymentEvent:
        body = _decode_json(payload)
        event_type = body.get("event") or ""
        if event_type != "payment.captured":
            return PaymentEvent(kind=EventKind.OTHER, event_type=event_type)

        entity = (((body.get("payload") or {}).get("payment") or {}).get("entity")) or {}
        notes = entity.get("notes") or {}
        if not entity.get("id") or entity.get("amount") is None:
            raise InvalidPayload("payment.captured without id/amount")

        return PaymentEvent(
            kind               = EventKind.CAPTURED,
            event_type         = event_type,
            owner_id           = notes.get("userId"),
            payment_id         = notes.get("paymentId"),
            provider_reference = entity["id"],
            amount             = minor_to_money(entity["amount"]),
            currency           = entity.get("currency"),
        )


def default_providers() -> Dict[Provider, PaymentProvider]:
    return {
        Provider.STRIPE:   StripeProvider(),
        Provider.RAZORPAY: RazorpayProvider(),
    }


def _row_to_payment(row) -> PaymentRecord:
    return PaymentRecord(
        id                 = row["id"],
        owner_id           = row["owner_id"],
        amount             = from_units(row["amount_units"]),
        currency           = row["currency"],
        provider           = Provider(row["provider"]),
        provider_reference = row["provider_reference"],
        status             = PaymentStatus(row["status"]),
        credits_added      = from_units(row["credits_units"]) if row["credits_units"] is not None else None,
        created_at         = row["created_at"],
        updated_at         = row["updated_at"],
    )


# ─────────────────────────────────────────────
# PaymentService
# ─────────────────────────────────────────────
class PaymentService:

    def __init__(
        self,
        wallet: WalletService,
        providers: Optional[Dict[Provider, PaymentProvider]] = None,
        db_path: Optional[str] = None,
    ):
        self.db_path   = db_path or cfg.DB_PATH
        self.wallet    = wallet
        self.providers = providers if providers is not None else default_providers()

    def _provider(self, name) -> PaymentProvider:
        try:
            provider = Provider(str(name).lower())
        except ValueError:
            raise InvalidProvider(f"Unknown payment provider '{name}'")
        if provider not in self.providers:
            raise InvalidProvider(f"Payment provider '{provider.value}' is not enabled")
        return self.providers[provider]

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        async with get_db(self.db_path) as db:
            async with db.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)) as cur:
                row = await cur.fetchone()
        if not row:
            raise NotFound(f"Payment '{payment_id}' not found")
        return _row_to_payment(row)

    async def _set_status(self, payment_id: str, status: PaymentStatus, reference: Optional[str] = None):
        async def _work(db):
            await db.execute(
                """UPDATE payments
                   SET status = ?, provider_reference = COALESCE(?, provider_reference), updated_at = ?
                   WHERE id = ?""",
                (status.value, reference, now_iso(), payment_id)
            )
        await run_in_transaction(_work, self.db_path)

    # ─── Intent ────────────────────────────────

    async def create_payment_intent(
        self,
        owner_id: str,
        amount: Number,
        currency: Optional[str] = None,
        provider: str = "stripe",
    ) -> Dict[str, Any]:
        """
        pending record → provider charge → reference stored on the record.
        Nothing is credited here; the webhook does that.
        """
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount("Invalid amount")
        adapter = self._provider(provider)
        if adapter.name == Provider.RAZORPAY:
            currency = "INR"
        currency = (currency or cfg.DEFAULT_CURRENCY).upper()

        payment_id = new_id("pay_")

        async def _work(db):
            now = now_iso()
            await db.execute(
                """INSERT INTO payments
                   (id, owner_id, amount_units, currency, provider, status, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?,?)""",
                (payment_id, owner_id, to_units(amount), currency,
                 adapter.name.value, PaymentStatus.PENDING.value, now, now)
            )

        await run_in_transaction(_work, self.db_path)

        try:
            charge = await adapter.create_charge(
                amount, currency, {"userId": owner_id, "paymentId": payment_id}
            )
        except ProviderError:
            await self._set_status(payment_id, PaymentStatus.FAILED)
            raise

        await self._set_status(payment_id, PaymentStatus.PENDING, charge.reference)
        logger.info(
            f"Payment intent: {payment_id} {owner_id} {amount} {currency} "
            f"via {adapter.name.value} ({charge.reference})"
        )
        return {
            "payment_id":     payment_id,
            "provider":       adapter.name.value,
            "provider_handle": charge.handle,
            "amount":         amount,
            "currency":       currency,
            **charge.extra,
        }

    # ─── Webhook ───────────────────────────────

    async def handle_provider_webhook(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        provider: str,
    ) -> Dict[str, Any]:
        """
        1. signature (nothing is read or written before this passes)
        2. normalize → only captured events credit
        3. pending → completed + credit, one transaction, ref "payment:<id>"
        Duplicate deliveries answer already_processed.
        """
        adapter = self._provider(provider)

        if not adapter.verify_webhook_signature(raw_payload, signature):
            logger.warning(f"{adapter.name.value} webhook: invalid signature")
            raise InvalidSignature("Invalid webhook signature")

        event = adapter.parse_event(raw_payload)
        if event.kind != EventKind.CAPTURED:
            return {"status": "ignored", "event": event.event_type}

        payment_id = event.payment_id or await self._find_by_reference(event.provider_reference)
        if not payment_id:
            raise NotFound(f"No payment for {adapter.name.value} reference '{event.provider_reference}'")

        async def _work(db):
            async with db.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)) as cur:
                row = await cur.fetchone()
            if not row:
                raise NotFound(f"Payment '{payment_id}' not found")
            record = _row_to_payment(row)

            if record.is_completed:
                return "already_processed", record, None
            if record.provider != adapter.name:
                raise InvalidPayload("Webhook provider does not match the payment")
            if event.owner_id and event.owner_id != record.owner_id:
                raise InvalidPayload("Webhook owner does not match the payment")
            if record.status != PaymentStatus.PENDING:
                logger.warning(f"Captured event for {record.status.value} payment {payment_id}")
                return "ignored", record, None

            cur = await db.execute(
                """UPDATE payments
                   SET status = 'completed', credits_units = ?,
                       provider_reference = COALESCE(?, provider_reference), updated_at = ?
                   WHERE id = ? AND status = 'pending'""",
                (to_units(event.amount), event.provider_reference, now_iso(), payment_id)
            )
            if cur.rowcount == 0:
                return "already_processed", record, None

            balance = await self.wallet.credit(
                record.owner_id, event.amount, REASON_TOPUP,
                ref_id=f"payment:{payment_id}", db=db,
            )
            return "ok", record, balance

        try:
            status, record, balance = await run_in_transaction(_work, self.db_path)
        except AlreadySettled:
            status, balance = "already_processed", None

        if status == "already_processed":
            logger.warning(f"Duplicate {adapter.name.value} webhook for {payment_id}")
            return {"status": status, "payment_id": payment_id}
        if status == "ignored":
            return {"status": status, "payment_id": payment_id}

        logger.info(f"💰 Payment completed: {payment_id} +{event.amount} → {record.owner_id} ({balance})")
        return {
            "status":        "ok",
            "payment_id":    payment_id,
            "credits_added": event.amount,
            "balance":       balance,
        }

    async def _find_by_reference(self, reference: Optional[str]) -> Optional[str]:
        if not reference:
            return None
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT id FROM payments WHERE provider_reference = ?", (reference,)
            ) as cur:
                row = await cur.fetchone()
        return row[0] if row else None

    # ─── History ───────────────────────────────

    async def get_payment_history(self, owner_id: str, limit: int = 50, offset: int = 0) -> List[PaymentRecord]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                """SELECT * FROM payments WHERE owner_id = ?
                   ORDER BY created_at DESC LIMIT ? OFFSET ?""",
                (owner_id, limit, offset)
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_payment(r) for r in rows]

    async def list_payments(self, limit: int = 100, offset: int = 0) -> List[PaymentRecord]:
        async with get_db(self.db_path) as db:
            async with db.execute(
                "SELECT * FROM payments ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (limit, offset)
            ) as cur:
                rows = await cur.fetchall()
        return [_row_to_payment(r) for r in rows]


# ─────────────────────────────────────────────
# FastAPI Router
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/payments", tags=["payments"])


def payment_service(request: Request) -> PaymentService:
    return request.app.state.payments


class PaymentIntentRequest(ApiModel):
    amount:   Decimal = Field(..., description="Amount in major units")
    currency: Optional[str] = None
    provider: str = "stripe"


@router.post("/intent")
async def create_payment_intent(
    body: PaymentIntentRequest,
    identity: Identity = Depends(get_current_identity),
    payments: PaymentService = Depends(payment_service),
):
    result = await payments.create_payment_intent(
        identity.user_id, body.amount, body.currency, body.provider
    )
    response = {
        "paymentId":      result["payment_id"],
        "provider":       result["provider"],
        "providerHandle": result["provider_handle"],
        "amount":         result["amount"],
        "currency":       result["currency"],
    }
    if result["provider"] == Provider.STRIPE.value:
        response["clientSecret"] = result["provider_handle"]
    else:
        response["orderId"] = result["provider_handle"]
        response["key"] = result.get("key")
    return response


@router.post("/webhook/{provider}")
async def provider_webhook(
    provider: str,
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    x_razorpay_signature: Optional[str] = Header(None),
    payments: PaymentService = Depends(payment_service),
):
    """Raw body is verified byte-for-byte; never re-serialize it."""
    raw_body = await request.body()
    signature = stripe_signature if provider.lower() == Provider.STRIPE.value else x_razorpay_signature
    result = await payments.handle_provider_webhook(raw_body, signature, provider)
    return {"received": True, "status": result["status"]}


@router.get("/history")
async def payment_history(
    limit: int = 50,
    offset: int = 0,
    identity: Identity = Depends(get_current_identity),
    payments: PaymentService = Depends(payment_service),
):
    return {"payments": await payments.get_payment_history(identity.user_id, min(limit, 200), offset)}
