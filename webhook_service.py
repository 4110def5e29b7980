"""
Dodo Payments integration: checkout sessions for token packages and the
idempotent payment webhook that credits purchased tokens.

Webhook state machine per transaction id:
    received -> signature verified -> duplicate? -> pending -> completed | failed
A transaction id is credited at most once. Duplicates always answer 200 so the
sender stops retrying; genuine failures answer non-200 so it retries.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional

from dodopayments import DodoPayments

from config import Settings
from db_store import BalanceStore, DuplicateRecord, PurchaseLedger
from errors import (
    ConfigurationError,
    InvalidSignature,
    LedgerError,
    MalformedEvent,
    UpstreamError,
    ValidationError,
)
from models import PurchaseRecord, PurchaseStatus

logger = logging.getLogger(__name__)


ORDER_FINALIZED_EVENT = "payment.succeeded"
WEBHOOK_HEADERS = ("webhook-id", "webhook-signature", "webhook-timestamp")

# Purchasable token packages
TOKEN_PACKAGES = {
    "starter": {"name": "Starter", "tokens": 100000, "price_usd": Decimal("5.00")},
    "pro": {"name": "Pro", "tokens": 1000000, "price_usd": Decimal("17.00")},
}


def build_dodo_client(settings: Settings) -> Optional[DodoPayments]:
    """Dodo client, or None when billing is not configured."""
    if not settings.dodo_api_key:
        return None
    client = DodoPayments(
        bearer_token=settings.dodo_api_key,
        environment=settings.dodo_environment,
        webhook_key=settings.dodo_webhook_key,
    )
    logger.info("Dodo Payments client initialized")
    return client


class DodoWebhookVerifier:
    """Standard Webhooks signature check through the Dodo SDK."""

    def __init__(self, client: Optional[DodoPayments], webhook_key: Optional[str]):
        self.client = client
        self.webhook_key = webhook_key

    @property
    def configured(self) -> bool:
        return self.client is not None and bool(self.webhook_key)

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        if not self.configured:
            raise ConfigurationError("Billing webhook is not configured")

        try:
            unwrapped = self.client.webhooks.unwrap(
                raw_body,
                headers={name: headers.get(name, "") for name in WEBHOOK_HEADERS},
            )
        except Exception as exc:
            logger.error(f"Webhook signature verification failed: {exc}")
            raise InvalidSignature("Invalid signature")

        payload = unwrapped.model_dump() if hasattr(unwrapped, "model_dump") else unwrapped
        if not isinstance(payload, dict):
            payload = {}
        return payload


def _positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def _amount_usd(minor_units: Any) -> Decimal:
    try:
        cents = Decimal(str(minor_units or 0))
    except ArithmeticError:
        cents = Decimal(0)
    return (cents / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class WebhookProcessor:
    def __init__(self, verifier: DodoWebhookVerifier, ledger: PurchaseLedger, balances: BalanceStore):
        self.verifier = verifier
        self.ledger = ledger
        self.balances = balances

    def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """Process one delivery. Returns the 200 body or raises a GatewayError."""
        payload = self.verifier.verify(raw_body, headers)

        event_type = payload.get("type", "")
        if event_type != ORDER_FINALIZED_EVENT:
            logger.info(f"Ignoring webhook event type: {event_type}")
            return {"message": "Event ignored", "type": event_type}

        data = payload.get("data") or {}
        transaction_id = data.get("payment_id") or data.get("id")
        if not transaction_id:
            raise MalformedEvent("Missing transaction id")

        metadata = data.get("metadata") or {}
        user_id = metadata.get("user_id")
        tokens = _positive_int(metadata.get("tokens"))
        if not user_id or tokens is None:
            logger.error(f"Webhook {transaction_id} missing metadata: user_id={user_id}, tokens={metadata.get('tokens')}")
            raise MalformedEvent("Missing user_id or tokens in metadata")

        existing = self.ledger.find_by_transaction_id(transaction_id)
        if existing:
            return self._handle_duplicate(existing)

        customer = data.get("customer") or {}
        record = PurchaseRecord(
            user_id=user_id,
            provider_transaction_id=transaction_id,
            tokens_purchased=tokens,
            amount_usd=_amount_usd(data.get("total_amount")),
            status=PurchaseStatus.PENDING,
            payment_provider="dodo",
            metadata={
                "package_id": metadata.get("package_id"),
                "event_id": headers.get("webhook-id"),
                "email": metadata.get("email") or customer.get("email"),
            },
        )
        try:
            record = self.ledger.insert(record)
        except DuplicateRecord:
            # A concurrent delivery inserted first
            logger.info(f"Concurrent delivery for transaction {transaction_id}")
            existing = self.ledger.find_by_transaction_id(transaction_id)
            if existing is None:
                raise LedgerError("Failed to record purchase")
            return self._handle_duplicate(existing)
        except Exception as exc:
            logger.error(f"Failed to record purchase {transaction_id}: {exc}")
            raise LedgerError("Failed to record purchase")

        return self._credit(record)

    def _handle_duplicate(self, record: PurchaseRecord) -> Dict[str, Any]:
        if record.status == PurchaseStatus.COMPLETED:
            logger.info(f"Order already processed: {record.provider_transaction_id}")
            return {"message": "Order already processed", "purchase_id": record.id}
        # An earlier attempt stopped before crediting; finish it on the same record
        logger.info(f"Retrying credit for {record.status.value} purchase {record.id}")
        return self._credit(record)

    def _credit(self, record: PurchaseRecord) -> Dict[str, Any]:
        try:
            result = self.balances.credit(record.user_id, record.tokens_purchased, record.id)
        except Exception as exc:
            logger.error(f"Token credit failed for purchase {record.id}: {exc}")
            result = {"success": False, "error": str(exc)}

        if not result.get("success"):
            self._mark_failed(record)
            raise LedgerError(f"Failed to add tokens: {result.get('error') or 'unknown error'}")

        record.status = PurchaseStatus.COMPLETED
        if not result["tokens_added"]:
            # Another delivery completed this purchase first
            return {"message": "Order already processed", "purchase_id": record.id}

        logger.info(
            f"Added {result['tokens_added']} tokens to user {record.user_id}, "
            f"new balance: {result['new_balance']}"
        )
        return {
            "message": "Tokens added successfully",
            "purchase_id": record.id,
            "tokens_added": result["tokens_added"],
            "new_balance": result["new_balance"],
        }

    def _mark_failed(self, record: PurchaseRecord) -> None:
        try:
            self.ledger.update_status(record.id, PurchaseStatus.FAILED)
            record.status = PurchaseStatus.FAILED
        except Exception as exc:
            logger.error(f"Failed to mark purchase {record.id} as failed: {exc}")


def create_checkout_session(
    client: Optional[DodoPayments],
    settings: Settings,
    user_id: str,
    email: Optional[str],
    package_id: str,
) -> Dict[str, Any]:
    """Hosted checkout for a token package. Raises on bad package or missing config."""
    package = TOKEN_PACKAGES.get(package_id)
    if not package:
        raise ValidationError(f"Unknown package: {package_id}")

    product_ids = {
        "starter": settings.starter_product_id,
        "pro": settings.pro_product_id,
    }
    product_id = product_ids.get(package_id)
    if client is None or not product_id:
        raise ConfigurationError("Billing is not configured")

    kwargs = {}
    if email:
        kwargs["customer"] = {"email": email}
    session = client.checkout_sessions.create(
        product_cart=[{"product_id": product_id, "quantity": 1}],
        metadata={
            "user_id": user_id,
            "package_id": package_id,
            "tokens": str(package["tokens"]),
            "email": email or "",
        },
        return_url=f"{settings.public_base_url}/?billing=return",
        **kwargs,
    )

    checkout_url = getattr(session, "checkout_url", None) or getattr(session, "url", None)
    session_id = getattr(session, "session_id", None)
    if not checkout_url:
        raise UpstreamError(502, "", "Checkout URL missing from billing provider response")

    logger.info(f"Created checkout session for user {user_id}, package {package_id}")
    return {"checkout_url": checkout_url, "session_id": session_id}
