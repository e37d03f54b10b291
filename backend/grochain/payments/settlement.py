"""Settlement coordinator.

Every "payment confirmed" signal (provider webhook, client poll, test-mode
auto-verify, reconciler retry) funnels into :func:`settle`. Exactly-once side
effects rest on one conditional write: the caller whose
``UPDATE ... WHERE status = 'pending'`` touches the row wins and runs the
enrichment (order, inventory, commission, notifications); every other caller
takes the read-only fast path. There is no in-process lock.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from grochain.errors import (
    InsufficientInventory,
    PaymentNotSuccessful,
    ProviderVerificationFailed,
    TransactionNotFound,
)
from grochain.extensions import db
from grochain.models import Listing, Order, PaymentTransaction, User
from grochain.payments import commission as commission_calculator
from grochain.payments import inventory as inventory_reconciler
from grochain.payments.gateway import GatewayResult, get_gateway, normalize_provider
from grochain.payments.reconciliation import check_settlement
from grochain.utils import audit
from grochain.utils.notify import dispatch_safely

logger = logging.getLogger(__name__)

SOURCE_EVENTS = ("webhook", "poll", "auto_verify", "reconciler")


@dataclass
class SettlementResult:
    reference: str
    # settled | already_settled | not_paid | rejected, or the stored status of a transaction settle() leaves alone
    outcome: str
    source_event: str
    winner: bool = False
    transaction: Optional[PaymentTransaction] = None
    order: Optional[Order] = None
    verification: Optional[GatewayResult] = None
    items: List[dict] = field(default_factory=list)
    issues: List[dict] = field(default_factory=list)
    notifications_sent: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome in ("settled", "already_settled")

    def to_dict(self) -> dict:
        return {
            "reference": self.reference,
            "outcome": self.outcome,
            "sourceEvent": self.source_event,
            "winner": self.winner,
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "order": self.order.to_dict() if self.order else None,
            "verification": self.verification.to_dict() if self.verification else None,
            "items": self.items,
            "issues": self.issues,
            "notificationsSent": self.notifications_sent,
        }


def find_transaction(reference: str) -> PaymentTransaction | None:
    return db.session.query(PaymentTransaction).populate_existing().filter_by(reference=reference).first()


def _create_shell(reference: str, provider: str, webhook_data: dict | None) -> PaymentTransaction:
    """Webhook for a reference we never initialized: record it as pending and carry on."""
    data = webhook_data or {}
    try:
        raw_amount = float(data.get("amount") or 0)
    except (TypeError, ValueError):
        raw_amount = 0.0
    amount = raw_amount / 100.0 if provider == "paystack" else raw_amount
    tx = PaymentTransaction(
        type="payment",
        status="pending",
        amount=amount,
        currency=(data.get("currency") or "NGN")[:8],
        reference=reference,
        description=f"{provider.title()} webhook",
        provider=provider,
        meta=json.dumps({"webhook": data, "shell": True}, default=str),
    )
    try:
        db.session.add(tx)
        db.session.commit()
        logger.warning("webhook for unknown reference %s; created shell transaction %s", reference, tx.id)
    except IntegrityError:
        db.session.rollback()
        tx = find_transaction(reference)
        if tx is None:
            raise
    return tx


def _claim(tx: PaymentTransaction, verification: GatewayResult, source_event: str) -> bool:
    """pending -> completed as a single conditional write; True only for the caller that flipped it.

    The order's pending -> confirmed/paid edge is written in the same commit.
    """
    now = datetime.utcnow()
    meta = tx.meta_dict()
    meta["verification"] = verification.to_dict()
    meta["settledBy"] = source_event
    meta["verifiedAt"] = now.isoformat()
    if verification.test_mode:
        meta["autoVerified"] = True
        meta["testMode"] = True
    if verification.provider_transaction_id:
        meta["providerTransactionId"] = verification.provider_transaction_id

    rows = (
        PaymentTransaction.query
        .filter(PaymentTransaction.id == int(tx.id), PaymentTransaction.status == "pending")
        .update(
            {
                PaymentTransaction.status: "completed",
                PaymentTransaction.processed_at: now,
                PaymentTransaction.updated_at: now,
                PaymentTransaction.provider_reference: verification.reference or tx.reference,
                PaymentTransaction.meta: json.dumps(meta, default=str),
            },
            synchronize_session=False,
        )
    )
    if rows != 1:
        db.session.rollback()
        return False

    order_edge = 0
    if tx.order_id:
        order_edge = (
            Order.query
            .filter(Order.id == int(tx.order_id), Order.payment_status == "pending")
            .update(
                {
                    Order.status: "confirmed",
                    Order.payment_status: "paid",
                    Order.payment_reference: tx.reference,
                    Order.updated_at: now,
                },
                synchronize_session=False,
            )
        )
    db.session.commit()
    if tx.order_id and order_edge != 1:
        logger.warning("reference %s settled but order %s was no longer pending payment", tx.reference, tx.order_id)
    return True


def _mark_failed(tx: PaymentTransaction, verification: GatewayResult) -> None:
    now = datetime.utcnow()
    meta = tx.meta_dict()
    meta["verification"] = verification.to_dict()
    rows = (
        PaymentTransaction.query
        .filter(PaymentTransaction.id == int(tx.id), PaymentTransaction.status == "pending")
        .update(
            {
                PaymentTransaction.status: "failed",
                PaymentTransaction.failure_reason: f"provider status: {verification.status}"[:240],
                PaymentTransaction.updated_at: now,
                PaymentTransaction.meta: json.dumps(meta, default=str),
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    if rows == 1:
        audit.record("payment_failed", target_type="transaction", target_id=int(tx.id), reference=tx.reference,
                     meta={"provider": verification.provider, "status": verification.status})


def _mismatch(tx: PaymentTransaction, verification: GatewayResult) -> dict | None:
    """What makes a paid verification unusable for `tx`: another reference's charge, or too little money."""
    if verification.test_mode:
        return None
    if verification.reference and verification.reference != tx.reference:
        return {"reason": "reference_mismatch", "verifiedReference": verification.reference}
    expected = float(tx.amount or 0.0)
    if verification.paid and verification.amount + 0.005 < expected:
        return {"reason": "amount_mismatch", "expected": expected, "verified": verification.amount}
    return None


def _remember_provider_id(tx: PaymentTransaction, verification: GatewayResult) -> None:
    """Keep the provider's charge id on a still-pending transaction so later polls can verify by id."""
    pid = verification.provider_transaction_id
    meta = tx.meta_dict()
    if not pid or meta.get("providerTransactionId") == pid:
        return
    meta["providerTransactionId"] = pid
    PaymentTransaction.query.filter(
        PaymentTransaction.id == int(tx.id), PaymentTransaction.status == "pending"
    ).update({PaymentTransaction.meta: json.dumps(meta, default=str)}, synchronize_session=False)
    db.session.commit()


def _alert_shortfall(order: Order, tx: PaymentTransaction, exc: InsufficientInventory) -> None:
    logger.warning("order %s (%s): inventory shortfall, item skipped: %s", order.id, tx.reference, exc)
    audit.record(
        "inventory_shortfall",
        target_type="listing",
        target_id=int(exc.listing_id),
        reference=tx.reference,
        meta={"orderId": int(order.id), "requested": exc.requested, "available": exc.available},
    )
    dispatch_safely(None, "admin", "inventory", "shortfall", {
        "orderNumber": int(order.id),
        "listingId": int(exc.listing_id),
        "requested": exc.requested,
        "available": exc.available,
        "actionUrl": f"/admin/orders/{int(order.id)}",
    })


def _enrich(tx: PaymentTransaction, order: Order) -> List[dict]:
    """Inventory then commission for each line. Failures are logged per step, never rolled back into the payment."""
    results = []
    for item in list(order.items):
        entry = {"itemId": int(item.id), "listingId": int(item.listing_id), "quantity": float(item.quantity)}
        try:
            outcome = inventory_reconciler.reconcile(item.listing_id, item.quantity, reference=tx.reference)
            entry["inventory"] = outcome.to_dict()
            if not outcome.ok and outcome.reason == "insufficient":
                raise InsufficientInventory(int(item.listing_id), float(item.quantity), outcome.new_available)
        except InsufficientInventory as e:
            _alert_shortfall(order, tx, e)
        except Exception:
            db.session.rollback()
            logger.exception("order %s: inventory update failed for listing %s", order.id, item.listing_id)
            entry["inventory"] = {"ok": False, "reason": "error"}

        try:
            entry["commission"] = commission_calculator.compute_and_record(order, item).to_dict()
        except Exception:
            db.session.rollback()
            logger.exception("order %s: commission failed for listing %s", order.id, item.listing_id)
            entry["commission"] = {"error": True}
        results.append(entry)
    return results


def _notify_parties(order: Order) -> int:
    sent = 0
    buyer = db.session.get(User, int(order.buyer_id))
    buyer_name = buyer.name if buyer else ""
    order_url = f"/dashboard/orders/{int(order.id)}"

    if dispatch_safely(int(order.buyer_id), "buyer", "financial", "paymentCompleted", {
        "amount": float(order.total or 0.0),
        "orderNumber": int(order.id),
        "actionUrl": order_url,
    }):
        sent += 1

    for item in order.items:
        listing = db.session.get(Listing, int(item.listing_id))
        if not listing:
            continue
        if dispatch_safely(int(listing.farmer_id), "farmer", "financial", "paymentReceived", {
            "amount": round(float(item.price or 0.0) * float(item.quantity or 0.0), 2),
            "orderNumber": int(order.id),
            "productName": listing.crop_name,
            "buyerName": buyer_name,
            "actionUrl": order_url,
        }):
            sent += 1

    if dispatch_safely(None, "admin", "financial", "paymentCompleted", {
        "amount": float(order.total or 0.0),
        "orderNumber": int(order.id),
        "buyerName": buyer_name,
        "actionUrl": f"/admin/orders/{int(order.id)}",
    }):
        sent += 1
    return sent


def _already_settled(tx: PaymentTransaction, source_event: str) -> SettlementResult:
    order = db.session.get(Order, int(tx.order_id)) if tx.order_id else None
    issues = check_settlement(tx.reference)
    if issues:
        logger.warning("reference %s is completed but inconsistent: %s", tx.reference, issues)
    return SettlementResult(
        reference=tx.reference,
        outcome="already_settled",
        source_event=source_event,
        transaction=tx,
        order=order,
        issues=issues,
    )


def settle(
    reference: str,
    provider: str | None = None,
    source_event: str = "poll",
    *,
    webhook_data: dict | None = None,
    gateway=None,
) -> SettlementResult:
    """Drive one payment reference to its terminal state.

    Raises TransactionNotFound (unknown reference on a non-webhook channel),
    ProviderVerificationFailed (retry later) and PaymentNotSuccessful (the
    provider declined the charge; the transaction is now `failed`).
    """
    reference = (reference or "").strip()
    if not reference:
        raise TransactionNotFound(reference)
    if source_event not in SOURCE_EVENTS:
        raise ValueError(f"unknown settlement source: {source_event}")

    tx = find_transaction(reference)
    if tx is None:
        if source_event != "webhook":
            raise TransactionNotFound(reference)
        tx = _create_shell(reference, normalize_provider(provider), webhook_data)

    if tx.type != "payment":
        # refunds and payouts are not confirmed through this path
        logger.warning("reference %s is a %s transaction; not settling", reference, tx.type)
        order = db.session.get(Order, int(tx.order_id)) if tx.order_id else None
        return SettlementResult(reference=reference, outcome=tx.status, source_event=source_event, transaction=tx, order=order)

    if tx.status == "completed":
        return _already_settled(tx, source_event)
    if tx.status != "pending":
        order = db.session.get(Order, int(tx.order_id)) if tx.order_id else None
        return SettlementResult(reference=reference, outcome=tx.status, source_event=source_event, transaction=tx, order=order)

    gw = gateway or get_gateway(provider or tx.provider)
    meta = tx.meta_dict()
    transaction_id = (webhook_data or {}).get("id") or meta.get("providerTransactionId")
    try:
        verification = gw.verify(reference, expected_amount=float(tx.amount or 0.0), transaction_id=transaction_id)
    except ProviderVerificationFailed as e:
        logger.warning("reference %s (%s): provider verification failed, retry later: %s", reference, source_event, e)
        raise

    mismatch = _mismatch(tx, verification)
    if mismatch:
        logger.warning("reference %s (%s): verification rejected: %s", reference, source_event, mismatch)
        audit.record("payment_rejected", target_type="transaction", target_id=int(tx.id), reference=reference,
                     meta={"source": source_event, "provider": verification.provider, **mismatch})
        order = db.session.get(Order, int(tx.order_id)) if tx.order_id else None
        return SettlementResult(reference=reference, outcome="rejected", source_event=source_event,
                                transaction=tx, order=order, verification=verification)

    if not verification.paid:
        if verification.declined:
            _mark_failed(tx, verification)
            raise PaymentNotSuccessful(reference, verification.status)
        logger.info("reference %s (%s): not paid yet (%s)", reference, source_event, verification.status)
        _remember_provider_id(tx, verification)
        order = db.session.get(Order, int(tx.order_id)) if tx.order_id else None
        return SettlementResult(reference=reference, outcome="not_paid", source_event=source_event,
                                transaction=tx, order=order, verification=verification)

    if not _claim(tx, verification, source_event):
        logger.info("reference %s (%s): lost the settlement race; fast path", reference, source_event)
        return _already_settled(find_transaction(reference), source_event)

    tx = find_transaction(reference)
    order = db.session.get(Order, int(tx.order_id)) if tx.order_id else None
    result = SettlementResult(
        reference=reference,
        outcome="settled",
        source_event=source_event,
        winner=True,
        transaction=tx,
        order=order,
        verification=verification,
    )

    if order is not None and order.payment_reference == reference:
        result.items = _enrich(tx, order)
        result.notifications_sent = _notify_parties(order)
    elif order is not None:
        logger.warning("reference %s: order %s is paid under %s; enrichment skipped", reference, order.id, order.payment_reference)

    audit.record(
        "payment_settled",
        target_type="transaction",
        target_id=int(tx.id),
        reference=reference,
        meta={"source": source_event, "orderId": tx.order_id, "items": len(result.items), "testMode": verification.test_mode},
    )
    logger.info("reference %s settled via %s (order %s)", reference, source_event, tx.order_id)

    # enrichment commits expired everything; hand back fresh rows
    result.transaction = find_transaction(reference)
    result.order = db.session.get(Order, int(tx.order_id)) if tx.order_id else None
    return result
