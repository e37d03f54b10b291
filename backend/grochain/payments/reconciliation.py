"""Order/transaction repair and read-only settlement consistency checks.

Nothing here re-runs enrichment. `check_settlement` only reports; the sync
helpers only repair the order's payment edge; `verify_partner_commissions`
recomputes a partner's running total from the commission ledger.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func

from grochain.extensions import db
from grochain.models import AuditLog, Commission, InventoryMovement, Listing, Order, Partner, PaymentTransaction, User
from grochain.payments.commission import resolve_source
from grochain.utils import audit

logger = logging.getLogger(__name__)

DRIFT_TOLERANCE = 0.005


def _issue(kind: str, **extra) -> dict:
    d = {"issue": kind}
    d.update(extra)
    return d


def _shortfall_recorded(reference: str, listing_id: int) -> bool:
    return db.session.query(AuditLog.id).filter(
        AuditLog.action == "inventory_shortfall",
        AuditLog.reference == reference,
        AuditLog.target_id == int(listing_id),
    ).first() is not None


def check_settlement(reference: str) -> list:
    """List what a completed settlement for `reference` is missing. Never writes."""
    tx = PaymentTransaction.query.filter_by(reference=reference).first()
    if tx is None:
        return [_issue("transaction_missing")]
    if tx.status != "completed":
        return [_issue("transaction_not_completed", status=tx.status)]
    if not tx.order_id:
        return []

    order = db.session.get(Order, int(tx.order_id))
    if order is None:
        return [_issue("order_missing", orderId=int(tx.order_id))]

    issues = []
    if order.payment_status != "paid" or order.status not in ("confirmed", "shipped", "delivered"):
        issues.append(_issue("order_not_paid", orderId=int(order.id), status=order.status, paymentStatus=order.payment_status))
    if order.payment_reference and order.payment_reference != reference:
        # Order was settled by a different reference; its line items belong to that settlement
        issues.append(_issue("order_paid_by_other_reference", orderId=int(order.id), paidBy=order.payment_reference))
        return issues

    for item in order.items:
        fenced = InventoryMovement.query.filter_by(reference=reference, listing_id=int(item.listing_id)).first()
        if fenced is None and not _shortfall_recorded(reference, int(item.listing_id)):
            issues.append(_issue("inventory_not_applied", listingId=int(item.listing_id)))

        listing = db.session.get(Listing, int(item.listing_id))
        farmer = db.session.get(User, int(listing.farmer_id)) if listing else None
        if farmer is None:
            continue
        source = resolve_source(farmer)
        if source.partner is None or source.rate <= 0:
            continue
        recorded = Commission.query.filter_by(order_id=int(order.id), listing_id=int(item.listing_id)).first()
        if recorded is None:
            issues.append(_issue("commission_missing", listingId=int(item.listing_id), partnerId=int(source.partner.id)))
    return issues


def sync_order(order_id: int) -> dict:
    order = db.session.get(Order, int(order_id))
    if order is None:
        return {"orderId": int(order_id), "synced": False, "reason": "order_not_found"}
    if order.payment_status == "paid":
        return {"orderId": int(order.id), "synced": False, "reason": "already_paid"}

    tx = (
        PaymentTransaction.query
        .filter_by(order_id=int(order.id), type="payment", status="completed")
        .order_by(PaymentTransaction.processed_at.desc(), PaymentTransaction.id.desc())
        .first()
    )
    if tx is None:
        return {"orderId": int(order.id), "synced": False, "reason": "no_completed_transaction"}

    now = datetime.utcnow()
    rows = (
        Order.query
        .filter(Order.id == int(order.id), Order.payment_status == "pending")
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
    if rows != 1:
        return {"orderId": int(order_id), "synced": False, "reason": "not_pending"}

    logger.info("order %s synced from completed transaction %s", order_id, tx.reference)
    audit.record("order_synced", target_type="order", target_id=int(order_id), reference=tx.reference)
    return {"orderId": int(order_id), "synced": True, "reference": tx.reference}


def bulk_sync(limit: int = 100) -> dict:
    orders = (
        Order.query
        .filter(Order.payment_status == "pending")
        .order_by(Order.id.asc())
        .limit(int(limit))
        .all()
    )
    results = [sync_order(int(o.id)) for o in orders]
    synced = [r["orderId"] for r in results if r.get("synced")]
    return {"checked": len(results), "synced": len(synced), "orders": synced}


def verify_partner_commissions(partner_id: int, correct: bool = True) -> dict | None:
    """Compare Partner.total_commissions against the sum of its Commission rows."""
    partner = db.session.get(Partner, int(partner_id))
    if partner is None:
        return None

    ledger = db.session.query(func.coalesce(func.sum(Commission.amount), 0.0)).filter(
        Commission.partner_id == int(partner.id),
    ).scalar() or 0.0
    ledger = round(float(ledger), 2)
    stored = round(float(partner.total_commissions or 0.0), 2)
    drift = round(stored - ledger, 2)

    result = {
        "partnerId": int(partner.id),
        "storedTotal": stored,
        "ledgerTotal": ledger,
        "drift": drift,
        "consistent": abs(drift) <= DRIFT_TOLERANCE,
        "corrected": False,
    }
    if result["consistent"]:
        return result

    logger.warning("partner %s total_commissions drift: stored=%s ledger=%s", partner.id, stored, ledger)
    audit.record(
        "partner_commission_drift",
        target_type="partner",
        target_id=int(partner.id),
        meta={"stored": stored, "ledger": ledger, "drift": drift, "corrected": bool(correct)},
    )
    if correct:
        Partner.query.filter(Partner.id == int(partner.id)).update(
            {Partner.total_commissions: ledger, Partner.updated_at: datetime.utcnow()},
            synchronize_session=False,
        )
        db.session.commit()
        result["corrected"] = True
    return result
