import json
from datetime import datetime

from grochain.extensions import db


class PaymentTransaction(db.Model):
    """Payment ledger entry. `reference` is the settlement idempotency key."""

    __tablename__ = "payment_transactions"

    id = db.Column(db.Integer, primary_key=True)

    type = db.Column(db.String(16), nullable=False, default="payment")  # payment | refund
    # pending -> completed | failed | refunded; completed never returns to pending
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    amount = db.Column(db.Float, nullable=False, default=0.0)
    currency = db.Column(db.String(8), nullable=False, default="NGN")
    reference = db.Column(db.String(128), nullable=False, unique=True)
    description = db.Column(db.String(240), nullable=True)

    # Nullable: webhook shell records arrive without a known payer
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    provider = db.Column(db.String(32), nullable=False, default="paystack")
    provider_reference = db.Column(db.String(128), nullable=True)

    meta = db.Column(db.Text, nullable=True)  # JSON string

    processed_at = db.Column(db.DateTime, nullable=True)
    failure_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=True)

    def meta_dict(self):
        raw = (self.meta or "").strip()
        if not raw:
            return {}
        try:
            d = json.loads(raw)
            return d if isinstance(d, dict) else {}
        except ValueError:
            return {}

    def to_dict(self):
        return {
            "id": int(self.id),
            "type": self.type,
            "status": self.status,
            "amount": float(self.amount or 0.0),
            "currency": self.currency,
            "reference": self.reference,
            "description": self.description or "",
            "user_id": int(self.user_id) if self.user_id is not None else None,
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "provider": self.provider,
            "provider_reference": self.provider_reference or "",
            "meta": self.meta_dict(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "failure_reason": self.failure_reason or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
