import json
from datetime import datetime

from grochain.extensions import db


class Commission(db.Model):
    __tablename__ = "commissions"
    __table_args__ = (
        db.UniqueConstraint("partner_id", "farmer_id", "order_id", "listing_id", name="uq_commission_order_item"),
    )

    id = db.Column(db.Integer, primary_key=True)

    partner_id = db.Column(db.Integer, db.ForeignKey("partners.id"), nullable=False, index=True)
    farmer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False)

    amount = db.Column(db.Float, nullable=False, default=0.0)
    rate = db.Column(db.Float, nullable=False, default=0.0)
    order_amount = db.Column(db.Float, nullable=False, default=0.0)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending | paid
    order_date = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    # commissionType, platformFee, platformFeeRate, referralId
    meta = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

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
            "partner_id": int(self.partner_id),
            "farmer_id": int(self.farmer_id),
            "order_id": int(self.order_id),
            "listing_id": int(self.listing_id),
            "amount": float(self.amount or 0.0),
            "rate": float(self.rate or 0.0),
            "order_amount": float(self.order_amount or 0.0),
            "status": self.status,
            "order_date": self.order_date.isoformat() if self.order_date else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "meta": self.meta_dict(),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
