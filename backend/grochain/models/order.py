from datetime import datetime

from grochain.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    subtotal = db.Column(db.Float, nullable=False, default=0.0)
    shipping = db.Column(db.Float, nullable=False, default=0.0)
    tax = db.Column(db.Float, nullable=False, default=0.0)
    discount = db.Column(db.Float, nullable=False, default=0.0)
    total = db.Column(db.Float, nullable=False, default=0.0)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    # pending -> confirmed -> shipped -> delivered
    # can also be cancelled / refunded
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    # pending | paid | refunded

    payment_method = db.Column(db.String(16), nullable=False, default="paystack")
    payment_reference = db.Column(db.String(128), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    buyer = db.relationship("User", foreign_keys=[buyer_id])

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy="selectin",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    def recalculate_totals(self) -> None:
        self.subtotal = round(sum(float(i.total or 0.0) for i in self.items), 2)
        # tax is recorded but not added to the total
        self.total = round(self.subtotal + float(self.shipping or 0.0) - float(self.discount or 0.0), 2)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "items": [i.to_dict() for i in self.items],
            "subtotal": float(self.subtotal or 0.0),
            "shipping": float(self.shipping or 0.0),
            "tax": float(self.tax or 0.0),
            "discount": float(self.discount or 0.0),
            "total": float(self.total or 0.0),
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)

    quantity = db.Column(db.Float, nullable=False, default=1.0)
    price = db.Column(db.Float, nullable=False, default=0.0)
    unit = db.Column(db.String(16), nullable=False, default="kg")
    total = db.Column(db.Float, nullable=False, default=0.0)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "listing_id": int(self.listing_id),
            "quantity": float(self.quantity or 0.0),
            "price": float(self.price or 0.0),
            "unit": self.unit,
            "total": float(self.total or 0.0),
        }
