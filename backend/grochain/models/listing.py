from datetime import datetime

from grochain.extensions import db


class Listing(db.Model):
    __tablename__ = "listings"

    id = db.Column(db.Integer, primary_key=True)

    farmer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    crop_name = db.Column(db.String(120), nullable=False)
    category = db.Column(db.String(64), nullable=True)
    unit = db.Column(db.String(16), nullable=False, default="kg")
    base_price = db.Column(db.Float, nullable=False, default=0.0)

    quantity = db.Column(db.Float, nullable=False, default=0.0)
    # Only the inventory reconciler writes this column, and only with a guarded UPDATE.
    available_quantity = db.Column(db.Float, nullable=False, default=0.0)

    # draft | active | sold_out | expired | inactive
    status = db.Column(db.String(16), nullable=False, default="active", index=True)
    sold_out_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "farmer_id": int(self.farmer_id),
            "crop_name": self.crop_name,
            "category": self.category or "",
            "unit": self.unit,
            "base_price": float(self.base_price or 0.0),
            "quantity": float(self.quantity or 0.0),
            "available_quantity": float(self.available_quantity or 0.0),
            "status": self.status,
            "sold_out_at": self.sold_out_at.isoformat() if self.sold_out_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
