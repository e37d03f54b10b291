from datetime import datetime

from grochain.extensions import db


class InventoryMovement(db.Model):
    """Fence row: one stock decrement per (settlement reference, listing)."""

    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.UniqueConstraint("reference", "listing_id", name="uq_inventory_movement_reference_listing"),
    )

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(128), nullable=False, index=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    quantity = db.Column(db.Float, nullable=False, default=0.0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "reference": self.reference,
            "listing_id": int(self.listing_id),
            "quantity": float(self.quantity or 0.0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
