from datetime import datetime

from grochain.extensions import db


class WebhookEvent(db.Model):
    """Processed provider deliveries; a redelivery with a known event_id is acknowledged only."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "event_id", name="uq_webhook_event_provider_event"),
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="paystack")
    event_id = db.Column(db.String(128), nullable=False)
    event = db.Column(db.String(64), nullable=True)
    reference = db.Column(db.String(128), nullable=True, index=True)
    signature_verified = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "event_id": self.event_id,
            "event": self.event or "",
            "reference": self.reference or "",
            "signature_verified": bool(self.signature_verified),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
