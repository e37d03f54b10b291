from datetime import datetime

from grochain.extensions import db


class IdempotencyKey(db.Model):
    """Client-supplied Idempotency-Key for payment initialization; replays the stored response."""

    __tablename__ = "idempotency_keys"
    __table_args__ = (
        db.UniqueConstraint("key", "route", name="uq_idempotency_key_route"),
    )

    id = db.Column(db.Integer, primary_key=True)

    key = db.Column(db.String(128), nullable=False)
    route = db.Column(db.String(128), nullable=False, default="")
    user_id = db.Column(db.Integer, nullable=True)
    request_hash = db.Column(db.String(64), nullable=False, default="")

    response_json = db.Column(db.Text, nullable=True)
    status_code = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
