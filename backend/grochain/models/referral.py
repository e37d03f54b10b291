from datetime import datetime, timedelta

from grochain.extensions import db

# Statuses that still earn commission for the referring partner
ATTRIBUTING_STATUSES = ("active", "completed")


def _default_expiry():
    return datetime.utcnow() + timedelta(days=365)


class Referral(db.Model):
    __tablename__ = "referrals"

    id = db.Column(db.Integer, primary_key=True)

    farmer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    partner_id = db.Column(db.Integer, db.ForeignKey("partners.id"), nullable=False, index=True)

    # pending | active | completed | cancelled | expired
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    # fraction; None means "use the default rate"
    commission_rate = db.Column(db.Float, nullable=True)

    referral_code = db.Column(db.String(32), nullable=True)
    referred_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, default=_default_expiry)

    def is_attributing(self, now: datetime | None = None) -> bool:
        now = now or datetime.utcnow()
        return self.status in ATTRIBUTING_STATUSES and self.expires_at is not None and self.expires_at > now

    def to_dict(self):
        return {
            "id": int(self.id),
            "farmer_id": int(self.farmer_id),
            "partner_id": int(self.partner_id),
            "status": self.status,
            "commission_rate": float(self.commission_rate) if self.commission_rate is not None else None,
            "referral_code": self.referral_code or "",
            "referred_at": self.referred_at.isoformat() if self.referred_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
