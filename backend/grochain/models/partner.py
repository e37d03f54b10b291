from datetime import datetime

from grochain.extensions import db


class Partner(db.Model):
    __tablename__ = "partners"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    organization = db.Column(db.String(160), nullable=True)

    # cooperative | extension_agency | ngo | aggregator
    type = db.Column(db.String(32), nullable=False, default="cooperative")
    status = db.Column(db.String(16), nullable=False, default="active")  # active | inactive | suspended

    # fraction, 0.05 = 5%
    commission_rate = db.Column(db.Float, nullable=False, default=0.05)
    total_commissions = db.Column(db.Float, nullable=False, default=0.0)

    # Login account that receives partner notifications (falls back to email match)
    user_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "name": self.name,
            "email": self.email,
            "organization": self.organization or "",
            "type": self.type,
            "status": self.status,
            "commission_rate": float(self.commission_rate or 0.0),
            "total_commissions": float(self.total_commissions or 0.0),
            "user_id": int(self.user_id) if self.user_id is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
