from datetime import datetime

from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from grochain.extensions import db


class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(32), nullable=True)

    password_hash = db.Column(db.String(255), nullable=False, default="")

    # buyer | farmer | partner | admin
    role = db.Column(db.String(32), nullable=False, default="buyer", index=True)

    # Standing partner assignment for farmers (commission attribution when no referral is active)
    partner_id = db.Column(db.Integer, db.ForeignKey("partners.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def set_password(self, raw_password: str) -> None:
        self.password_hash = generate_password_hash(raw_password)

    def check_password(self, raw_password: str) -> bool:
        return check_password_hash(self.password_hash, raw_password)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role or "buyer",
            "partner_id": int(self.partner_id) if self.partner_id is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
