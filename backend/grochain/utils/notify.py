from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from grochain.errors import NotificationDispatchFailure
from grochain.extensions import db
from grochain.models import Notification, User

logger = logging.getLogger(__name__)


# (category, subtype) -> (title, message). Message placeholders come from the context dict.
TEMPLATES = {
    ("financial", "paymentCompleted"): (
        "Payment successful",
        "Your payment of ₦{amount:,.2f} for order #{orderNumber} was confirmed.",
    ),
    ("financial", "paymentReceived"): (
        "Payment received",
        "{buyerName} paid ₦{amount:,.2f} for {productName} (order #{orderNumber}).",
    ),
    ("commission", "earned"): (
        "Commission earned",
        "You earned ₦{amount:,.2f} commission on {farmerName}'s sale of {productName}.",
    ),
    ("inventory", "shortfall"): (
        "Inventory shortfall at settlement",
        "Order #{orderNumber}: listing {listingId} had {available} left, {requested} was paid for.",
    ),
}


def _render(category: str, subtype: str, context: Dict[str, Any]) -> tuple[str, str]:
    title, template = TEMPLATES.get((category, subtype), (f"{category}: {subtype}", ""))
    if not template:
        return title, json.dumps(context, default=str)
    try:
        return title, template.format(**context)
    except (KeyError, ValueError, TypeError):
        return title, json.dumps(context, default=str)


def notify(user_id: int, role: str, category: str, subtype: str, context: Optional[Dict[str, Any]] = None) -> Notification:
    """Persist one in-app notification. Raises NotificationDispatchFailure."""
    context = context or {}
    title, message = _render(category, subtype, context)
    n = Notification(
        user_id=int(user_id),
        role=role,
        category=category,
        subtype=subtype,
        channel="in_app",
        title=title[:160],
        message=message,
        action_url=(context.get("actionUrl") or "")[:255] or None,
        meta=json.dumps(context, default=str),
    )
    try:
        db.session.add(n)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        raise NotificationDispatchFailure(f"notify {category}/{subtype} to user {user_id}: {e}") from e
    return n


def notify_admins(category: str, subtype: str, context: Optional[Dict[str, Any]] = None) -> int:
    sent = 0
    for admin in User.query.filter_by(role="admin").order_by(User.id.asc()).all():
        notify(int(admin.id), "admin", category, subtype, context)
        sent += 1
    return sent


def dispatch_safely(user_id: int | None, role: str, category: str, subtype: str, context: Optional[Dict[str, Any]] = None) -> bool:
    """Fire-and-forget wrapper used by the settlement engine. Outcome never matters to the caller."""
    try:
        if user_id is None:
            notify_admins(category, subtype, context)
        else:
            notify(user_id, role, category, subtype, context)
        return True
    except Exception:
        db.session.rollback()
        logger.exception("notification %s/%s dropped", category, subtype)
        return False
