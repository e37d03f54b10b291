from .partner import Partner  # noqa: F401
from .user import User  # noqa: F401
from .referral import Referral  # noqa: F401
from .listing import Listing  # noqa: F401
from .order import Order, OrderItem  # noqa: F401
from .payment_transaction import PaymentTransaction  # noqa: F401
from .commission import Commission  # noqa: F401
from .inventory_movement import InventoryMovement  # noqa: F401

from .notification import Notification  # noqa: F401
from .audit_log import AuditLog  # noqa: F401
from .webhook_event import WebhookEvent  # noqa: F401
from .idempotency_key import IdempotencyKey  # noqa: F401
