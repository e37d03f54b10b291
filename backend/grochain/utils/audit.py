from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from grochain.extensions import db
from grochain.models import AuditLog

logger = logging.getLogger(__name__)


def record(
    action: str,
    *,
    target_type: str | None = None,
    target_id: int | None = None,
    reference: str | None = None,
    actor_user_id: int | None = None,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    """Write one audit row in its own commit; audit failure never breaks the caller."""
    try:
        db.session.add(AuditLog(
            actor_user_id=actor_user_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            reference=reference,
            meta=json.dumps(meta or {}, default=str),
        ))
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("audit write failed for %s (%s)", action, reference)
