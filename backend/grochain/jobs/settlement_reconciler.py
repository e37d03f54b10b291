from __future__ import annotations

import logging
from datetime import datetime, timedelta

from grochain.config import setting
from grochain.errors import PaymentNotSuccessful, ProviderVerificationFailed, SettlementError
from grochain.extensions import db
from grochain.models import PaymentTransaction
from grochain.payments.settlement import settle
from grochain.utils import audit

logger = logging.getLogger(__name__)


def retry_pending_settlements(*, age_minutes: int | None = None, limit: int = 200, actor_user_id: int | None = None) -> dict:
    """Re-drive stale pending payments through the coordinator.

    Covers lost webhooks and abandoned polls. Provider errors are counted and
    left pending for the next run.
    """
    if age_minutes is None:
        age_minutes = int(setting("SETTLEMENT_RETRY_AGE_MINUTES", 5))
    cutoff = datetime.utcnow() - timedelta(minutes=int(age_minutes))

    pending = (
        PaymentTransaction.query
        .filter(
            PaymentTransaction.status == "pending",
            PaymentTransaction.type == "payment",
            PaymentTransaction.created_at <= cutoff,
        )
        .order_by(PaymentTransaction.created_at.asc(), PaymentTransaction.id.asc())
        .limit(int(limit))
        .all()
    )
    refs = [(tx.reference, tx.provider) for tx in pending]

    counts = {"checked": 0, "settled": 0, "already_settled": 0, "not_paid": 0, "failed": 0, "errors": 0}
    for reference, provider in refs:
        counts["checked"] += 1
        try:
            result = settle(reference, provider, source_event="reconciler")
            counts[result.outcome] = counts.get(result.outcome, 0) + 1
        except ProviderVerificationFailed as e:
            counts["errors"] += 1
            logger.warning("reconciler: %s still unverifiable: %s", reference, e)
        except PaymentNotSuccessful:
            counts["failed"] += 1
        except SettlementError:
            counts["errors"] += 1
            logger.exception("reconciler: settlement error for %s", reference)
        except Exception:
            db.session.rollback()
            counts["errors"] += 1
            logger.exception("reconciler: unexpected failure for %s", reference)

    logger.info("settlement reconciler run: %s", counts)
    audit.record(
        "reconcile_run",
        target_type="transaction",
        actor_user_id=actor_user_id,
        meta={"ageMinutes": int(age_minutes), "limit": int(limit), **counts},
    )
    return counts
