"""Inventory reconciler: one guarded stock decrement per order line.

Stock is never read-then-written. A single UPDATE carries both the
precondition (``available_quantity >= qty``) and the mutation, including the
sold-out flip, so concurrent settlements against one listing cannot lose
updates or drive stock negative.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case
from sqlalchemy.exc import IntegrityError

from grochain.extensions import db
from grochain.models import InventoryMovement, Listing

logger = logging.getLogger(__name__)


@dataclass
class InventoryOutcome:
    ok: bool
    listing_id: int
    new_available: float | None = None
    new_status: str | None = None
    # the fence row for (reference, listing) already existed; nothing was decremented
    duplicate: bool = False
    reason: str = ""

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "listingId": self.listing_id,
            "newAvailable": self.new_available,
            "newStatus": self.new_status,
            "duplicate": self.duplicate,
            "reason": self.reason,
        }


def _snapshot(listing_id: int) -> Listing | None:
    return db.session.query(Listing).populate_existing().filter(Listing.id == int(listing_id)).first()


def reconcile(listing_id: int, quantity: float, reference: str | None = None) -> InventoryOutcome:
    """Decrement `quantity` from the listing if enough is available.

    With a `reference`, an InventoryMovement fence row is inserted in the same
    database transaction, so a repeated call for the same settlement is a
    no-op (``duplicate=True``) instead of a second decrement.
    """
    qty = float(quantity or 0)
    if qty <= 0:
        return InventoryOutcome(ok=False, listing_id=int(listing_id), reason="invalid_quantity")

    if reference:
        fenced = InventoryMovement.query.filter_by(reference=reference, listing_id=int(listing_id)).first()
        if fenced:
            current = _snapshot(listing_id)
            return InventoryOutcome(
                ok=True,
                listing_id=int(listing_id),
                new_available=float(current.available_quantity) if current else None,
                new_status=current.status if current else None,
                duplicate=True,
            )

    now = datetime.utcnow()
    remaining = Listing.available_quantity - qty
    rows = (
        Listing.query
        .filter(Listing.id == int(listing_id), Listing.available_quantity >= qty)
        .update(
            {
                Listing.available_quantity: remaining,
                Listing.status: case((remaining <= 0, "sold_out"), else_=Listing.status),
                Listing.sold_out_at: case((remaining <= 0, now), else_=Listing.sold_out_at),
                Listing.updated_at: now,
            },
            synchronize_session=False,
        )
    )

    if rows != 1:
        db.session.rollback()
        current = _snapshot(listing_id)
        if current is None:
            return InventoryOutcome(ok=False, listing_id=int(listing_id), reason="listing_not_found")
        return InventoryOutcome(
            ok=False,
            listing_id=int(listing_id),
            new_available=float(current.available_quantity or 0.0),
            new_status=current.status,
            reason="insufficient",
        )

    if reference:
        db.session.add(InventoryMovement(reference=reference, listing_id=int(listing_id), quantity=qty))
    try:
        db.session.commit()
    except IntegrityError:
        # Another caller fenced this (reference, listing) first; our decrement rolls back with it
        db.session.rollback()
        current = _snapshot(listing_id)
        return InventoryOutcome(
            ok=True,
            listing_id=int(listing_id),
            new_available=float(current.available_quantity) if current else None,
            new_status=current.status if current else None,
            duplicate=True,
        )

    current = _snapshot(listing_id)
    logger.info(
        "listing %s decremented by %s -> %s (%s)",
        listing_id, qty, current.available_quantity, current.status,
    )
    return InventoryOutcome(
        ok=True,
        listing_id=int(listing_id),
        new_available=float(current.available_quantity),
        new_status=current.status,
    )
