"""Commission calculator: partner attribution and fee split for one order line."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from grochain.config import setting
from grochain.errors import DuplicateCommission
from grochain.extensions import db
from grochain.models import Commission, Listing, Order, OrderItem, Partner, Referral, User
from grochain.models.referral import ATTRIBUTING_STATUSES
from grochain.utils.commission import ItemSplit, split_item_amount
from grochain.utils.notify import dispatch_safely

logger = logging.getLogger(__name__)


@dataclass
class CommissionSource:
    """Who earns on a farmer's sale: a referral, a direct partner, or nobody."""

    type: str  # referral | direct | none
    partner: Partner | None = None
    rate: float = 0.0
    referral_id: int | None = None


NO_PARTNER = CommissionSource(type="none")


@dataclass
class CommissionOutcome:
    listing_id: int
    split: ItemSplit | None = None
    commission_type: str = "none"
    partner_id: int | None = None
    commission_id: int | None = None
    created: bool = False
    duplicate: bool = False
    skipped_reason: str = ""

    def to_dict(self) -> dict:
        return {
            "listingId": self.listing_id,
            "commissionType": self.commission_type,
            "partnerId": self.partner_id,
            "commissionId": self.commission_id,
            "created": self.created,
            "duplicate": self.duplicate,
            "skippedReason": self.skipped_reason,
            "split": self.split.to_dict() if self.split else None,
        }


def _default_rate() -> float:
    return float(setting("DEFAULT_COMMISSION_RATE", 0.05))


def resolve_source(farmer: User, now: datetime | None = None) -> CommissionSource:
    """Referral first, then the farmer's standing partner, then none."""
    now = now or datetime.utcnow()
    referral = (
        Referral.query
        .filter(
            Referral.farmer_id == int(farmer.id),
            Referral.status.in_(ATTRIBUTING_STATUSES),
            Referral.expires_at > now,
        )
        .order_by(Referral.referred_at.desc(), Referral.id.desc())
        .first()
    )
    if referral:
        partner = db.session.get(Partner, int(referral.partner_id))
        if partner:
            rate = referral.commission_rate if referral.commission_rate is not None else _default_rate()
            return CommissionSource(type="referral", partner=partner, rate=float(rate), referral_id=int(referral.id))

    if farmer.partner_id:
        partner = db.session.get(Partner, int(farmer.partner_id))
        if partner:
            rate = partner.commission_rate if partner.commission_rate is not None else _default_rate()
            return CommissionSource(type="direct", partner=partner, rate=float(rate))

    return NO_PARTNER


def _insert_commission(order: Order, listing: Listing, source: CommissionSource, split: ItemSplit) -> Commission:
    existing = Commission.query.filter_by(
        partner_id=int(source.partner.id),
        farmer_id=int(listing.farmer_id),
        order_id=int(order.id),
        listing_id=int(listing.id),
    ).first()
    if existing:
        raise DuplicateCommission(int(existing.id))

    commission = Commission(
        partner_id=int(source.partner.id),
        farmer_id=int(listing.farmer_id),
        order_id=int(order.id),
        listing_id=int(listing.id),
        amount=split.partner_commission,
        rate=split.commission_rate,
        order_amount=split.item_amount,
        order_date=order.created_at,
        status="pending",
        meta=json.dumps({
            "commissionType": source.type,
            "platformFee": split.platform_fee,
            "platformFeeRate": split.platform_fee_rate,
            "referralId": source.referral_id,
        }),
    )
    try:
        db.session.add(commission)
        db.session.commit()
    except IntegrityError as e:
        # unique (partner, farmer, order, listing) caught a concurrent insert
        db.session.rollback()
        raise DuplicateCommission() from e
    return commission


def _increment_partner_total(partner_id: int, amount: float) -> None:
    try:
        Partner.query.filter(Partner.id == int(partner_id)).update(
            {
                Partner.total_commissions: Partner.total_commissions + float(amount),
                Partner.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
        db.session.commit()
        return
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("atomic total_commissions update failed for partner %s; retrying read-modify-write", partner_id)

    # Best-effort, non-atomic; drift is corrected by reconciliation.verify_partner_commissions
    try:
        partner = db.session.get(Partner, int(partner_id))
        if partner:
            partner.total_commissions = float(partner.total_commissions or 0.0) + float(amount)
            partner.updated_at = datetime.utcnow()
            db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("total_commissions fallback update failed for partner %s", partner_id)


def _partner_user_id(partner: Partner) -> int | None:
    if partner.user_id:
        return int(partner.user_id)
    user = User.query.filter_by(email=partner.email).first()
    return int(user.id) if user else None


def compute_and_record(order: Order, item: OrderItem) -> CommissionOutcome:
    listing = db.session.get(Listing, int(item.listing_id))
    if not listing:
        logger.warning("order %s: listing %s not found; no commission", order.id, item.listing_id)
        return CommissionOutcome(listing_id=int(item.listing_id), skipped_reason="listing_not_found")

    farmer = db.session.get(User, int(listing.farmer_id))
    if not farmer:
        logger.warning("order %s: farmer %s for listing %s not found", order.id, listing.farmer_id, listing.id)
        return CommissionOutcome(listing_id=int(listing.id), skipped_reason="farmer_not_found")

    source = resolve_source(farmer)
    split = split_item_amount(
        price=item.price,
        quantity=item.quantity,
        platform_fee_rate=float(setting("PLATFORM_FEE_RATE", 0.03)),
        commission_rate=source.rate if source.partner else 0.0,
    )
    outcome = CommissionOutcome(
        listing_id=int(listing.id),
        split=split,
        commission_type=source.type,
        partner_id=int(source.partner.id) if source.partner else None,
    )

    if source.partner and split.partner_commission > 0:
        try:
            commission = _insert_commission(order, listing, source, split)
        except DuplicateCommission as dup:
            logger.info("order %s listing %s: commission already recorded (%s)", order.id, listing.id, dup.commission_id)
            outcome.duplicate = True
            outcome.commission_id = dup.commission_id
        else:
            outcome.created = True
            outcome.commission_id = int(commission.id)
            _increment_partner_total(int(source.partner.id), split.partner_commission)
            partner_user_id = _partner_user_id(source.partner)
            if partner_user_id:
                dispatch_safely(partner_user_id, "partner", "commission", "earned", {
                    "amount": split.partner_commission,
                    "farmerName": farmer.name,
                    "productName": listing.crop_name,
                    "actionUrl": "/dashboard/commissions",
                })
    elif not source.partner:
        outcome.skipped_reason = "no_partner"

    logger.info(
        "order %s listing %s: item=%s fee=%s commission=%s (%s) farmer_net=%s",
        order.id, listing.id, split.item_amount, split.platform_fee,
        split.partner_commission, source.type, split.farmer_net,
    )
    return outcome
