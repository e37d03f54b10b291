from grochain.extensions import db
from grochain.models import InventoryMovement, Listing
from grochain.payments.inventory import reconcile


def _listing(listing_id):
    return db.session.get(Listing, listing_id, populate_existing=True)


def test_decrement_leaves_listing_active(app, factory):
    farmer = factory.user(role="farmer")
    listing = factory.listing(farmer, available=50.0)

    outcome = reconcile(listing.id, 10)

    assert outcome.ok is True
    assert outcome.new_available == 40.0
    assert outcome.new_status == "active"
    assert _listing(listing.id).sold_out_at is None


def test_exact_decrement_flips_sold_out(app, factory):
    farmer = factory.user(role="farmer")
    listing = factory.listing(farmer, available=10.0)

    outcome = reconcile(listing.id, 10)

    assert outcome.ok is True
    assert outcome.new_available == 0.0
    assert outcome.new_status == "sold_out"
    assert _listing(listing.id).sold_out_at is not None


def test_shortfall_does_not_mutate(app, factory):
    farmer = factory.user(role="farmer")
    listing = factory.listing(farmer, available=5.0)

    outcome = reconcile(listing.id, 10)

    assert outcome.ok is False
    assert outcome.reason == "insufficient"
    assert outcome.new_available == 5.0
    row = _listing(listing.id)
    assert row.available_quantity == 5.0
    assert row.status == "active"


def test_unknown_listing(app):
    outcome = reconcile(9999, 1)

    assert outcome.ok is False
    assert outcome.reason == "listing_not_found"


def test_non_positive_quantity_is_rejected(app, factory):
    farmer = factory.user(role="farmer")
    listing = factory.listing(farmer, available=5.0)

    assert reconcile(listing.id, 0).reason == "invalid_quantity"
    assert _listing(listing.id).available_quantity == 5.0


def test_fenced_reference_decrements_once(app, factory):
    farmer = factory.user(role="farmer")
    listing = factory.listing(farmer, available=30.0)

    first = reconcile(listing.id, 10, reference="GROCHAIN_FENCE")
    second = reconcile(listing.id, 10, reference="GROCHAIN_FENCE")

    assert first.ok is True and first.duplicate is False
    assert second.ok is True and second.duplicate is True
    assert _listing(listing.id).available_quantity == 20.0
    assert InventoryMovement.query.filter_by(reference="GROCHAIN_FENCE").count() == 1


def test_different_references_both_decrement(app, factory):
    farmer = factory.user(role="farmer")
    listing = factory.listing(farmer, available=30.0)

    reconcile(listing.id, 10, reference="REF-A")
    reconcile(listing.id, 10, reference="REF-B")

    assert _listing(listing.id).available_quantity == 10.0


def test_floor_never_goes_negative(app, factory):
    farmer = factory.user(role="farmer")
    listing = factory.listing(farmer, available=25.0)

    results = [reconcile(listing.id, 10, reference=f"REF-{i}") for i in range(4)]

    assert [r.ok for r in results] == [True, True, False, False]
    row = _listing(listing.id)
    assert row.available_quantity == 5.0
    assert row.available_quantity >= 0
