"""
Settlement coordinator: single winner, winner-only enrichment, fast path.
"""
import json
import threading

import pytest
import requests

from grochain.errors import PaymentNotSuccessful, ProviderTimeout, TransactionNotFound
from grochain.extensions import db
from grochain.models import (
    AuditLog,
    Commission,
    InventoryMovement,
    Listing,
    Notification,
    Order,
    PaymentTransaction,
)
from grochain.payments.gateway import GatewayResult
from grochain.payments.settlement import settle

from factories import Factory, FakeResponse, StubGateway


def _tx(reference):
    return PaymentTransaction.query.populate_existing().filter_by(reference=reference).one()


def _order(order_id):
    return db.session.get(Order, order_id, populate_existing=True)


def _listing(listing_id):
    return db.session.get(Listing, listing_id, populate_existing=True)


def test_settle_confirms_order_and_enriches(app, marketplace):
    tx, order, listing = marketplace["tx"], marketplace["order"], marketplace["listing"]

    result = settle(tx.reference, "paystack", "poll")

    assert result.outcome == "settled"
    assert result.winner is True
    assert _tx(tx.reference).status == "completed"
    assert _tx(tx.reference).processed_at is not None
    refreshed = _order(order.id)
    assert refreshed.status == "confirmed"
    assert refreshed.payment_status == "paid"
    assert refreshed.payment_reference == tx.reference
    assert _listing(listing.id).available_quantity == 40.0
    assert Commission.query.count() == 1
    assert AuditLog.query.filter_by(action="payment_settled", reference=tx.reference).count() == 1


def test_verification_is_kept_on_transaction_meta(app, marketplace):
    tx = marketplace["tx"]

    settle(tx.reference, "paystack", "auto_verify")

    meta = _tx(tx.reference).meta_dict()
    assert meta["verification"]["paid"] is True
    assert meta["settledBy"] == "auto_verify"
    assert meta["autoVerified"] is True


def test_winner_notifies_buyer_farmer_admin_and_partner(app, marketplace):
    tx = marketplace["tx"]

    result = settle(tx.reference, "paystack", "poll")

    assert result.notifications_sent == 3
    assert Notification.query.filter_by(user_id=marketplace["buyer"].id, subtype="paymentCompleted").count() == 1
    assert Notification.query.filter_by(user_id=marketplace["farmer"].id, subtype="paymentReceived").count() == 1
    assert Notification.query.filter_by(user_id=marketplace["admin"].id, subtype="paymentCompleted").count() == 1
    assert Notification.query.filter_by(user_id=marketplace["partner_user"].id, subtype="earned").count() == 1


def test_scenario_d_completed_transaction_is_a_no_op(app, marketplace):
    tx, listing = marketplace["tx"], marketplace["listing"]
    settle(tx.reference, "paystack", "poll")
    notifications = Notification.query.count()
    commissions = Commission.query.count()

    gateway = StubGateway()
    again = settle(tx.reference, "paystack", "webhook", gateway=gateway)

    assert again.outcome == "already_settled"
    assert again.ok is True
    assert again.winner is False
    assert again.issues == []
    assert gateway.calls == 0
    assert Notification.query.count() == notifications
    assert Commission.query.count() == commissions
    assert _listing(listing.id).available_quantity == 40.0


def test_scenario_b_reentrant_race_has_one_winner(app, marketplace):
    """A webhook lands while the poll is still waiting on the provider."""
    tx, listing = marketplace["tx"], marketplace["listing"]
    inner_results = []

    class WebhookDuringVerify:
        def verify(self, reference, expected_amount=None, **_):
            inner_results.append(settle(reference, "paystack", "webhook", gateway=StubGateway()))
            return GatewayResult(success=True, paid=True, amount=expected_amount, status="success",
                                 reference=reference, provider="paystack")

    outer = settle(tx.reference, "paystack", "poll", gateway=WebhookDuringVerify())

    assert inner_results[0].winner is True
    assert outer.winner is False
    assert outer.outcome == "already_settled"
    assert Commission.query.count() == 1
    assert InventoryMovement.query.filter_by(reference=tx.reference).count() == 1
    assert _listing(listing.id).available_quantity == 40.0
    assert _tx(tx.reference).meta_dict()["settledBy"] == "webhook"


def test_scenario_c_shortfall_skips_item_but_settles(app, factory):
    farmer = factory.user(role="farmer")
    buyer = factory.user()
    admin = factory.user(role="admin")
    scarce = factory.listing(farmer, available=5.0, crop="Yam")
    plenty = factory.listing(farmer, available=50.0, crop="Rice")
    order = factory.order(buyer, [(scarce, 10.0, 100.0), (plenty, 10.0, 50.0)])
    tx = factory.transaction(order)

    result = settle(tx.reference, "paystack", "poll")

    assert result.outcome == "settled"
    assert _tx(tx.reference).status == "completed"
    assert _order(order.id).payment_status == "paid"
    assert _listing(scarce.id).available_quantity == 5.0
    assert _listing(plenty.id).available_quantity == 40.0
    shortfall = AuditLog.query.filter_by(action="inventory_shortfall", reference=tx.reference).one()
    assert shortfall.target_id == scarce.id
    assert Notification.query.filter_by(user_id=admin.id, category="inventory", subtype="shortfall").count() == 1
    assert result.items[0]["inventory"]["reason"] == "insufficient"
    assert result.items[1]["inventory"]["ok"] is True


def test_enrichment_failure_does_not_undo_payment(app, marketplace, monkeypatch):
    from grochain.payments import settlement

    def broken(order, item):
        raise RuntimeError("commission store unavailable")

    monkeypatch.setattr(settlement.commission_calculator, "compute_and_record", broken)
    tx, order = marketplace["tx"], marketplace["order"]

    result = settle(tx.reference, "paystack", "poll")

    assert result.outcome == "settled"
    assert result.items[0]["commission"] == {"error": True}
    assert _tx(tx.reference).status == "completed"
    assert _order(order.id).payment_status == "paid"
    assert _listing(marketplace["listing"].id).available_quantity == 40.0


def test_not_paid_yet_mutates_nothing(app, marketplace):
    tx, order = marketplace["tx"], marketplace["order"]

    result = settle(tx.reference, "paystack", "poll", gateway=StubGateway(paid=False, status="ongoing"))

    assert result.outcome == "not_paid"
    assert result.ok is False
    assert _tx(tx.reference).status == "pending"
    assert _order(order.id).payment_status == "pending"
    assert Commission.query.count() == 0


def test_declined_payment_is_terminal(app, marketplace):
    tx, order, listing = marketplace["tx"], marketplace["order"], marketplace["listing"]

    with pytest.raises(PaymentNotSuccessful):
        settle(tx.reference, "paystack", "poll", gateway=StubGateway(paid=False, status="failed"))

    failed = _tx(tx.reference)
    assert failed.status == "failed"
    assert "failed" in failed.failure_reason
    assert _order(order.id).payment_status == "pending"
    assert _listing(listing.id).available_quantity == 50.0

    later = settle(tx.reference, "paystack", "webhook", gateway=StubGateway())
    assert later.outcome == "failed"
    assert _tx(tx.reference).status == "failed"


def test_provider_failure_is_recoverable(app, marketplace):
    tx = marketplace["tx"]

    with pytest.raises(ProviderTimeout):
        settle(tx.reference, "paystack", "poll", gateway=StubGateway(side_effect=ProviderTimeout("paystack", "slow")))
    assert _tx(tx.reference).status == "pending"

    retry = settle(tx.reference, "paystack", "reconciler", gateway=StubGateway())
    assert retry.outcome == "settled"


def test_unknown_reference_on_poll_raises(app):
    with pytest.raises(TransactionNotFound):
        settle("GROCHAIN_NOPE", "paystack", "poll")


def test_unknown_reference_on_webhook_creates_shell(app):
    result = settle("EXT_12345", "paystack", "webhook", webhook_data={"amount": 250000, "currency": "NGN"})

    assert result.outcome == "settled"
    shell = _tx("EXT_12345")
    assert shell.status == "completed"
    assert shell.amount == 2500.0
    assert shell.order_id is None
    assert shell.meta_dict()["shell"] is True


def test_underpayment_is_rejected_and_left_pending(app, marketplace):
    tx, order, listing = marketplace["tx"], marketplace["order"], marketplace["listing"]

    result = settle(tx.reference, "paystack", "webhook", gateway=StubGateway(amount=10.0))

    assert result.outcome == "rejected"
    assert result.ok is False
    assert _tx(tx.reference).status == "pending"
    assert _order(order.id).payment_status == "pending"
    assert _listing(listing.id).available_quantity == 50.0
    assert Commission.query.count() == 0
    rejected = AuditLog.query.filter_by(action="payment_rejected", reference=tx.reference).one()
    assert json.loads(rejected.meta)["reason"] == "amount_mismatch"


def test_charge_for_another_reference_is_rejected(app, marketplace):
    tx, order = marketplace["tx"], marketplace["order"]

    result = settle(tx.reference, "paystack", "webhook", gateway=StubGateway(reference="SOMEONE_ELSE"))

    assert result.outcome == "rejected"
    assert _tx(tx.reference).status == "pending"
    assert _order(order.id).payment_status == "pending"
    assert Notification.query.count() == 0


def test_declined_charge_for_another_reference_does_not_fail_ours(app, marketplace):
    tx = marketplace["tx"]

    result = settle(tx.reference, "paystack", "webhook",
                    gateway=StubGateway(paid=False, status="failed", reference="SOMEONE_ELSE"))

    assert result.outcome == "rejected"
    assert _tx(tx.reference).status == "pending"


def test_flutterwave_webhook_pointing_at_foreign_charge_cannot_settle(live_app, monkeypatch):
    f = Factory()
    buyer = f.user()
    listing = f.listing(f.user(role="farmer"), available=20.0)
    order = f.order(buyer, [(listing, 2.0, 500.0)])
    tx = f.transaction(order, provider="flutterwave")
    monkeypatch.setattr(requests, "get", lambda *a, **k: FakeResponse(200, {
        "status": "success",
        "data": {"id": 999, "tx_ref": "OTHER_REF", "status": "successful", "amount": 1},
    }))

    result = settle(tx.reference, "flutterwave", "webhook", webhook_data={"id": 999, "tx_ref": tx.reference})

    assert result.outcome == "rejected"
    assert result.verification.paid is False
    assert _tx(tx.reference).status == "pending"
    assert _order(order.id).payment_status == "pending"
    assert _listing(listing.id).available_quantity == 20.0
    assert InventoryMovement.query.count() == 0


def test_flutterwave_poll_reuses_charge_id_seen_earlier(live_app, monkeypatch):
    f = Factory()
    order = f.order(f.user(), [(f.listing(f.user(role="farmer")), 1.0, 800.0)])
    tx = f.transaction(order, provider="flutterwave")
    urls = []
    answers = iter([
        {"id": 5566, "tx_ref": tx.reference, "status": "pending", "amount": 800},
        {"id": 5566, "tx_ref": tx.reference, "status": "successful", "amount": 800},
    ])

    def fake_get(url, headers=None, params=None, timeout=None):
        urls.append(url)
        return FakeResponse(200, {"status": "success", "data": next(answers)})

    monkeypatch.setattr(requests, "get", fake_get)

    assert settle(tx.reference, "flutterwave", "poll").outcome == "not_paid"
    assert _tx(tx.reference).meta_dict()["providerTransactionId"] == "5566"
    assert settle(tx.reference, "flutterwave", "poll").outcome == "settled"

    assert urls[0].endswith("/transactions/verify_by_reference")
    assert urls[1].endswith("/transactions/5566/verify")


def test_refund_transaction_is_never_settled(app, marketplace, factory):
    settle(marketplace["tx"].reference, "paystack", "poll")
    refund = factory.transaction(marketplace["order"], reference="REFUND_X")
    PaymentTransaction.query.filter_by(id=refund.id).update({"type": "refund"}, synchronize_session=False)
    db.session.commit()
    gateway = StubGateway()

    result = settle("REFUND_X", None, "poll", gateway=gateway)

    assert result.outcome == "pending"
    assert result.winner is False
    assert gateway.calls == 0
    assert _tx("REFUND_X").status == "pending"
    assert AuditLog.query.filter_by(action="payment_settled", reference="REFUND_X").count() == 0


def test_notification_store_failure_does_not_break_settlement(app, marketplace, monkeypatch):
    from grochain.utils import notify as notify_module

    def broken(*args, **kwargs):
        raise RuntimeError("notification store down")

    monkeypatch.setattr(notify_module, "notify", broken)
    tx, order = marketplace["tx"], marketplace["order"]

    result = settle(tx.reference, "paystack", "poll")

    assert result.outcome == "settled"
    assert result.notifications_sent == 0
    assert _order(order.id).payment_status == "paid"
    assert Commission.query.count() == 1
    assert AuditLog.query.filter_by(action="payment_settled", reference=tx.reference).count() == 1


def test_unknown_source_event_is_rejected(app, marketplace):
    with pytest.raises(ValueError):
        settle(marketplace["tx"].reference, "paystack", "cron")


def test_concurrent_settlement_single_winner(file_app):
    """Two threads reach the conditional flip together against one shared store."""
    with file_app.app_context():
        f = Factory()
        partner = f.partner(rate=0.05)
        farmer = f.user(role="farmer", partner=partner)
        buyer = f.user()
        listing = f.listing(farmer, available=50.0)
        order = f.order(buyer, [(listing, 10.0, 100.0)])
        reference = f.transaction(order).reference
        listing_id = int(listing.id)

    barrier = threading.Barrier(2)
    results, errors = [], []

    class BarrierGateway:
        def verify(self, reference, expected_amount=None, **_):
            barrier.wait(timeout=10)
            return GatewayResult(success=True, paid=True, amount=expected_amount, status="success",
                                 reference=reference, provider="paystack")

    def worker(source_event):
        with file_app.app_context():
            try:
                r = settle(reference, "paystack", source_event, gateway=BarrierGateway())
                results.append((r.outcome, r.winner))
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(s,)) for s in ("webhook", "poll")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert errors == []
    assert sorted(results) == [("already_settled", False), ("settled", True)]
    with file_app.app_context():
        assert Commission.query.count() == 1
        assert InventoryMovement.query.filter_by(reference=reference).count() == 1
        assert db.session.get(Listing, listing_id).available_quantity == 40.0
        assert PaymentTransaction.query.filter_by(reference=reference).one().status == "completed"
