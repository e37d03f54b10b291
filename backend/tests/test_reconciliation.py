from datetime import datetime, timedelta

import requests

from grochain.extensions import db
from grochain.jobs.settlement_reconciler import retry_pending_settlements
from grochain.models import AuditLog, Commission, InventoryMovement, Order, Partner, PaymentTransaction
from grochain.payments.reconciliation import bulk_sync, check_settlement, sync_order, verify_partner_commissions
from grochain.payments.settlement import settle

from factories import Factory, request_as


def _order(order_id):
    return db.session.get(Order, order_id, populate_existing=True)


def _complete_without_order_edge(tx):
    PaymentTransaction.query.filter_by(id=tx.id).update(
        {"status": "completed", "processed_at": datetime.utcnow()}, synchronize_session=False
    )
    db.session.commit()


def test_check_settlement_is_clean_after_settle(app, marketplace):
    reference = marketplace["tx"].reference
    settle(reference, "paystack", "poll")

    assert check_settlement(reference) == []


def test_check_settlement_reports_gaps(app, marketplace):
    tx = marketplace["tx"]

    assert check_settlement("GROCHAIN_NOPE") == [{"issue": "transaction_missing"}]
    assert check_settlement(tx.reference)[0]["issue"] == "transaction_not_completed"

    _complete_without_order_edge(tx)
    kinds = [i["issue"] for i in check_settlement(tx.reference)]

    assert kinds == ["order_not_paid", "inventory_not_applied", "commission_missing"]
    assert Commission.query.count() == 0


def test_check_settlement_accepts_recorded_shortfall(app, factory):
    farmer = factory.user(role="farmer")
    listing = factory.listing(farmer, available=1.0)
    order = factory.order(factory.user(), [(listing, 5.0, 100.0)])
    tx = factory.transaction(order)

    settle(tx.reference, "paystack", "poll")

    assert check_settlement(tx.reference) == []


def test_sync_order_repairs_payment_edge_only(app, marketplace):
    tx, order = marketplace["tx"], marketplace["order"]
    _complete_without_order_edge(tx)

    res = sync_order(order.id)

    assert res == {"orderId": order.id, "synced": True, "reference": tx.reference}
    synced = _order(order.id)
    assert synced.payment_status == "paid"
    assert synced.status == "confirmed"
    assert synced.payment_reference == tx.reference
    assert InventoryMovement.query.count() == 0
    assert AuditLog.query.filter_by(action="order_synced").count() == 1
    assert sync_order(order.id)["reason"] == "already_paid"


def test_sync_order_reasons(app, marketplace):
    assert sync_order(9999)["reason"] == "order_not_found"
    assert sync_order(marketplace["order"].id)["reason"] == "no_completed_transaction"


def test_bulk_sync_counts(app, marketplace, factory):
    _complete_without_order_edge(marketplace["tx"])
    factory.transaction(factory.order(factory.user(), [(marketplace["listing"], 1.0, 100.0)]))

    res = bulk_sync(limit=10)

    assert res == {"checked": 2, "synced": 1, "orders": [marketplace["order"].id]}


def test_partner_drift_is_reported_then_corrected(app, marketplace):
    partner = marketplace["partner"]
    settle(marketplace["tx"].reference, "paystack", "poll")
    Partner.query.filter_by(id=partner.id).update({"total_commissions": 75.0}, synchronize_session=False)
    db.session.commit()

    report = verify_partner_commissions(partner.id, correct=False)

    assert report["consistent"] is False
    assert report["drift"] == 25.0
    assert report["corrected"] is False
    assert db.session.get(Partner, partner.id, populate_existing=True).total_commissions == 75.0

    fixed = verify_partner_commissions(partner.id)

    assert fixed["corrected"] is True
    assert db.session.get(Partner, partner.id, populate_existing=True).total_commissions == 50.0
    assert verify_partner_commissions(partner.id)["consistent"] is True
    assert AuditLog.query.filter_by(action="partner_commission_drift").count() == 2


def test_verify_unknown_partner(app):
    assert verify_partner_commissions(4242) is None


def test_reconciler_settles_only_stale_pending(app, factory):
    farmer = factory.user(role="farmer")
    listing = factory.listing(farmer, available=100.0)
    stale = factory.transaction(factory.order(factory.user(), [(listing, 2.0, 100.0)]),
                                created_at=datetime.utcnow() - timedelta(minutes=30))
    fresh = factory.transaction(factory.order(factory.user(), [(listing, 3.0, 100.0)]))

    counts = retry_pending_settlements()

    assert counts["checked"] == 1
    assert counts["settled"] == 1
    assert PaymentTransaction.query.filter_by(reference=stale.reference).one().status == "completed"
    assert PaymentTransaction.query.filter_by(reference=fresh.reference).one().status == "pending"
    assert AuditLog.query.filter_by(action="reconcile_run").count() == 1


def test_reconciler_counts_provider_errors(live_app, monkeypatch):
    f = Factory()
    order = f.order(f.user(), [(f.listing(f.user(role="farmer")), 1.0, 100.0)])
    tx = f.transaction(order, created_at=datetime.utcnow() - timedelta(hours=1))

    def timeout(*args, **kwargs):
        raise requests.Timeout("slow")

    monkeypatch.setattr(requests, "get", timeout)

    counts = retry_pending_settlements(age_minutes=5)

    assert counts["checked"] == 1
    assert counts["errors"] == 1
    assert PaymentTransaction.query.filter_by(reference=tx.reference).one().status == "pending"


def test_admin_endpoints_require_admin(client, marketplace):
    partner_id = marketplace["partner"].id

    assert request_as(client, "get", f"/api/admin/reconciliation/partners/{partner_id}").status_code == 401
    assert request_as(client, "get", f"/api/admin/reconciliation/partners/{partner_id}",
                      user=marketplace["buyer"]).status_code == 403
    assert request_as(client, "post", "/api/admin/reconciliation/run", user=marketplace["farmer"]).status_code == 403


def test_admin_partner_check_and_run(client, marketplace):
    admin = marketplace["admin"]
    Partner.query.filter_by(id=marketplace["partner"].id).update({"total_commissions": 12.5}, synchronize_session=False)
    db.session.commit()

    report = request_as(client, "get", f"/api/admin/reconciliation/partners/{marketplace['partner'].id}", user=admin)
    corrected = request_as(client, "post", f"/api/admin/reconciliation/partners/{marketplace['partner'].id}", user=admin)
    missing = request_as(client, "get", "/api/admin/reconciliation/partners/9999", user=admin)
    run = request_as(client, "post", "/api/admin/reconciliation/run", user=admin, json={"ageMinutes": 0})

    assert report.get_json()["data"]["corrected"] is False
    assert corrected.get_json()["data"]["corrected"] is True
    assert missing.status_code == 404
    assert run.status_code == 200
    assert run.get_json()["data"]["settled"] == 1
    assert _order(marketplace["order"].id).payment_status == "paid"
