from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user

from grochain.auth import admin_required
from grochain.jobs.settlement_reconciler import retry_pending_settlements
from grochain.payments.reconciliation import verify_partner_commissions

recon_bp = Blueprint("recon_bp", __name__, url_prefix="/api/admin/reconciliation")


@recon_bp.route("/partners/<int:partner_id>", methods=["GET", "POST"])
@admin_required
def partner_commissions(partner_id):
    # GET only reports drift; POST also corrects the stored total
    res = verify_partner_commissions(partner_id, correct=request.method == "POST")
    if res is None:
        return jsonify({"status": "error", "message": "Partner not found", "data": {}}), 404
    return jsonify({"status": "success", "message": "Partner commissions checked", "data": res}), 200


@recon_bp.post("/run")
@admin_required
def run_recon():
    data = request.get_json(silent=True) or {}
    try:
        limit = int(data.get("limit") or 200)
        age = data.get("ageMinutes")
        age_minutes = int(age) if age is not None else None
    except (TypeError, ValueError):
        return jsonify({"status": "error", "message": "limit and ageMinutes must be integers", "data": {}}), 400
    res = retry_pending_settlements(age_minutes=age_minutes, limit=limit, actor_user_id=int(current_user.id))
    return jsonify({"status": "success", "message": "Reconciliation run complete", "data": res}), 200
