from __future__ import annotations

import hashlib
import json
from typing import Any

from flask import request
from sqlalchemy.exc import IntegrityError

from grochain.extensions import db
from grochain.models import IdempotencyKey


def _hash_request(payload: Any) -> str:
    raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k or not k.strip():
        return None
    return k.strip()[:128]


def lookup_response(user_id: int | None, route: str, payload: Any):
    """Returns None (no key), ("hit", body, status), ("conflict", body, 409) or ("miss", row, 0)."""
    k = get_idempotency_key()
    if not k:
        return None

    rh = _hash_request(payload)
    row = IdempotencyKey.query.filter_by(key=k, route=route).first()
    if row is None:
        row = IdempotencyKey(key=k, user_id=int(user_id) if user_id is not None else None, route=route, request_hash=rh)
        try:
            db.session.add(row)
            db.session.commit()
            return ("miss", row, 0)
        except IntegrityError:
            # Same key landed concurrently; fall through to the stored row
            db.session.rollback()
            row = IdempotencyKey.query.filter_by(key=k, route=route).first()
            if row is None:
                raise

    if row.request_hash and row.request_hash != rh:
        return ("conflict", {"status": "error", "message": "Idempotency key reuse with different payload"}, 409)
    if row.response_json:
        return ("hit", json.loads(row.response_json), int(row.status_code or 200))
    return ("conflict", {"status": "error", "message": "Request with this idempotency key is still in progress"}, 409)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, default=str)
    row.status_code = int(status_code)
    db.session.add(row)
    db.session.commit()
