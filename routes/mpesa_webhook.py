import hmac
import logging

from flask import Blueprint, request, jsonify, current_app

from models import db
from services.errors import MalformedCallback
from services.reconciler import CallbackResult, reconcile
from utils.audit import log_event

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")

_AUDIT_ACTIONS = {
    CallbackResult.DUPLICATE: "PAYMENT_CALLBACK_DUPLICATE",
    CallbackResult.CONFLICT: "PAYMENT_CALLBACK_CONFLICT",
}

_MESSAGES = {
    CallbackResult.APPLIED: "Callback processed",
    CallbackResult.DUPLICATE: "Callback already processed",
    CallbackResult.CONFLICT: "Callback recorded for review",
}


@webhook_bp.post("/mpesa")
def mpesa_callback():
    # Daraja does not sign callbacks; a shared token in the callback URL stands in
    expected_token = current_app.config.get("MPESA_CALLBACK_TOKEN")
    if expected_token and not hmac.compare_digest(request.args.get("token", ""), expected_token):
        logger.warning("M-Pesa callback rejected: bad token from %s", request.remote_addr)
        return jsonify(error="Invalid callback token"), 403

    payload = request.get_json(silent=True)
    try:
        outcome = reconcile(payload)
    except MalformedCallback as exc:
        logger.warning("Malformed M-Pesa callback (%s): %s", exc, payload)
        return jsonify(error=str(exc)), 400
    except Exception:
        db.session.rollback()
        logger.exception("Error processing M-Pesa callback: %s", payload)
        return jsonify(error="Callback processing failed"), 500

    cb = outcome.callback
    if outcome.result == CallbackResult.NOT_FOUND:
        log_event("PAYMENT_CALLBACK_UNKNOWN", entity="booking",
                  metadata={"checkout_request_id": cb.checkout_request_id, "result_code": cb.result_code})
        return jsonify(error="Booking not found"), 404

    if outcome.result == CallbackResult.APPLIED:
        action = "PAYMENT_CONFIRMED" if cb.succeeded else "PAYMENT_FAILED"
    else:
        action = _AUDIT_ACTIONS[outcome.result]

    metadata = {
        "checkout_request_id": cb.checkout_request_id,
        "result_code": cb.result_code,
        "result_desc": cb.result_desc,
        "receipt": cb.receipt_number,
    }
    if outcome.result == CallbackResult.CONFLICT:
        metadata["booking_status"] = outcome.status.value
        metadata["detail"] = outcome.detail
        metadata["payload"] = payload
    log_event(action, entity="booking", entity_id=outcome.booking_id, metadata=metadata)

    return jsonify(success=True, message=_MESSAGES[outcome.result]), 200
