import hashlib
import hmac
import json
import logging

from app.utils.signatures import (
    log_security_alert,
    payment_signature_payload,
    verify_payment_signature,
    verify_signature,
    verify_webhook_signature,
)

SECRET = "shared_secret"


def _hmac(message: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def test_payment_signature_signs_order_and_payment_ids():
    assert payment_signature_payload("order_A1", "pay_B2") == "order_A1|pay_B2"
    signature = _hmac(b"order_A1|pay_B2")

    assert verify_payment_signature("order_A1", "pay_B2", signature, SECRET)
    assert not verify_payment_signature("order_A1", "pay_OTHER", signature, SECRET)
    assert not verify_payment_signature("order_A1", "pay_B2", signature, "wrong_secret")


def test_webhook_signature_covers_exact_raw_body():
    body = json.dumps({"event": "payment.captured", "payload": {}}).encode("utf-8")
    signature = _hmac(body)

    assert verify_webhook_signature(body, signature, SECRET)
    # Re-serialising the same JSON with different spacing must not verify.
    assert not verify_webhook_signature(body.replace(b", ", b","), signature, SECRET)


def test_missing_secret_or_signature_never_verifies():
    signature = _hmac(b"payload")

    assert not verify_signature(b"payload", signature, "")
    assert not verify_signature(b"payload", signature, None)
    assert not verify_signature(b"payload", "", SECRET)
    assert not verify_signature(b"payload", None, SECRET)


def test_string_and_dict_payloads_are_supported():
    assert verify_signature("payload", _hmac(b"payload"), SECRET)
    payload = {"a": 1, "b": "x"}
    assert verify_signature(payload, _hmac(b'{"a":1,"b":"x"}'), SECRET)


def test_security_alert_is_logged_at_error(caplog):
    with caplog.at_level(logging.ERROR, logger="app.security"):
        log_security_alert("AMOUNT_MISMATCH", order_id="order_X", expected=49900, actual=99900)

    record = caplog.records[-1]
    assert record.levelno == logging.ERROR
    assert "SECURITY ALERT" in record.getMessage()
    assert "expected=49900" in record.getMessage()
    assert "actual=99900" in record.getMessage()
    assert "timestamp=" in record.getMessage()
