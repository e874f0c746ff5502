"""HMAC-SHA256 signature checks for gateway callbacks.

Two secrets are in play: the API key secret signs ``"{order_id}|{payment_id}"``
for client-side confirmations, and the webhook secret signs the raw webhook
request body. The body must be the exact bytes received; re-serialised JSON
can differ byte for byte and will not verify.
"""

import hashlib
import hmac
import logging
from typing import Union

Message = Union[bytes, str]


def _to_bytes(value: Message) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def compute_signature(message: Message, secret: str) -> str:
    return hmac.new(_to_bytes(secret), _to_bytes(message), hashlib.sha256).hexdigest()


def verify_signature(message: Message, signature: str, secret: str) -> bool:
    """Return True when ``signature`` is the hex HMAC of ``message``.

    Never raises: a missing, malformed or non-ASCII signature is simply a
    mismatch.
    """
    try:
        if not signature or not secret:
            return False
        expected = compute_signature(message, secret).encode("ascii")
        provided = signature.encode("ascii")
        if len(expected) != len(provided):
            return False
        return hmac.compare_digest(expected, provided)
    except Exception:
        logging.warning("Signature verification error", exc_info=True)
        return False


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    return verify_signature(f"{order_id}|{payment_id}", signature, secret)


def verify_webhook_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    return verify_signature(raw_body, signature, secret)
