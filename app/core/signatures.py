"""
HMAC helpers shared by the outbound dispatcher and the inbound receivers.

All comparisons go through hmac.compare_digest.
"""
import base64
import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def compute_hmac_hex(secret: str, payload: bytes, digestmod=hashlib.sha256) -> str:
    """Hex HMAC of the raw payload bytes"""
    return hmac.new(secret.encode("utf-8"), payload, digestmod).hexdigest()


def compute_hmac_base64(secret: str, payload: bytes, digestmod=hashlib.sha256) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload, digestmod).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_payload(secret: str, payload: bytes) -> str:
    """Value of the outbound X-Webhook-Signature header: sha256=<hex>"""
    return f"{SIGNATURE_PREFIX}{compute_hmac_hex(secret, payload)}"


def verify_payload_signature(secret: str, payload: bytes, signature_header: str | None) -> bool:
    """Check a sha256=<hex> header against the payload, as receivers of our webhooks do"""
    if not secret or not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    expected = compute_hmac_hex(secret, payload)
    return hmac.compare_digest(signature_header[len(SIGNATURE_PREFIX):], expected)


def verify_hex_signature(
    secret: str,
    payload: bytes,
    signature: str | None,
    digestmod=hashlib.sha256,
) -> bool:
    """Case-insensitive comparison of a bare hex signature"""
    if not secret or not signature:
        return False
    expected = compute_hmac_hex(secret, payload, digestmod)
    return hmac.compare_digest(signature.strip().lower(), expected)


def verify_base64_signature(
    secret: str,
    payload: bytes,
    signature: str | None,
    digestmod=hashlib.sha256,
) -> bool:
    if not secret or not signature:
        return False
    expected = compute_hmac_base64(secret, payload, digestmod)
    return hmac.compare_digest(signature.strip(), expected)
