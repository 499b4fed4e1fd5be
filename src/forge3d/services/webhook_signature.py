"""HMAC signature validation for provider webhooks.

Replicate callbacks carry an X-Signature header holding the hex-encoded
HMAC-SHA256 of the raw request body, keyed with REPLICATE_WEBHOOK_SECRET.

Security Note:
    validate_webhook_signature MUST be called before the payload is parsed or
    reconciled. Return 401 Unauthorized immediately if validation fails.
"""

import hashlib
import hmac


def compute_webhook_signature(raw_body: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of raw_body keyed with secret."""
    return hmac.new(key=secret.encode("utf-8"), msg=raw_body, digestmod=hashlib.sha256).hexdigest()


def validate_webhook_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """Validate a webhook signature using HMAC-SHA256.

    Args:
        raw_body: Raw request body bytes, exactly as received (NOT parsed JSON)
        signature: Hex signature from the X-Signature header
        secret: Shared webhook secret

    Returns:
        True if the signature is valid, False otherwise (including an empty secret)

    Example:
        >>> body = b'{"id":"abc","status":"succeeded"}'
        >>> validate_webhook_signature(body, compute_webhook_signature(body, "s3cret"), "s3cret")
        True
    """
    if not secret or not signature:
        return False

    expected = compute_webhook_signature(raw_body, secret)

    # Constant-time comparison; hexdigest() is lowercase, accept uppercase input
    return hmac.compare_digest(expected, signature.strip().lower())
