"""
Webhook Signature Verification

Checks that a webhook body really came from the provider it claims to come
from. Both schemes are HMAC-SHA256 over the exact raw request bytes, never
over a re-serialized object:

    - Stripe: "Stripe-Signature: t=<unix ts>,v1=<hex>[,v1=<hex>...]"
      signed payload is "<ts>.<raw body>", timestamps outside the tolerance
      window are rejected (replay protection)
    - Uber Direct: "X-Uber-Signature: <hex>" over the raw body

Verification only answers VALID or INVALID. What the endpoint does with an
INVALID answer is provider policy (see SignaturePolicy in core.config).
"""

import enum
import hashlib
import hmac
import logging
from typing import Optional

import stripe

logger = logging.getLogger(__name__)

PAYMENT_SIGNATURE_HEADER = "stripe-signature"
COURIER_SIGNATURE_HEADER = "x-uber-signature"


class SignatureResult(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"


def verify_payment_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance: int = 300,
) -> SignatureResult:
    """
    Verify a Stripe webhook signature.

    Args:
        raw_body: Request body exactly as received
        signature_header: Value of the Stripe-Signature header
        secret: Endpoint signing secret (whsec_...)
        tolerance: Maximum timestamp age in seconds

    Returns:
        SignatureResult.VALID only if a v1 signature matches and the
        timestamp is fresh. A missing secret or header is INVALID.
    """
    if not secret:
        logger.warning("Stripe webhook secret not configured, rejecting signature")
        return SignatureResult.INVALID
    if not signature_header:
        return SignatureResult.INVALID

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return SignatureResult.INVALID

    try:
        stripe.WebhookSignature.verify_header(
            payload,
            signature_header,
            secret,
            tolerance=tolerance,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe: Webhook signature invalid - {e}")
        return SignatureResult.INVALID

    return SignatureResult.VALID


def verify_courier_signature(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
) -> SignatureResult:
    """
    Verify an Uber Direct webhook signature (hex HMAC-SHA256, constant time).

    A missing secret or header is INVALID.
    """
    if not secret:
        logger.warning("Uber webhook signing key not configured, rejecting signature")
        return SignatureResult.INVALID
    if not signature_header:
        return SignatureResult.INVALID

    computed = hmac.new(
        secret.encode("utf-8"),
        raw_body,
        hashlib.sha256,
    ).hexdigest()

    if hmac.compare_digest(computed, signature_header.strip().lower()):
        return SignatureResult.VALID

    logger.warning("Uber: Webhook signature invalid")
    return SignatureResult.INVALID
