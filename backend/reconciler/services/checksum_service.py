"""
Checksum Service for Gateway Request Signing

Implements the gateway's X-VERIFY checksum scheme:
    sha256(base64_payload + endpoint + salt_key) hex digest + "###" + salt_index

Outbound requests sign payload + endpoint; the status query signs the
endpoint alone; inbound callbacks are verified against payload + salt key.
"""
import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from ..models.payments import SignedEnvelope

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("reconciler.security")

CHECKSUM_DELIMITER = "###"
# hexdigest() output is lowercase; anything else is not a checksum we issued
_HEX_DIGITS = frozenset("0123456789abcdef")


def encode_payload(payload: Dict[str, Any]) -> str:
    """
    Serialize a request payload the way the gateway expects it.

    Returns:
        Base64 text of the UTF-8 JSON document
    """
    body = json.dumps(payload, separators=(',', ':')).encode('utf-8')
    return base64.b64encode(body).decode('ascii')


def _digest(message: str) -> str:
    return hashlib.sha256(message.encode('utf-8')).hexdigest()


def compute_checksum(
    payload: str,
    endpoint: str,
    salt_key: str,
    salt_index: str
) -> str:
    """
    Compute the X-VERIFY value for a signed request.

    Args:
        payload: Base64 request payload ("" for payload-less requests)
        endpoint: Gateway path, e.g. /pg/v1/pay
        salt_key: Merchant salt key
        salt_index: Index of the salt key at the gateway

    Returns:
        "<sha256 hex>###<salt_index>"
    """
    checksum = _digest(payload + endpoint + salt_key) + CHECKSUM_DELIMITER + salt_index
    logger.debug(f"[CHECKSUM] Generated for endpoint: {endpoint}")
    return checksum


def sign_request(payload: str, endpoint: str, salt_key: str, salt_index: str) -> str:
    """Sign a payment initiation request (payload + endpoint)."""
    return compute_checksum(payload, endpoint, salt_key, salt_index)


def sign_status_query(endpoint: str, salt_key: str, salt_index: str) -> str:
    """
    Sign a status query.

    The status endpoint hashes only endpoint + salt key; there is no payload.
    """
    return compute_checksum("", endpoint, salt_key, salt_index)


def parse_x_verify(x_verify: Optional[str], payload: str = "") -> Optional[SignedEnvelope]:
    """
    Split an X-VERIFY header into digest and key index.

    Returns:
        SignedEnvelope, or None when the header is absent or malformed
        (no delimiter, empty parts, digest not 64 hex characters)
    """
    if not x_verify:
        return None

    digest, delimiter, key_index = x_verify.partition(CHECKSUM_DELIMITER)
    if not delimiter or not digest or not key_index:
        return None
    if len(digest) != 64 or not set(digest) <= _HEX_DIGITS:
        return None

    return SignedEnvelope(payload=payload, digest=digest, key_index=key_index)


def verify_callback(
    payload: str,
    x_verify: Optional[str],
    salt_key: str,
    salt_index: Optional[str] = None
) -> bool:
    """
    Verify a server-to-server callback checksum.

    Recomputes sha256(payload + salt_key) and compares it with the digest
    part of the X-VERIFY header using constant-time comparison.

    Args:
        payload: Base64 response exactly as received
        x_verify: X-VERIFY header value
        salt_key: Merchant salt key
        salt_index: When given, the header's key index must equal it

    Returns:
        True only for a well-formed header whose digest matches. Never raises.
    """
    if not salt_key:
        security_logger.error("[SECURITY] Salt key not configured; rejecting callback")
        return False

    if not isinstance(payload, str) or not payload:
        security_logger.warning("[SECURITY] Callback payload missing or not text")
        return False

    envelope = parse_x_verify(x_verify, payload)
    if envelope is None:
        security_logger.warning("[SECURITY] Malformed X-VERIFY header in callback")
        return False

    if salt_index is not None and envelope.key_index != salt_index:
        security_logger.warning(
            f"[SECURITY] Callback signed with unexpected key index {envelope.key_index!r}"
        )
        return False

    expected = _digest(envelope.payload + salt_key)
    if not hmac.compare_digest(expected, envelope.digest):
        security_logger.warning(
            f"[SECURITY] Invalid checksum in callback (key index {envelope.key_index})"
        )
        return False

    return True
