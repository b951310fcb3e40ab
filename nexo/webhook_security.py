"""
Webhook Security Module

Signature verification for Dodo Payments webhooks (Standard Webhooks):
- Constant-time signature comparison
- Timestamp validation against replays
- Verification on the raw request body, before any parsing
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


def constant_time_compare(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def extract_signing_key(secret: str) -> bytes:
    """
    Signing key bytes from a "whsec_BASE64KEY" secret.
    Secrets without the prefix are base64-decoded, or used as raw UTF-8 when they are not base64.
    """
    try:
        if secret.startswith("whsec_"):
            return base64.b64decode(secret[6:])
        return base64.b64decode(secret, validate=True)
    except ValueError:
        return secret.encode("utf-8")


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS, now: Optional[int] = None) -> bool:
    try:
        webhook_time = int(timestamp)
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False

    age = abs((now if now is not None else int(time.time())) - webhook_time)
    if age > max_age:
        logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
        return False
    return True


def sign_payload(secret: str, webhook_id: str, timestamp: str, raw_body: bytes) -> str:
    """base64(hmac_sha256(key, "webhook-id.webhook-timestamp.payload"))"""
    signed_message = b".".join([webhook_id.encode("utf-8"), timestamp.encode("utf-8"), raw_body])
    digest = hmac.new(extract_signing_key(secret), signed_message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(secret: str, webhook_id: str, timestamp: str, raw_body: bytes, signature_header: str) -> bool:
    """The header may carry several space-separated "v1,<sig>" entries (key rotation)"""
    expected = sign_payload(secret, webhook_id, timestamp, raw_body)
    for entry in signature_header.split():
        version, _, received = entry.partition(",")
        if version == "v1" and constant_time_compare(expected, received):
            return True
    return False


async def verify_dodo_webhook(request: Request, secret: str) -> bytes:
    """
    Verify a Dodo Payments webhook and return its raw body.

    Headers:
      - 'webhook-id': unique delivery id (also the idempotency key)
      - 'webhook-timestamp': Unix timestamp (seconds)
      - 'webhook-signature': 'v1,{base64 signature}'

    Raises:
        HTTPException(401) on a missing header, stale timestamp or bad signature
    """
    raw_body = await request.body()

    signature_header = request.headers.get("webhook-signature", "")
    timestamp = request.headers.get("webhook-timestamp", "")
    webhook_id = request.headers.get("webhook-id", "")

    logger.info(f"📥 Dodo webhook received: id={webhook_id or 'none'}")

    if not signature_header:
        logger.error("❌ Missing webhook-signature header")
        raise HTTPException(status_code=401, detail="Missing webhook signature")

    if not timestamp:
        logger.error("❌ Missing webhook-timestamp header")
        raise HTTPException(status_code=401, detail="Missing webhook timestamp")

    if not verify_timestamp(timestamp):
        logger.error("❌ Webhook timestamp expired or invalid")
        raise HTTPException(status_code=401, detail="Webhook timestamp expired")

    if not verify_signature(secret, webhook_id, timestamp, raw_body, signature_header):
        logger.error(f"❌ Dodo webhook signature mismatch for {webhook_id}")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    logger.info(f"✅ Dodo webhook signature verified successfully: {webhook_id}")
    return raw_body
