from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import re
import time
from dataclasses import dataclass

from fastapi import status

BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
DEFAULT_MAX_AGE_SECONDS = 300


@dataclass(slots=True)
class WebhookVerification:
    ok: bool
    code: int = status.HTTP_200_OK
    reason: str | None = None


def parse_signatures(signature_header: str) -> list[str]:
    """Split ``v1,<sig> v1,<sig2>`` style headers into bare signatures."""
    signatures: list[str] = []
    for token in signature_header.split(" "):
        token = token.strip()
        if not token:
            continue
        _, separator, value = token.partition(",")
        signature = value if separator else token
        if signature:
            signatures.append(signature)
    return signatures


def is_timestamp_fresh(timestamp: str, *, max_age_seconds: int, now: float | None = None) -> bool:
    try:
        sent_at = int(timestamp.strip())
    except (TypeError, ValueError):
        return False
    current = time.time() if now is None else now
    return abs(current - sent_at) <= max_age_seconds


def compute_signature(webhook_id: str, timestamp: str, raw_body: bytes, secret: bytes) -> str:
    signed_content = webhook_id.encode("utf-8") + b"." + timestamp.encode("utf-8") + b"." + raw_body
    digest = hmac.new(secret, signed_content, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def decode_replicate_secret(secret: str) -> bytes:
    """Replicate ships ``whsec_<base64>``; the key is the decoded base64 part."""
    _, separator, encoded = secret.partition("_")
    payload = encoded if separator else secret
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return payload.encode("utf-8")


def decode_openai_secret(secret: str) -> bytes:
    """OpenAI secrets may be prefixed; use the last segment, base64-decoded when it looks encoded."""
    payload = secret.rsplit("_", maxsplit=1)[-1]
    if payload and len(payload) % 4 == 0 and BASE64_RE.match(payload):
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            pass
    return payload.encode("utf-8")


def verify_webhook(
    *,
    webhook_id: str | None,
    timestamp: str | None,
    signature_header: str | None,
    raw_body: bytes,
    secret: bytes,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: float | None = None,
) -> WebhookVerification:
    if not webhook_id or not timestamp or not signature_header:
        return WebhookVerification(
            ok=False,
            code=status.HTTP_400_BAD_REQUEST,
            reason="Missing required webhook headers",
        )

    if not is_timestamp_fresh(timestamp, max_age_seconds=max_age_seconds, now=now):
        return WebhookVerification(
            ok=False,
            code=status.HTTP_400_BAD_REQUEST,
            reason="Webhook timestamp is too old",
        )

    expected = compute_signature(webhook_id, timestamp, raw_body, secret).encode("ascii")
    for candidate in parse_signatures(signature_header):
        if hmac.compare_digest(candidate.encode("utf-8"), expected):
            return WebhookVerification(ok=True)

    return WebhookVerification(
        ok=False,
        code=status.HTTP_403_FORBIDDEN,
        reason="Invalid webhook signature",
    )
