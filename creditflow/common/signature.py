"""Timestamped HMAC-SHA256 verification for inbound provider webhooks.

Header format: ``ts=<unix seconds>,v1=<hex digest>`` where the digest is
``HMAC_SHA256(secret, "{ts}.{raw_body}")``. The verifier is pure: it never
logs and never touches storage; callers decide what to record.
"""

import hashlib
import hmac
import time

from creditflow.common.errors import SignatureVerificationError

DEFAULT_TOLERANCE_SECONDS = 300


def parse_signature_header(header: str | None) -> tuple[int, str]:
    """Split a signature header into `(timestamp, hex_digest)`."""

    if not header:
        raise SignatureVerificationError("missing signature header")
    parts: dict[str, str] = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep and value:
            parts[key.strip()] = value.strip()
    ts_raw = parts.get("ts")
    digest = parts.get("v1")
    if not ts_raw or not digest:
        raise SignatureVerificationError("signature header missing ts/v1 component")
    try:
        timestamp = int(ts_raw)
    except ValueError as exc:
        raise SignatureVerificationError("signature timestamp is not an integer") from exc
    return timestamp, digest.lower()


def compute_signature(raw_body: bytes, secret: bytes, timestamp: int) -> str:
    """Return the hex digest a provider would send for `raw_body` at `timestamp`."""

    signed_payload = str(timestamp).encode("utf-8") + b"." + raw_body
    return hmac.new(secret, signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(raw_body: bytes, secret: bytes, timestamp: int | None = None) -> str:
    """Build a complete header value; used by tooling and tests to sign bodies."""

    ts = int(time.time()) if timestamp is None else timestamp
    return f"ts={ts},v1={compute_signature(raw_body, secret, ts)}"


def verify_signature(
    raw_body: bytes,
    signature_header: str | None,
    secret: bytes,
    now: float | None = None,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> int:
    """Verify a webhook signature and return the signed timestamp.

    Rejects malformed headers, timestamps outside ``now +/- tolerance`` (both
    stale replays and far-future values), and any digest mismatch. The digest
    comparison is constant time.
    """

    if not secret:
        raise SignatureVerificationError("webhook secret not configured")
    timestamp, provided = parse_signature_header(signature_header)
    current = time.time() if now is None else now
    if timestamp < current - tolerance_seconds:
        raise SignatureVerificationError("signature timestamp outside tolerance (too old)")
    if timestamp > current + tolerance_seconds:
        raise SignatureVerificationError("signature timestamp outside tolerance (in the future)")
    expected = compute_signature(raw_body, secret, timestamp)
    if not hmac.compare_digest(expected, provided):
        raise SignatureVerificationError("signature mismatch")
    return timestamp
