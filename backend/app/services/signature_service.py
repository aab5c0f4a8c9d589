"""Webhook signature verification and replay protection.

The processor signs each delivery with HMAC-SHA256 over "{timestamp}.{raw body}"
and sends the result as `x-signature: ts=<unix>,v1=<hex digest>`. No I/O
happens here, so this runs before anything touches storage.
"""
import hashlib
import hmac
import logging
import string
import time
from typing import Callable, Optional, Tuple

from app.core.errors import (
    MalformedSignature, MissingSecret, SignatureInvalid, TimestampMismatch,
    TooFarFuture, TooOld
)

logger = logging.getLogger("security")

_HEX_DIGITS = set(string.hexdigits)


def compute_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 digest the processor is expected to send as v1"""
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def parse_signature_header(signature_header: Optional[str]) -> Tuple[str, str]:
    """Split `ts=<t>,v1=<hex>` into (ts, v1)

    Raises:
        MalformedSignature: header missing, a component absent, or v1 not hex
    """
    if not signature_header:
        raise MalformedSignature("Missing signature header")

    ts = ""
    v1 = ""
    for part in signature_header.split(","):
        key, sep, value = part.partition("=")
        if not sep:
            continue
        key = key.strip()
        if key == "ts":
            ts = value.strip()
        elif key == "v1":
            v1 = value.strip()

    if not ts or not v1:
        raise MalformedSignature("Invalid signature format")
    if not set(v1) <= _HEX_DIGITS:
        raise MalformedSignature("Signature digest is not hex")
    return ts, v1


class SignatureVerifier:
    """Validates webhook authenticity with a pre-shared secret"""

    def __init__(
        self,
        secret: str,
        environment: str = "development",
        replay_window_seconds: int = 600,
        clock: Callable[[], float] = time.time
    ):
        self.secret = secret or ""
        self.environment = environment
        self.replay_window_seconds = replay_window_seconds
        self._clock = clock

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def verify(self, raw_body: bytes, signature_header: Optional[str], timestamp_header: Optional[str]) -> bool:
        """Verify a delivery's signature.

        Returns True when the signature was checked and matched, False when
        verification was skipped because no secret is configured outside
        production.

        Raises:
            MissingSecret: no secret configured in production
            MalformedSignature: header or timestamp cannot be parsed
            TimestampMismatch: header's ts differs from the request timestamp
            SignatureInvalid: digest does not match
        """
        if not self.secret:
            if self.is_production:
                logger.error("Webhook secret not configured in production - rejecting delivery")
                raise MissingSecret("Webhook secret not configured")
            logger.warning("Webhook secret not configured, skipping signature validation")
            return False

        ts, received_digest = parse_signature_header(signature_header)

        if not timestamp_header:
            raise MalformedSignature("Missing request timestamp")
        if ts != timestamp_header.strip():
            raise TimestampMismatch("Timestamp mismatch")

        expected_digest = compute_signature(self.secret, ts, raw_body)
        if not hmac.compare_digest(expected_digest.encode("ascii"), received_digest.lower().encode("ascii")):
            raise SignatureInvalid("Invalid signature")
        return True

    def check_freshness(self, timestamp: str) -> None:
        """Reject deliveries whose timestamp is outside the replay window

        Accepts seconds or milliseconds since the epoch.

        Raises:
            MalformedSignature: timestamp is not numeric
            TooOld / TooFarFuture: |now - timestamp| exceeds the window
        """
        try:
            value = float(timestamp)
        except (TypeError, ValueError):
            raise MalformedSignature("Invalid timestamp format")
        if value > 1e12:
            value = value / 1000.0

        drift = self._clock() - value
        if drift > self.replay_window_seconds:
            raise TooOld(f"Timestamp too old ({int(drift)}s)")
        if -drift > self.replay_window_seconds:
            raise TooFarFuture(f"Timestamp too far in future ({int(-drift)}s)")
