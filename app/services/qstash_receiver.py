"""
QStash request signature verification.

QStash signs every delivery with a JWT (HS256) in the `Upstash-Signature`
header. The token's `body` claim is the base64url SHA-256 of the raw request
body. Both the current and the next signing key are accepted so that key
rotation does not drop deliveries.
"""

import base64
import hashlib
import hmac

import jwt

from app.config import Settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SIGNATURE_HEADER = "upstash-signature"
ISSUER = "Upstash"
CLOCK_TOLERANCE_SECONDS = 5


class SignatureVerificationError(Exception):
    """Raised when a queue request is not authentic."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _body_hash(body: bytes) -> str:
    digest = hashlib.sha256(body).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


class QStashReceiver:
    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        return bool(self.settings.signing_keys())

    def verify(self, signature: str, body: bytes, url: str | None = None) -> dict:
        """
        Verify a signature against the raw body.

        Returns:
            The decoded JWT claims

        Raises:
            SignatureVerificationError: on any mismatch, or when no keys are configured
        """
        keys = self.settings.signing_keys()
        if not keys:
            raise SignatureVerificationError("QStash signing keys are not configured")

        last_error = "Invalid signature"
        for key in keys:
            try:
                claims = jwt.decode(
                    signature,
                    key,
                    algorithms=["HS256"],
                    issuer=ISSUER,
                    leeway=CLOCK_TOLERANCE_SECONDS,
                    options={"verify_aud": False, "require": ["iss", "exp", "nbf"]},
                )
            except jwt.PyJWTError as e:
                last_error = str(e)
                continue

            expected = (claims.get("body") or "").rstrip("=")
            if not hmac.compare_digest(expected, _body_hash(body)):
                raise SignatureVerificationError("Body hash does not match signature")
            if url is not None and claims.get("sub") not in (None, url):
                raise SignatureVerificationError("Signature subject does not match URL")
            return claims

        logger.warning("QStash signature rejected", error=last_error)
        raise SignatureVerificationError(last_error)
