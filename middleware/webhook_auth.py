"""
Vonage Signed Webhook Verification

When a signature secret is configured for the Vonage account, every webhook
carries an `Authorization: Bearer <jwt>` header signed with that secret.

JWT Claims Contract:
- iss: string (required) - Must be "Vonage"
- iat: number (required) - Issued-at timestamp
- jti: string (optional) - Unique token id
- payload_hash: string (optional) - SHA-256 hex digest of the raw request body
- api_key / application_id: string (optional) - Sender identification

Security:
- Uses HMAC-SHA256 (HS256) symmetric signing
- The body hash binds the token to this exact payload
- Never logs full JWT tokens

Verification is off unless VONAGE_SIGNATURE_SECRET is set.
"""

import os
import hmac
import hashlib
import logging
from typing import Optional
from dataclasses import dataclass

import jwt
from fastapi import HTTPException, Request
from jwt.exceptions import (
    InvalidTokenError,
    ExpiredSignatureError,
    InvalidIssuerError,
)

logger = logging.getLogger(__name__)

# Clock skew tolerance in seconds (for exp/iat validation)
CLOCK_SKEW_LEEWAY = 30

VONAGE_ISSUER = "Vonage"


@dataclass
class WebhookClaims:
    """
    Validated claims extracted from a Vonage webhook signature.

    Attributes:
        issued_at: Unix timestamp when the token was issued
        token_id: The jti claim, if present
        application_id: Vonage application id, if present
    """
    issued_at: int
    token_id: Optional[str] = None
    application_id: Optional[str] = None


class WebhookVerificationError(Exception):
    """
    Raised when webhook signature verification fails.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for logging
    """
    def __init__(self, message: str, code: str = "SIGNATURE_INVALID"):
        self.message = message
        self.code = code
        super().__init__(message)


def verify_webhook_signature(token: str, body: bytes, secret: Optional[str] = None) -> WebhookClaims:
    """
    Verify a Vonage webhook JWT against the raw request body.

    Checks:
    1. Signature using VONAGE_SIGNATURE_SECRET
    2. Issuer is "Vonage"
    3. iat present, exp (if any) not passed, with clock skew tolerance
    4. payload_hash (if any) equals sha256(body)

    Args:
        token: The JWT string (without 'Bearer ' prefix)
        body: Raw request body bytes
        secret: Signature secret; read from the environment if omitted

    Returns:
        WebhookClaims for the verified token

    Raises:
        WebhookVerificationError: On any validation failure
    """
    secret = secret or os.getenv("VONAGE_SIGNATURE_SECRET")
    if not secret:
        logger.error("VONAGE_SIGNATURE_SECRET not configured")
        raise WebhookVerificationError(
            "Signature verification not configured",
            code="SIGNATURE_NOT_CONFIGURED"
        )

    logger.debug(f"Verifying webhook signature (first 8 chars): {token[:8]}...")

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            issuer=VONAGE_ISSUER,
            leeway=CLOCK_SKEW_LEEWAY,
            options={
                "require": ["iat", "iss"],
            }
        )
    except ExpiredSignatureError:
        logger.warning("Webhook signature has expired")
        raise WebhookVerificationError("Token has expired", code="SIGNATURE_EXPIRED")

    except InvalidIssuerError:
        logger.warning(f"Webhook signature has invalid issuer (expected: {VONAGE_ISSUER})")
        raise WebhookVerificationError("Invalid token issuer", code="SIGNATURE_INVALID_ISSUER")

    except InvalidTokenError as e:
        logger.warning(f"Webhook signature verification failed: {type(e).__name__}")
        raise WebhookVerificationError("Invalid token", code="SIGNATURE_INVALID")

    expected_hash = payload.get("payload_hash")
    if expected_hash is not None:
        actual_hash = hashlib.sha256(body).hexdigest()
        if not hmac.compare_digest(str(expected_hash).lower(), actual_hash):
            logger.warning("Webhook payload_hash does not match request body")
            raise WebhookVerificationError(
                "Payload hash mismatch",
                code="SIGNATURE_PAYLOAD_MISMATCH"
            )

    return WebhookClaims(
        issued_at=payload.get("iat", 0),
        token_id=payload.get("jti"),
        application_id=payload.get("application_id"),
    )


def extract_bearer_token(authorization_header: Optional[str]) -> Optional[str]:
    """
    Extract the token from an Authorization header.

    Returns:
        The token string, or None if header is missing/malformed
    """
    if not authorization_header:
        return None

    if not authorization_header.startswith("Bearer "):
        return None

    token = authorization_header[7:]

    if not token or not token.strip():
        return None

    return token.strip()


def is_signature_verification_configured() -> bool:
    """True if VONAGE_SIGNATURE_SECRET is set."""
    return bool(os.getenv("VONAGE_SIGNATURE_SECRET"))


async def require_vonage_signature(request: Request) -> Optional[WebhookClaims]:
    """
    FastAPI dependency guarding the webhook endpoints.

    Does nothing when verification is not configured. Otherwise a missing or
    invalid signature is rejected with 401 before the payload is processed.
    """
    if not is_signature_verification_configured():
        return None

    token = extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        logger.warning(f"Webhook rejected, missing signature: path={request.url.path}")
        raise HTTPException(
            status_code=401,
            detail={"error": "SIGNATURE_MISSING", "message": "Missing webhook signature"}
        )

    body = await request.body()
    try:
        return verify_webhook_signature(token, body)
    except WebhookVerificationError as e:
        logger.warning(f"Webhook rejected: path={request.url.path}, code={e.code}")
        raise HTTPException(
            status_code=401,
            detail={"error": e.code, "message": e.message}
        )
