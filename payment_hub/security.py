import hashlib
import hmac
from typing import Any, Mapping, Optional

from fastapi import Header, HTTPException, Request

from payment_hub.config import Settings
from payment_hub.errors import AuthenticityError
from payment_hub.helpers import canonical_json, first_present

SIGNATURE_FIELDS = ("signature", "sign", "hmac")
SHARED_SECRET_FIELDS = ("privatekey", "private_key", "secret")
CREDENTIAL_FIELDS = frozenset(SIGNATURE_FIELDS + SHARED_SECRET_FIELDS)


def unsigned_body(body: Mapping[str, Any]) -> dict:
    return {key: value for key, value in body.items() if key not in SIGNATURE_FIELDS}


def compute_signature(body: Mapping[str, Any], key: str) -> str:
    message = canonical_json(unsigned_body(body)).encode()
    return hmac.new(key.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(body: Mapping[str, Any], signature: str, key: str) -> None:
    expected = compute_signature(body, key)
    if not hmac.compare_digest(expected.encode(), signature.strip().lower().encode()):
        raise AuthenticityError("Webhook signature verification failed")


def verify_shared_secret(provided: Any, secret: str) -> None:
    if not hmac.compare_digest(str(provided).encode(), secret.encode()):
        raise AuthenticityError("Webhook shared secret mismatch")


def verify_notification(
    body: Mapping[str, Any],
    settings: Settings,
    signature: Optional[str] = None,
) -> Optional[str]:
    """
    Check whichever credential the notification carries and return the name
    of the strategy used, or None when it carries none.

    A signature (header or payload field) is checked with HMAC-SHA256 over the
    canonical JSON of the payload; a shared-secret field is compared with the
    private key. Both are checked when both are present.
    """
    signature = signature or first_present(body, SIGNATURE_FIELDS)
    shared_secret = first_present(body, SHARED_SECRET_FIELDS)
    strategies = []
    if signature:
        verify_signature(body, str(signature), settings.signing_key)
        strategies.append("hmac")
    if shared_secret is not None:
        verify_shared_secret(shared_secret, settings.private_key)
        strategies.append("shared_secret")
    if not strategies:
        if settings.require_webhook_authentication:
            raise AuthenticityError("Webhook carries no signature or shared secret")
        return None
    return "+".join(strategies)


def require_bearer_token(
    request: Request,
    authorization: str | None = Header(None, alias="Authorization"),
):
    """
    FastAPI dependency to enforce Authorization: Bearer <token> when configured.
    """
    token_setting = request.app.state.settings.bearer_token
    if not token_setting:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token.encode(), token_setting.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")
