import hashlib
import hmac
from collections.abc import Iterable


def verify_webhook_signature(body: bytes, signature: str, secrets: Iterable[str]) -> bool:
    """Check a hex HMAC-SHA256 of the raw body against any configured secret.

    Fails closed when no secret is configured.
    """
    provided_signature = signature.strip()
    if not provided_signature:
        return False
    if provided_signature.startswith("sha256="):
        provided_signature = provided_signature.split("=", maxsplit=1)[1].strip()

    for secret in secrets:
        if not secret:
            continue
        computed_signature = compute_webhook_signature(body, secret)
        if hmac.compare_digest(computed_signature, provided_signature.lower()):
            return True
    return False


def compute_webhook_signature(body: bytes, secret: str) -> str:
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()
