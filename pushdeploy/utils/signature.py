"""
Delivery signatures for trigger events.

A delivery is signed with HMAC-SHA256 over ``"{event}\\n{ref}\\n{commitSHA}"``
using the shared webhook secret. The hex digest may carry a ``sha256=``
prefix.
"""

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def signing_payload(event: str, ref: str, commit_sha: str) -> bytes:
    return f"{event}\n{ref}\n{commit_sha}".encode()


def sign_event(secret: str, event: str, ref: str, commit_sha: str) -> str:
    """Hex HMAC-SHA256 signature of an event.

    Examples:
        >>> len(sign_event("s3cret", "push", "refs/heads/main", "a" * 40))
        64
    """
    return hmac.new(
        secret.encode("utf-8"), signing_payload(event, ref, commit_sha), hashlib.sha256
    ).hexdigest()


def verify_signature(secret: str, signature: object, event: object, ref: object, commit_sha: object) -> bool:
    """Check a delivery signature in constant time.

    Accepts raw, unvalidated values so the check can run before the
    payload itself is validated. Anything that is not a string fails.
    """
    if not secret:
        return False
    if not (
        isinstance(signature, str)
        and isinstance(event, str)
        and isinstance(ref, str)
        and isinstance(commit_sha, str)
    ):
        return False
    provided = signature.strip().removeprefix(SIGNATURE_PREFIX).lower()
    expected = sign_event(secret, event, ref, commit_sha)
    return hmac.compare_digest(provided.encode(), expected.encode())
