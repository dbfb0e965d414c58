import hmac
import re

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def extract_bearer_token(header: str | None) -> str | None:
    if not header:
        return None
    match = _BEARER_RE.match(header.strip())
    if not match:
        return None
    return match.group(1).strip() or None


def is_authorized(header: str | None, secret: str | None) -> bool:
    """Shared-secret check for scheduler calls.

    An unset secret denies every request.
    """
    if not secret:
        return False
    token = extract_bearer_token(header)
    if token is None:
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))
