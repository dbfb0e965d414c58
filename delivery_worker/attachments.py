from .log import get_logger
from .models import Message

logger = get_logger(__name__)

SIGNED_URL_TTL_SECONDS = 60 * 60 * 24 * 7


def create_signed_url(
    client,
    bucket: str,
    object_key: str,
    expires_in: int = SIGNED_URL_TTL_SECONDS,
) -> str:
    response = client.storage.from_(bucket).create_signed_url(object_key, expires_in)
    # storage3 has used both spellings across releases
    url = None
    if isinstance(response, dict):
        url = response.get("signedURL") or response.get("signedUrl")
    if not url:
        raise RuntimeError(f"no signed URL returned for '{object_key}'")
    return url


def resolve_attachment_line(client, bucket: str, message: Message) -> str:
    """Body line pointing at the message's stored media, if it has any.

    A storage failure never blocks the delivery; the recipient gets a notice
    in place of the link.
    """
    if not message.media_key:
        return ""
    try:
        url = create_signed_url(client, bucket, message.media_key)
    except Exception as exc:  # noqa: BLE001
        reason = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        logger.warning(f"Attachment unavailable for message {message.id}: {reason}")
        return f"\n\n[Attachment unavailable: {reason}]"
    return f"\n\nAttachment:\n{url}"
