"""Row access for the delivery worker.

Every write here is a single-row (or single-predicate) PostgREST update; there
are no multi-row transactions. Mutations that race with other workers carry
a status predicate so they only land when the row is still in the expected
state.
"""

from datetime import datetime, timedelta

from .log import get_logger
from .models import (
    Delivery,
    DeliveryStatus,
    LifecheckSetting,
    Message,
    Recipient,
    truncate_error,
)

logger = get_logger(__name__)

DELIVERY_SELECT_FIELDS = "id,user_id,message_id,recipient_id,status,updated_at"

MESSAGE_SELECT_FIELDS = "id,user_id,title,body_text,media_key,deliver_at,lifecheck_enabled"

RECIPIENT_SELECT_FIELDS = "id,email,name"

LIFECHECK_SELECT_FIELDS = "user_id,last_ping_at,grace_minutes"

NON_TERMINAL_STATUSES = [DeliveryStatus.PENDING.value, DeliveryStatus.PROCESSING.value]


class RecordNotFoundError(LookupError):
    pass


def _maybe_single_data(response) -> dict | None:
    # postgrest-py returns None instead of a response when no row matches
    if response is None:
        return None
    return response.data or None


def fetch_pending_deliveries(client, limit: int) -> list[Delivery]:
    response = (
        client.table("deliveries")
        .select(DELIVERY_SELECT_FIELDS)
        .eq("status", DeliveryStatus.PENDING.value)
        .order("updated_at")
        .limit(limit)
        .execute()
    )
    return [Delivery.from_row(row) for row in response.data or []]


def fetch_message(client, message_id: str) -> Message:
    response = (
        client.table("messages")
        .select(MESSAGE_SELECT_FIELDS)
        .eq("id", message_id)
        .maybe_single()
        .execute()
    )
    row = _maybe_single_data(response)
    if row is None:
        raise RecordNotFoundError(f"msg: message {message_id} not found")
    return Message.from_row(row)


def fetch_recipient(client, recipient_id: str) -> Recipient:
    response = (
        client.table("recipients")
        .select(RECIPIENT_SELECT_FIELDS)
        .eq("id", recipient_id)
        .maybe_single()
        .execute()
    )
    row = _maybe_single_data(response)
    if row is None:
        raise RecordNotFoundError(f"rec: recipient {recipient_id} not found")
    return Recipient.from_row(row)


def fetch_lifecheck(client, user_id: str) -> LifecheckSetting | None:
    response = (
        client.table("lifecheck_settings")
        .select(LIFECHECK_SELECT_FIELDS)
        .eq("user_id", user_id)
        .maybe_single()
        .execute()
    )
    row = _maybe_single_data(response)
    if row is None:
        return None
    return LifecheckSetting.from_row(row)


def claim_delivery(client, delivery_id: str, now: datetime) -> bool:
    """Move a delivery from pending to processing.

    Returns False when no row matched, i.e. another run already claimed it
    or its status changed since it was fetched.
    """
    response = (
        client.table("deliveries")
        .update(
            {
                "status": DeliveryStatus.PROCESSING.value,
                "updated_at": now.isoformat(),
                "last_error": None,
            }
        )
        .eq("id", delivery_id)
        .eq("status", DeliveryStatus.PENDING.value)
        .execute()
    )
    return bool(response.data)


def mark_delivery_sent(client, delivery_id: str, now: datetime) -> bool:
    response = (
        client.table("deliveries")
        .update(
            {
                "status": DeliveryStatus.SENT.value,
                "updated_at": now.isoformat(),
                "last_error": None,
            }
        )
        .eq("id", delivery_id)
        .eq("status", DeliveryStatus.PROCESSING.value)
        .execute()
    )
    return bool(response.data)


def mark_delivery_failed(
    client,
    delivery_id: str,
    error: str,
    now: datetime,
    *,
    expected_status: DeliveryStatus | None = None,
) -> bool:
    """Record a failure unless the delivery already reached a terminal state.

    ``expected_status`` narrows the write to the status this run last saw, so
    a run that never claimed the row cannot take it from another run that
    holds it in processing. Returns False when no row matched.
    """
    query = client.table("deliveries").update(
        {
            "status": DeliveryStatus.FAILED.value,
            "updated_at": now.isoformat(),
            "last_error": truncate_error(error),
        }
    ).eq("id", delivery_id)
    if expected_status is not None:
        query = query.eq("status", expected_status.value)
    else:
        query = query.in_("status", NON_TERMINAL_STATUSES)
    response = query.execute()
    return bool(response.data)


def requeue_stale_processing(client, now: datetime, stale_minutes: int) -> int:
    """Return deliveries stuck in processing back to pending.

    A run that dies between claim and the final status update leaves the row
    in processing forever; after ``stale_minutes`` it is handed back to the
    queue. Best effort: errors are logged and reported as zero recovered.
    """
    cutoff = (now - timedelta(minutes=stale_minutes)).isoformat()
    try:
        response = (
            client.table("deliveries")
            .update(
                {
                    "status": DeliveryStatus.PENDING.value,
                    "updated_at": now.isoformat(),
                }
            )
            .eq("status", DeliveryStatus.PROCESSING.value)
            .lt("updated_at", cutoff)
            .execute()
        )
        count = len(response.data or [])
        if count:
            logger.warning(f"Recovered {count} stale processing deliveries")
        return count
    except Exception as exc:  # noqa: BLE001
        logger.error(f"Failed to recover stale processing deliveries: {exc}")
        return 0


def ping_database(client) -> None:
    client.table("messages").select("id").limit(1).execute()
