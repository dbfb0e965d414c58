"""Delivery dispatch run.

One run pulls a bounded batch of pending deliveries (oldest ``updated_at``
first) and walks them one at a time:

    fetch message + recipient -> evaluate triggers -> claim -> resolve
    attachment -> send e-mail -> mark sent

Anything that goes wrong for one delivery is recorded against that delivery
(status ``failed``, ``last_error`` truncated) and the run moves on. A failed
batch fetch aborts the run with a step-tagged error. Running past the run
deadline, checked before the first item and after each one, raises
``RunDeadlineExceeded``; that and anything else that escapes is turned into a
fatal result by ``run_worker``.
"""

import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from .attachments import resolve_attachment_line
from .config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MEDIA_BUCKET,
    DEFAULT_RUN_DEADLINE_SECONDS,
    DEFAULT_STALE_PROCESSING_MINUTES,
)
from .log import get_logger
from .mailer import compose_body, compose_subject
from .models import Delivery, DeliveryStatus, truncate_error
from .results import (
    DeliveryErrorEntry,
    FatalErrorResult,
    FetchErrorResult,
    RunReport,
    WorkerResult,
)
from .store import (
    claim_delivery,
    fetch_lifecheck,
    fetch_message,
    fetch_pending_deliveries,
    fetch_recipient,
    mark_delivery_failed,
    mark_delivery_sent,
    requeue_stale_processing,
)
from .triggers import evaluate_due

logger = get_logger(__name__)

OUTCOME_SENT = "sent"

OUTCOME_SKIPPED = "skipped"


class RunDeadlineExceeded(RuntimeError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def error_text(exc: BaseException) -> str:
    # postgrest/storage errors carry the server message on .message
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or exc.__class__.__name__


def delivery_idempotency_key(delivery: Delivery) -> str:
    return f"delivery-{delivery.id}"


def process_delivery(
    client,
    mailer,
    delivery: Delivery,
    *,
    now: datetime,
    media_bucket: str = DEFAULT_MEDIA_BUCKET,
    executor: ThreadPoolExecutor | None = None,
    on_claimed=None,
    time_budget: float | None = None,
) -> str:
    """Drive one delivery through the pipeline.

    Returns ``"sent"`` or ``"skipped"``; raises on any failure. ``on_claimed``
    is called once the claim succeeds so the caller can count it even if a
    later stage fails. ``time_budget`` bounds the mailer's retries.
    """
    if executor is not None:
        message_future = executor.submit(fetch_message, client, delivery.message_id)
        recipient_future = executor.submit(fetch_recipient, client, delivery.recipient_id)
        message = message_future.result()
        recipient = recipient_future.result()
    else:
        message = fetch_message(client, delivery.message_id)
        recipient = fetch_recipient(client, delivery.recipient_id)

    setting = None
    if message.lifecheck_enabled:
        setting = fetch_lifecheck(client, delivery.user_id)

    decision = evaluate_due(message, setting, now)
    if not decision.due:
        return OUTCOME_SKIPPED

    if not claim_delivery(client, delivery.id, _utcnow()):
        logger.info(f"Delivery {delivery.id} already claimed, skipping")
        return OUTCOME_SKIPPED
    if on_claimed is not None:
        on_claimed()

    if not recipient.email:
        raise ValueError(f"rec: recipient {recipient.id} has no email address")

    attachment_line = resolve_attachment_line(client, media_bucket, message)
    mailer.send(
        recipient.email,
        compose_subject(message),
        compose_body(message, attachment_line),
        idempotency_key=delivery_idempotency_key(delivery),
        time_budget=time_budget,
    )

    # The e-mail is out; give the status write one more chance before the
    # delivery is recorded as failed.
    try:
        marked = mark_delivery_sent(client, delivery.id, _utcnow())
    except Exception as exc:  # noqa: BLE001
        logger.warning(f"Marking delivery {delivery.id} sent failed ({exc}); retrying once")
        try:
            marked = mark_delivery_sent(client, delivery.id, _utcnow())
        except Exception as retry_exc:  # noqa: BLE001
            raise RuntimeError(f"update-sent: {error_text(retry_exc)}") from retry_exc
    if not marked:
        raise RuntimeError("update-sent: delivery was no longer in processing")

    return OUTCOME_SENT


def run_batch(
    client,
    mailer,
    *,
    now: datetime | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    deadline_seconds: float = DEFAULT_RUN_DEADLINE_SECONDS,
    stale_minutes: int = DEFAULT_STALE_PROCESSING_MINUTES,
    media_bucket: str = DEFAULT_MEDIA_BUCKET,
) -> RunReport | FetchErrorResult:
    now = now or _utcnow()
    started = time.monotonic()
    report = RunReport(now=now.isoformat())

    requeue_stale_processing(client, now, stale_minutes)

    try:
        deliveries = fetch_pending_deliveries(client, batch_size)
    except Exception as exc:  # noqa: BLE001
        logger.error(f"Failed to fetch pending deliveries: {exc}")
        return FetchErrorResult(error=error_text(exc))

    logger.info(f"Pending deliveries fetched: {len(deliveries)}")

    def remaining_seconds() -> float:
        return deadline_seconds - (time.monotonic() - started)

    def check_deadline(done: int) -> None:
        if remaining_seconds() > 0:
            return
        logger.error(
            f"Run deadline exceeded after {done}/{len(deliveries)} deliveries "
            f"(picked={report.picked}, sent={report.sent}, failed={report.failed}, "
            f"skipped={report.skipped})"
        )
        raise RunDeadlineExceeded(
            f"run deadline of {deadline_seconds}s exceeded after "
            f"{done} of {len(deliveries)} deliveries"
        )

    claimed = False

    def count_claim() -> None:
        nonlocal claimed
        claimed = True
        report.picked += 1

    check_deadline(0)
    with ThreadPoolExecutor(max_workers=2, thread_name_prefix="delivery-fetch") as executor:
        for index, delivery in enumerate(deliveries):
            claimed = False
            try:
                outcome = process_delivery(
                    client,
                    mailer,
                    delivery,
                    now=now,
                    media_bucket=media_bucket,
                    executor=executor,
                    on_claimed=count_claim,
                    time_budget=remaining_seconds(),
                )
            except Exception as exc:  # noqa: BLE001
                message = error_text(exc)
                report.failed += 1
                report.errors.append(DeliveryErrorEntry(id=delivery.id, error=message))
                logger.error(f"Failed to process delivery {delivery.id}: {message}")
                # Only overwrite the status this run last saw for the row.
                seen = DeliveryStatus.PROCESSING if claimed else DeliveryStatus.PENDING
                try:
                    marked = mark_delivery_failed(
                        client,
                        delivery.id,
                        truncate_error(message),
                        _utcnow(),
                        expected_status=seen,
                    )
                except Exception as mark_exc:  # noqa: BLE001
                    logger.error(f"Failed to mark delivery {delivery.id} failed: {mark_exc}")
                else:
                    if not marked:
                        logger.warning(
                            f"Delivery {delivery.id} is no longer {seen.value}; "
                            "failure not recorded on the row"
                        )
            else:
                if outcome == OUTCOME_SENT:
                    report.sent += 1
                else:
                    report.skipped += 1

            check_deadline(index + 1)

    logger.info(
        f"Delivery run finished: picked={report.picked} sent={report.sent} "
        f"failed={report.failed} skipped={report.skipped}"
    )
    return report


def run_worker(client, mailer, **kwargs) -> WorkerResult:
    """``run_batch`` behind a catch-all; always returns a result model."""
    try:
        return run_batch(client, mailer, **kwargs)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Delivery run aborted")
        return FatalErrorResult(fatal=error_text(exc))
