import random
import time
from dataclasses import dataclass

import requests

from .log import get_logger
from .models import Message

logger = get_logger(__name__)

RESEND_EMAILS_URL = "https://api.resend.com/emails"

REQUEST_TIMEOUT_SECONDS = 30

MIN_REQUEST_TIMEOUT_SECONDS = 1

HTTP_RETRY_DELAYS_SECONDS = (1, 3, 8)

SUBJECT_PREFIX = "Echo • "

DEFAULT_SUBJECT_TITLE = "Message"

DELIVERED_BY_NOTICE = "— This message was delivered by Echo."


class EmailSendError(RuntimeError):
    def __init__(self, status_code: int, response_text: str):
        self.status_code = status_code
        self.response_text = response_text
        super().__init__(f"Resend HTTP {status_code}: {response_text}")


def compose_subject(message: Message) -> str:
    return f"{SUBJECT_PREFIX}{message.title or DEFAULT_SUBJECT_TITLE}"


def compose_body(message: Message, attachment_line: str = "") -> str:
    body = f"{message.body_text}\n\n" if message.body_text else ""
    return body + DELIVERED_BY_NOTICE + attachment_line


def _is_retryable_http_status(status_code: int) -> bool:
    return status_code in (408, 425, 429, 500, 502, 503, 504)


def _is_idempotency_conflict(response: requests.Response) -> bool:
    # A key already used with a different payload: the first request was accepted.
    return response.status_code == 409 and "invalid_idempotent_request" in response.text


def _retry_delay(
    retry_delays: tuple[float, ...],
    attempt: int,
    deadline: float | None,
) -> float | None:
    if attempt >= len(retry_delays):
        return None
    base_delay = retry_delays[attempt]
    delay = base_delay + random.uniform(0, base_delay * 0.25)
    if deadline is not None and time.monotonic() + delay >= deadline:
        return None
    return delay


def _post_json_with_retries(
    url: str,
    *,
    headers: dict[str, str],
    payload: dict,
    idempotency_key: str | None = None,
    timeout: float = REQUEST_TIMEOUT_SECONDS,
    retry_delays: tuple[float, ...] = HTTP_RETRY_DELAYS_SECONDS,
    time_budget: float | None = None,
) -> requests.Response:
    """POST with jittered retries.

    With ``time_budget`` set, each request timeout is clipped to the time left
    and no retry is scheduled that would start past the budget.
    """
    request_headers = dict(headers)
    if idempotency_key:
        request_headers["Idempotency-Key"] = idempotency_key
    deadline = None if time_budget is None else time.monotonic() + time_budget

    for attempt in range(len(retry_delays) + 1):
        request_timeout = timeout
        if deadline is not None:
            remaining = deadline - time.monotonic()
            request_timeout = max(min(timeout, remaining), MIN_REQUEST_TIMEOUT_SECONDS)
        try:
            response = requests.post(
                url,
                headers=request_headers,
                json=payload,
                timeout=request_timeout,
            )
        except requests.RequestException as exc:
            delay = _retry_delay(retry_delays, attempt, deadline)
            if delay is None:
                raise
            logger.warning(
                f"HTTP request failed ({exc}); retrying in {delay:.1f}s "
                f"[{attempt + 1}/{len(retry_delays) + 1}]"
            )
            time.sleep(delay)
            continue

        if _is_retryable_http_status(response.status_code):
            delay = _retry_delay(retry_delays, attempt, deadline)
            if delay is not None:
                logger.warning(
                    f"HTTP {response.status_code} retry in {delay:.1f}s "
                    f"[{attempt + 1}/{len(retry_delays) + 1}]"
                )
                time.sleep(delay)
                continue

        return response

    raise RuntimeError("Unreachable retry state")


def send_email(
    api_key: str,
    from_email: str,
    to_email: str,
    subject: str,
    text: str,
    *,
    idempotency_key: str | None = None,
    retry_delays: tuple[float, ...] = HTTP_RETRY_DELAYS_SECONDS,
    time_budget: float | None = None,
) -> dict:
    response = _post_json_with_retries(
        RESEND_EMAILS_URL,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        payload={
            "from": from_email,
            "to": [to_email],
            "subject": subject,
            "text": text,
        },
        idempotency_key=idempotency_key,
        retry_delays=retry_delays,
        time_budget=time_budget,
    )

    if idempotency_key and _is_idempotency_conflict(response):
        logger.warning(f"Resend already accepted a send under {idempotency_key}; not resending")
        return {"idempotency_key": idempotency_key, "duplicate": True}
    if response.status_code >= 400:
        raise EmailSendError(response.status_code, response.text)

    try:
        return response.json()
    except ValueError:
        return {}


@dataclass(frozen=True)
class ResendMailer:
    """Resend credentials bound once per process and handed to the worker."""

    api_key: str
    from_email: str
    retry_delays: tuple[float, ...] = HTTP_RETRY_DELAYS_SECONDS

    def send(
        self,
        to_email: str,
        subject: str,
        text: str,
        *,
        idempotency_key: str | None = None,
        time_budget: float | None = None,
    ) -> dict:
        result = send_email(
            self.api_key,
            self.from_email,
            to_email,
            subject,
            text,
            idempotency_key=idempotency_key,
            retry_delays=self.retry_delays,
            time_budget=time_budget,
        )
        logger.info(f"Email accepted by Resend: to={to_email}, subject={subject[:30]}")
        return result
