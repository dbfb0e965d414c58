"""In-memory stand-ins for the Supabase client and the Resend mailer.

Only the query-builder surface the worker uses is implemented:
``table().select/update().eq/in_/lt/order/limit/maybe_single().execute()`` and
``storage.from_(bucket).create_signed_url()``.
"""

import copy
import threading
import time
import types

from delivery_worker.mailer import EmailSendError
from delivery_worker.models import parse_iso_or_none


def _response(data, count=None):
    return types.SimpleNamespace(data=data, count=count)


def _less_than(value, bound) -> bool:
    left = parse_iso_or_none(value) if isinstance(value, str) else None
    right = parse_iso_or_none(bound) if isinstance(bound, str) else None
    if left is not None and right is not None:
        return left < right
    return value is not None and value < bound


class FakeQuery:
    def __init__(self, client: "FakeSupabase", table_name: str) -> None:
        self.client = client
        self.table_name = table_name
        self.operation = None
        self.payload = None
        self.filters = []
        self.order_by = None
        self.order_desc = False
        self.limit_count = None
        self.single_row = False

    def select(self, *_fields, **_kwargs):
        self.operation = "select"
        return self

    def update(self, payload: dict):
        self.operation = "update"
        self.payload = dict(payload)
        return self

    def eq(self, column: str, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column: str, values):
        allowed = list(values)
        self.filters.append(lambda row: row.get(column) in allowed)
        return self

    def lt(self, column: str, value):
        self.filters.append(lambda row: _less_than(row.get(column), value))
        return self

    def order(self, column: str, desc: bool = False):
        self.order_by = column
        self.order_desc = desc
        return self

    def limit(self, count: int):
        self.limit_count = count
        return self

    def maybe_single(self):
        self.single_row = True
        return self

    def _matching(self) -> list[dict]:
        rows = self.client.tables.setdefault(self.table_name, [])
        return [row for row in rows if all(check(row) for check in self.filters)]

    def execute(self):
        self.client.calls.append((self.table_name, self.operation))
        failure = self.client.failures.get((self.table_name, self.operation))
        if failure is not None and not isinstance(failure, BaseException):
            failure = failure(self)
        if failure is not None:
            raise failure

        with self.client.lock:
            hook = self.client.before_execute.get((self.table_name, self.operation))
            if hook is not None:
                hook(self)
            matched = self._matching()
            if self.operation == "update":
                for row in matched:
                    row.update(self.payload)
                return _response([copy.deepcopy(row) for row in matched])

            if self.order_by is not None:
                matched = sorted(
                    matched,
                    key=lambda row: row.get(self.order_by) or "",
                    reverse=self.order_desc,
                )
            if self.limit_count is not None:
                matched = matched[: self.limit_count]
            data = [copy.deepcopy(row) for row in matched]

        if self.single_row:
            if not data:
                return None
            return _response(data[0])
        return _response(data, count=len(data))


class FakeBucket:
    def __init__(self, storage: "FakeStorage", bucket: str) -> None:
        self.storage = storage
        self.bucket = bucket

    def create_signed_url(self, path: str, expires_in: int):
        self.storage.requests.append((self.bucket, path, expires_in))
        if path in self.storage.failing_keys:
            raise self.storage.failing_keys[path]
        return {"signedURL": f"https://storage.test/{self.bucket}/{path}?ttl={expires_in}"}


class FakeStorage:
    def __init__(self) -> None:
        self.requests = []
        self.failing_keys: dict[str, Exception] = {}

    def from_(self, bucket: str) -> FakeBucket:
        return FakeBucket(self, bucket)


class FakeSupabase:
    def __init__(self, tables: dict[str, list[dict]] | None = None) -> None:
        self.tables = {name: [dict(row) for row in rows] for name, rows in (tables or {}).items()}
        self.storage = FakeStorage()
        self.calls = []
        self.failures = {}
        self.before_execute = {}
        self.lock = threading.RLock()

    def table(self, table_name: str) -> FakeQuery:
        return FakeQuery(self, table_name)

    def fail(self, table_name: str, operation: str, exc) -> None:
        """Make every ``operation`` on ``table_name`` raise ``exc``.

        ``exc`` may also be a callable taking the query and returning the
        exception to raise, or None to let that query through.
        """
        self.failures[(table_name, operation)] = exc

    def row(self, table_name: str, row_id: str) -> dict:
        for row in self.tables.get(table_name, []):
            if row.get("id") == row_id:
                return row
        raise KeyError(f"{table_name}:{row_id}")


class FakeMailer:
    def __init__(
        self,
        status_code: int | None = None,
        response_text: str = "",
        delay_seconds: float = 0,
    ) -> None:
        self.sent = []
        self.status_code = status_code
        self.response_text = response_text
        self.delay_seconds = delay_seconds

    def send(self, to_email, subject, text, *, idempotency_key=None, time_budget=None):
        self.sent.append(
            {
                "to": to_email,
                "subject": subject,
                "text": text,
                "idempotency_key": idempotency_key,
                "time_budget": time_budget,
            }
        )
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if self.status_code is not None and self.status_code >= 400:
            raise EmailSendError(self.status_code, self.response_text)
        return {"id": f"email-{len(self.sent)}"}


def make_delivery_client(
    *,
    delivery_id: str = "d-1",
    status: str = "pending",
    updated_at: str = "2026-02-28T12:00:00+00:00",
    message: dict | None = None,
    recipient: dict | None = None,
    lifecheck: dict | None = None,
) -> FakeSupabase:
    """A client holding one delivery with its message and recipient."""
    message_row = {
        "id": "m-1",
        "user_id": "u-1",
        "title": "For you",
        "body_text": "Hello from the past.",
        "media_key": None,
        "deliver_at": None,
        "lifecheck_enabled": False,
    }
    message_row.update(message or {})
    recipient_row = {"id": "r-1", "email": "friend@example.com", "name": "Friend"}
    recipient_row.update(recipient or {})
    tables = {
        "deliveries": [
            {
                "id": delivery_id,
                "user_id": message_row["user_id"],
                "message_id": message_row["id"],
                "recipient_id": recipient_row["id"],
                "status": status,
                "updated_at": updated_at,
                "last_error": None,
            }
        ],
        "messages": [message_row],
        "recipients": [recipient_row],
        "lifecheck_settings": [],
    }
    if lifecheck is not None:
        row = {"user_id": message_row["user_id"], "last_ping_at": None, "grace_minutes": None}
        row.update(lifecheck)
        tables["lifecheck_settings"].append(row)
    return FakeSupabase(tables)
