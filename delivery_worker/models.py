from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


LAST_ERROR_MAX_CHARS = 1000

DEFAULT_GRACE_MINUTES = 4320


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    if value.endswith("Z"):
        value = value.replace("Z", "+00:00")
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_iso_or_none(value: str | None) -> datetime | None:
    """Like parse_iso, but an unparseable value reads as absent."""
    try:
        return parse_iso(value)
    except (TypeError, ValueError):
        return None


def truncate_error(text: str, limit: int = LAST_ERROR_MAX_CHARS) -> str:
    return text[:limit]


@dataclass(frozen=True)
class Delivery:
    id: str
    user_id: str
    message_id: str
    recipient_id: str
    status: str
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "Delivery":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            message_id=str(row["message_id"]),
            recipient_id=str(row["recipient_id"]),
            status=row.get("status") or DeliveryStatus.PENDING.value,
            updated_at=row.get("updated_at"),
        )


@dataclass(frozen=True)
class Message:
    id: str
    user_id: str
    title: str | None = None
    body_text: str | None = None
    media_key: str | None = None
    deliver_at: str | None = None
    lifecheck_enabled: bool = False

    @classmethod
    def from_row(cls, row: dict) -> "Message":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row.get("title"),
            body_text=row.get("body_text"),
            media_key=row.get("media_key"),
            deliver_at=row.get("deliver_at"),
            lifecheck_enabled=bool(row.get("lifecheck_enabled")),
        )


@dataclass(frozen=True)
class Recipient:
    id: str
    email: str
    name: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "Recipient":
        return cls(
            id=str(row["id"]),
            email=row.get("email") or "",
            name=row.get("name"),
        )


@dataclass(frozen=True)
class LifecheckSetting:
    user_id: str
    last_ping_at: str | None = None
    grace_minutes: int | None = None

    @classmethod
    def from_row(cls, row: dict) -> "LifecheckSetting":
        grace = row.get("grace_minutes")
        try:
            grace_minutes = int(grace) if grace is not None else None
        except (TypeError, ValueError):
            grace_minutes = None
        return cls(
            user_id=str(row.get("user_id") or ""),
            last_ping_at=row.get("last_ping_at"),
            grace_minutes=grace_minutes,
        )

    @property
    def effective_grace_minutes(self) -> int:
        if self.grace_minutes is None:
            return DEFAULT_GRACE_MINUTES
        return self.grace_minutes
