"""Due-ness rules for a pending delivery.

Two independent triggers, either one sufficient:

* time: the message has a ``deliver_at`` that parses and is not in the future.
* life check: the owner enabled the dead-man's switch and has not checked in
  within the grace period. A missing settings row or a null ``last_ping_at``
  means the owner never checked in, which counts as due.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from .models import LifecheckSetting, Message, parse_iso_or_none


@dataclass(frozen=True)
class TriggerDecision:
    due_by_time: bool
    due_by_lifecheck: bool

    @property
    def due(self) -> bool:
        return self.due_by_time or self.due_by_lifecheck


def is_due_by_time(message: Message, now: datetime) -> bool:
    deliver_at = parse_iso_or_none(message.deliver_at)
    if deliver_at is None:
        return False
    return deliver_at <= now


def is_due_by_lifecheck(
    message: Message,
    setting: LifecheckSetting | None,
    now: datetime,
) -> bool:
    if not message.lifecheck_enabled:
        return False
    if setting is None or not setting.last_ping_at:
        return True
    last_ping_at = parse_iso_or_none(setting.last_ping_at)
    if last_ping_at is None:
        return False
    grace = timedelta(minutes=setting.effective_grace_minutes)
    return now - last_ping_at >= grace


def evaluate_due(
    message: Message,
    setting: LifecheckSetting | None,
    now: datetime,
) -> TriggerDecision:
    return TriggerDecision(
        due_by_time=is_due_by_time(message, now),
        due_by_lifecheck=is_due_by_lifecheck(message, setting, now),
    )
