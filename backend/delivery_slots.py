import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Optional

from errors import ValidationError

SLOT_TIME_PATTERN = re.compile(r"^(\d{2}):00$")
SLOT_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Same wording for every rejection so the lead time stays private.
SLOT_UNAVAILABLE_MESSAGE = "Time slot is not available"


@dataclass(frozen=True)
class SlotPolicy:
    """Hourly delivery window (inclusive on both ends) and minimum lead time."""

    start_hour: int = 7
    end_hour: int = 19
    lead_hours: int = 3

    @classmethod
    def from_config(cls, config: Mapping) -> "SlotPolicy":
        return cls(
            start_hour=int(config.get("DELIVERY_START_HOUR", 7)),
            end_hour=int(config.get("DELIVERY_END_HOUR", 19)),
            lead_hours=int(config.get("DELIVERY_MIN_LEAD_HOURS", 3)),
        )

    def is_valid_slot(self, date, time) -> bool:
        if not isinstance(time, str):
            return False
        match = SLOT_TIME_PATTERN.match(time)
        if not match:
            return False
        hour = int(match.group(1))
        if not self.start_hour <= hour <= self.end_hour:
            return False
        return parse_slot(date, time) is not None

    def is_far_enough_ahead(self, date, time, now: Optional[datetime] = None) -> bool:
        slot_at = parse_slot(date, time)
        if slot_at is None:
            return False
        current = now or datetime.now()
        return slot_at >= current + timedelta(hours=self.lead_hours)

    def validate(self, slot: Optional[Mapping], now: Optional[datetime] = None) -> dict:
        if not isinstance(slot, dict) or not slot.get("date") or not slot.get("time"):
            raise ValidationError("Delivery slot missing")

        date, time = slot.get("date"), slot.get("time")
        if not self.is_valid_slot(date, time):
            raise ValidationError(SLOT_UNAVAILABLE_MESSAGE)
        if not self.is_far_enough_ahead(date, time, now=now):
            raise ValidationError(SLOT_UNAVAILABLE_MESSAGE)
        return {"date": date, "time": time}


def parse_slot(date, time) -> Optional[datetime]:
    if not isinstance(date, str) or not isinstance(time, str):
        return None
    if not SLOT_DATE_PATTERN.match(date) or not SLOT_TIME_PATTERN.match(time):
        return None
    try:
        return datetime.strptime(f"{date} {time}", "%Y-%m-%d %H:%M")
    except ValueError:
        return None
