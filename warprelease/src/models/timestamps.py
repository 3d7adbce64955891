from datetime import date, datetime, time, timezone
from typing import Optional, Union

DateInput = Union[datetime, date, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: DateInput) -> datetime:
    """Parse portal timestamps into aware UTC datetimes.

    Accepts datetimes (naive ones are assumed UTC), plain dates (midnight UTC)
    and ISO 8601 strings, including the trailing ``Z`` and ``+0000`` forms
    the developer portal returns.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Timestamp cannot be empty")
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        elif len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
            text = f"{text[:-2]}:{text[-2:]}"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid timestamp: {value}")
    else:
        raise ValueError(f"Invalid timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_optional_timestamp(value: Optional[DateInput]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return parse_timestamp(value)
