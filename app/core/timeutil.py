import pytz
from datetime import datetime

UTC = pytz.utc


def now_utc() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(UTC).replace(tzinfo=None)
