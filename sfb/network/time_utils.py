from datetime import datetime, timedelta
from typing import List, Sequence, Tuple

from sfb.errors import InvalidConfiguration

EPOCH = datetime(1970, 1, 1)
ONE_MICROSECOND = timedelta(microseconds=1)


def to_microseconds(ts: datetime) -> int:
    """
    Integer microseconds since the epoch for a naive UTC datetime.

    Integer arithmetic keeps the inclusive window boundary exact:
    09:00 and 09:30 are exactly 30 minutes apart, never 30.000000001.
    """
    return (ts - EPOCH) // ONE_MICROSECOND


def window_to_microseconds(window_minutes: float) -> int:
    if window_minutes <= 0:
        raise InvalidConfiguration(f"Proximity window must be > 0 minutes, got {window_minutes}")
    return int(round(window_minutes * 60 * 1_000_000))


def sweep_window_pairs(
    low: Sequence[Tuple[int, str]],
    high: Sequence[Tuple[int, str]],
    window_us: int,
) -> List[Tuple[str, str]]:
    """
    Finds every (low device, high device) whose visits are at most
    ``window_us`` apart.

    Logic:
    1. Both inputs are (time_us, device_id) sorted by time.
    2. For each low visit at t, advance ``start`` past high visits before
       t - W and ``end`` past high visits at or before t + W.
       Both bounds only move forward because low times are sorted.
    3. Everything in [start, end) matches.

    Cost is O(len(low) + len(high) + matches) instead of len(low) * len(high).
    Duplicates are NOT collapsed here; the caller decides.
    """
    pairs: List[Tuple[str, str]] = []
    n_high = len(high)
    start = 0
    end = 0

    for t, device_i in low:
        lower = t - window_us
        upper = t + window_us

        while start < n_high and high[start][0] < lower:
            start += 1
        if end < start:
            end = start
        while end < n_high and high[end][0] <= upper:
            end += 1

        for k in range(start, end):
            pairs.append((device_i, high[k][1]))

    return pairs
