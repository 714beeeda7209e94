import math
from datetime import timedelta
from typing import Optional


def ttl_nano(ttl: Optional[timedelta]) -> Optional[int]:
    if ttl is None:
        return None
    # integer arithmetic, float seconds would lose exactness at the nanosecond boundary
    return (ttl // timedelta(microseconds=1)) * 1000


# round half up, so 12.5% reports as 13%
def hit_rate_percent(hits: int, misses: int) -> str:
    total = hits + misses
    if total == 0:
        return "0%"
    return f"{math.floor(hits / total * 100 + 0.5)}%"
