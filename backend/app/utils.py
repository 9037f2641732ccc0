import math
import time
from typing import Iterable, List, TypeVar

T = TypeVar("T")


def now_ts() -> float:
    return time.time()


def remaining_seconds(deadline_ts: float | None, now: float) -> int:
    if deadline_ts is None:
        return 0
    return max(0, math.ceil(deadline_ts - now))


def sort_standings(players: Iterable[T]) -> List[T]:
    # sorted() is stable, so equal scores keep the lobby order
    return sorted(players, key=lambda p: -p.score)
