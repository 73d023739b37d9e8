from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class Capacity:
    total_seats: int
    used: int
    left: Optional[int]

    @property
    def unbounded(self) -> bool:
        return self.left is None

    def to_dict(self) -> dict[str, object]:
        return {
            "total_seats": self.total_seats,
            "used": self.used,
            "left": self.left,
            "unbounded": self.unbounded,
        }


def compute_capacity(total_seats: Optional[int], party_sizes: Iterable[int]) -> Capacity:
    """Seats taken by the waiting line, first come first seated.

    Parties are taken in queue order while they fit. The first party that
    would overflow stops the count: later, smaller parties are not moved into
    the gap. With no seat count configured the venue is unbounded and ``used``
    is simply the head count of the line.
    """
    seats = max(int(total_seats or 0), 0)
    sizes = [max(int(size or 0), 0) for size in party_sizes]

    if seats == 0:
        return Capacity(total_seats=0, used=sum(sizes), left=None)

    used = 0
    for size in sizes:
        if used + size > seats:
            break
        used += size
    return Capacity(total_seats=seats, used=used, left=seats - used)


def estimate_wait_minutes(parties_ahead: int, minutes_per_group: int) -> int:
    return max(parties_ahead, 0) * max(minutes_per_group, 0)
