"""Seat selection strategies and the pure algorithms behind them.

Nothing in this module touches the store. The database layer feeds it the
ascending list of available seat numbers read inside its own transaction and
commits whatever assignment comes back.
"""

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

from errors import BookingRejected, FailureReason
from models import CUSTOMER_MAX_LENGTH, MAX_ID


def _is_int(value: Any) -> bool:
    # bool is an int subclass; JSON true/false must not pass as a count
    return isinstance(value, int) and not isinstance(value, bool)


def validate_customer(customer: Any) -> str:
    if not isinstance(customer, str) or not customer.strip():
        raise BookingRejected(FailureReason.INVALID_REQUEST, "customer must be a non-empty string")
    if len(customer) > CUSTOMER_MAX_LENGTH:
        raise BookingRejected(
            FailureReason.INVALID_REQUEST,
            f"customer must be at most {CUSTOMER_MAX_LENGTH} characters",
        )
    return customer


@dataclass(frozen=True)
class SeatsByCount:
    """Let the system pick ``counts[i]`` seats in category ``i``."""
    counts: Tuple[int, ...]
    adjoining: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'counts', tuple(self.counts))

    @property
    def total(self) -> int:
        return sum(self.counts)

    def validate(self) -> None:
        for index, count in enumerate(self.counts):
            if not _is_int(count):
                raise BookingRejected(
                    FailureReason.INVALID_REQUEST, f"count for category {index} must be an integer"
                )
            if count < 0:
                raise BookingRejected(
                    FailureReason.INVALID_REQUEST, f"count for category {index} must not be negative"
                )
        if not isinstance(self.adjoining, bool):
            raise BookingRejected(FailureReason.INVALID_REQUEST, "adjoining must be a boolean")

    def categories_used(self) -> List[int]:
        return [index for index, count in enumerate(self.counts) if count > 0]


@dataclass(frozen=True)
class SeatsById:
    """The caller names the exact seats: ``seat_lists[i]`` go to category ``i``."""
    seat_lists: Tuple[Tuple[int, ...], ...]

    def __post_init__(self):
        object.__setattr__(self, 'seat_lists', tuple(tuple(seats) for seats in self.seat_lists))

    @property
    def total(self) -> int:
        return sum(len(seats) for seats in self.seat_lists)

    def validate(self) -> None:
        seen = set()
        for index, seats in enumerate(self.seat_lists):
            for seat in seats:
                if not _is_int(seat) or not 1 <= seat <= MAX_ID:
                    raise BookingRejected(
                        FailureReason.INVALID_REQUEST,
                        f"seats for category {index} must be integers between 1 and {MAX_ID}",
                    )
                if seat in seen:
                    raise BookingRejected(FailureReason.DUPLICATE_SEAT, f"seat {seat} requested twice")
                seen.add(seat)

    def categories_used(self) -> List[int]:
        return [index for index, seats in enumerate(self.seat_lists) if seats]

    def assignments(self) -> List[Tuple[int, int]]:
        return [
            (seat, category)
            for category, seats in enumerate(self.seat_lists)
            for seat in seats
        ]


SeatSelection = Union[SeatsByCount, SeatsById]


def find_adjoining_block(available: Sequence[int], count: int) -> Optional[List[int]]:
    """Return the first ``count`` seats of the lowest-starting run long enough, or None.

    ``available`` must be ascending and duplicate-free. A run is a maximal
    stretch of consecutive seat numbers; shorter runs are never padded.
    """
    if count <= 0:
        return []
    run_start = 0
    for index, seat in enumerate(available):
        if index > 0 and seat != available[index - 1] + 1:
            run_start = index
        if index - run_start + 1 >= count:
            return list(available[run_start:run_start + count])
    return None


def pick_first_available(available: Sequence[int], count: int) -> Optional[List[int]]:
    if count > len(available):
        return None
    return list(available[:count])


def assign_categories(block: Sequence[int], counts: Sequence[int]) -> List[Tuple[int, int]]:
    """Split an ascending block into (seat, category) pairs, lowest seats to category 0."""
    if len(block) != sum(counts):
        raise ValueError(f"block of {len(block)} seats cannot satisfy counts {list(counts)}")
    pairs = []
    cursor = 0
    for category, count in enumerate(counts):
        for seat in block[cursor:cursor + count]:
            pairs.append((seat, category))
        cursor += count
    return pairs


def select_seats(available: Sequence[int], selection: SeatsByCount) -> List[Tuple[int, int]]:
    """Pick seats for a by-count request, raising BookingRejected when capacity falls short."""
    total = selection.total
    if selection.adjoining:
        block = find_adjoining_block(available, total)
        if block is None:
            raise BookingRejected(
                FailureReason.NO_ADJOINING_BLOCK,
                f"not enough adjoining seats for {total} (available: {len(available)})",
            )
    else:
        block = pick_first_available(available, total)
        if block is None:
            raise BookingRejected(
                FailureReason.INSUFFICIENT_SEATS,
                f"requested {total} seats, only {len(available)} available",
            )
    return assign_categories(block, selection.counts)
