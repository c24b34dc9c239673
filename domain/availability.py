"""Overlap rules between a requested stay and the blocked-range set.

A request is half-open ``[check_in, check_out)``; a blocked range stores its
last occupied night. They conflict exactly when::

    check_in < blocked.end + 1 day  and  check_out > blocked.start

so a checkout and a check-in on the same day never conflict.
"""
from datetime import date
from typing import Iterable, List

from domain.value_objects import BlockedRange, StayDates, as_date


def overlaps(check_in: date, check_out: date, blocked: BlockedRange) -> bool:
    check_in, check_out = as_date(check_in), as_date(check_out)
    return check_in < blocked.exclusive_end and check_out > blocked.start


def find_conflicts(check_in: date, check_out: date, blocked: Iterable[BlockedRange]) -> List[BlockedRange]:
    return [b for b in blocked if overlaps(check_in, check_out, b)]


def is_available(check_in: date, check_out: date, blocked: Iterable[BlockedRange]) -> bool:
    """True when the candidate stay conflicts with none of the blocked ranges"""
    for b in blocked:
        if overlaps(check_in, check_out, b):
            return False
    return True


def stay_is_available(stay: StayDates, blocked: Iterable[BlockedRange]) -> bool:
    return is_available(stay.check_in, stay.check_out, blocked)


def ranges_conflict(a: BlockedRange, b: BlockedRange) -> bool:
    """Two inclusive ranges share at least one night"""
    return a.start <= b.end and b.start <= a.end
