"""
Host capacity arithmetic.

A resource dimension is either Bounded(n) or Unbounded. Overallocation
policy: -1 means unbounded, 0 means the nominal limit, N allows N% over it.
Any other negative value is treated as 0.
"""

from dataclasses import dataclass
from typing import Union

UNLIMITED_OVERALLOC = -1


@dataclass(frozen=True)
class Bounded:
    value: int

    def minus(self, used: int) -> "Bounded":
        return Bounded(self.value - used)

    def fits(self, amount: int) -> bool:
        return self.value >= amount

    def __str__(self) -> str:
        return f"{self.value}MB"


@dataclass(frozen=True)
class Unbounded:
    def minus(self, used: int) -> "Unbounded":
        return self

    def fits(self, amount: int) -> bool:
        return True

    def __str__(self) -> str:
        return "unlimited"


Capacity = Union[Bounded, Unbounded]


def effective_capacity(limit: int, overalloc_pct: int) -> Capacity:
    """Nominal limit stretched by the host's overallocation percentage."""
    if overalloc_pct == UNLIMITED_OVERALLOC:
        return Unbounded()
    pct = max(0, overalloc_pct)
    return Bounded((limit * (100 + pct)) // 100)


def headroom(limit: int, overalloc_pct: int, used: int) -> Capacity:
    return effective_capacity(limit, overalloc_pct).minus(used)
