from __future__ import annotations

from typing import Iterable, Iterator, Optional, Tuple


class GearLadder:
    """
    Ordered concurrency levels, most aggressive first.

    Index 0 is the top gear (highest -j); the last index is the most
    conservative one. Downshifting moves towards the end of the ladder.
    """

    __slots__ = ("_levels",)

    def __init__(self, levels: Iterable[int]) -> None:
        lv: Tuple[int, ...] = tuple(int(x) for x in levels)
        if not lv:
            raise ValueError("gear ladder must not be empty")
        if any(x <= 0 for x in lv):
            raise ValueError(f"gear levels must be positive: {lv!r}")
        if any(a <= b for a, b in zip(lv, lv[1:])):
            raise ValueError(f"gear levels must be strictly descending: {lv!r}")
        self._levels = lv

    @property
    def levels(self) -> Tuple[int, ...]:
        return self._levels

    @property
    def last_index(self) -> int:
        return len(self._levels) - 1

    def level(self, index: int) -> int:
        return self._levels[index]

    def downshift(self, index: int) -> Optional[int]:
        return index + 1 if index < self.last_index else None

    def upshift(self, index: int) -> Optional[int]:
        return index - 1 if index > 0 else None

    def is_top(self, index: int) -> bool:
        return index == 0

    def is_bottom(self, index: int) -> bool:
        return index == self.last_index

    def describe(self, index: int) -> str:
        """Human label, e.g. 'gear 2/5 (-j16)'."""
        return f"gear {index + 1}/{len(self._levels)} (-j{self._levels[index]})"

    def __len__(self) -> int:
        return len(self._levels)

    def __iter__(self) -> Iterator[int]:
        return iter(self._levels)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GearLadder):
            return NotImplemented
        return self._levels == other._levels

    def __hash__(self) -> int:
        return hash(self._levels)

    def __repr__(self) -> str:
        return f"GearLadder({list(self._levels)!r})"


__all__ = ["GearLadder"]
