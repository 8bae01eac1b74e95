from typing import FrozenSet, Iterable, Tuple


class DoctorRegistry:
    """Fixed set of doctors that appointments may be booked with.

    Built once from configuration at startup and passed to whoever needs it.
    """

    def __init__(self, names: Iterable[str]):
        self._names: FrozenSet[str] = frozenset(names)

    def is_valid(self, name: str) -> bool:
        return name in self._names

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(sorted(self._names))
