from __future__ import annotations

import re

_DESIGNATOR_RE = re.compile(r"^(#?[A-Za-z]+)(\d+)$")


class DesignatorError(ValueError):
    pass


def split_designator(designator: str) -> tuple[str, int]:
    """Split ``"R12"`` into ``("R", 12)``.

    Raises DesignatorError when there is no alphabetic prefix or no trailing
    number.
    """
    match = _DESIGNATOR_RE.match(designator or "")
    if match is None:
        raise DesignatorError(f"malformed reference designator {designator!r}")
    return match.group(1), int(match.group(2))


class ReferenceCounter:
    """Hands out unique reference designators for one build.

    Counters are keyed by the case-folded prefix, so ``reserve("r5")`` and
    ``allocate("R")`` share state.
    """

    def __init__(self):
        self._counters: dict[str, int] = {}
        self._issued: set[str] = set()

    def allocate(self, prefix: str) -> str:
        key = prefix.upper()
        count = self._counters.get(key, 0)
        while True:
            count += 1
            designator = f"{prefix}{count}"
            if designator.upper() not in self._issued:
                break
        self._counters[key] = count
        self._issued.add(designator.upper())
        return designator

    def reserve(self, designator: str) -> bool:
        prefix, number = split_designator(designator)
        if designator.upper() in self._issued:
            return False
        key = prefix.upper()
        if number > self._counters.get(key, 0):
            self._counters[key] = number
        self._issued.add(designator.upper())
        return True

    def is_issued(self, designator: str) -> bool:
        return designator.upper() in self._issued

    def counter(self, prefix: str) -> int:
        return self._counters.get(prefix.upper(), 0)
