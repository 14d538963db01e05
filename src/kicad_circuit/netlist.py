"""Incremental net graph.

Every ``union`` call rescans the existing nets for shared pins. Circuits built
this way hold tens to a few hundred pins, so the linear scan is kept; a parent
pointer structure would give the same naming behaviour for larger graphs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from kicad_circuit.models import Pin, PinType

logger = logging.getLogger(__name__)


class NetlistError(ValueError):
    def __init__(self, problems: list[tuple[int, object, str]]):
        self.problems = problems
        details = "; ".join(f"pin #{index}: {reason}" for index, _pin, reason in problems)
        super().__init__(f"malformed pin(s): {details}")


@dataclass
class Net:
    name: str
    ordinal: int
    pins: list[Pin] = field(default_factory=list)
    explicit: bool = False

    def keys(self) -> set[tuple[str | None, str]]:
        return {pin.key for pin in self.pins}

    def __contains__(self, pin: Pin) -> bool:
        return pin.key in self.keys()


@dataclass(frozen=True)
class NetRename:
    old_name: str
    surviving_name: str
    ordinal: int


def _validate(pin: object) -> str | None:
    if not isinstance(pin, Pin):
        return f"expected a Pin, got {type(pin).__name__}"
    if pin.reference is None:
        if not pin.name:
            return "boundary pin has no name"
        return None
    if not pin.reference:
        return "pin has no component reference"
    if pin.number is None or str(pin.number) == "":
        return f"pin of {pin.reference} has no number"
    return None


class NetBuilder:
    def __init__(self, prefix: str = "net"):
        self.prefix = prefix
        self._nets: list[Net] = []
        self._renames: list[NetRename] = []
        self._counter = 0
        self._ordinal = 0

    @property
    def nets(self) -> list[Net]:
        return list(self._nets)

    @property
    def renames(self) -> list[NetRename]:
        return list(self._renames)

    def rename_history(self) -> dict[str, Net]:
        by_ordinal = {net.ordinal: net for net in self._nets}
        return {r.old_name: by_ordinal[r.ordinal] for r in self._renames if r.ordinal in by_ordinal}

    def net_of(self, pin: Pin) -> Net | None:
        for net in self._nets:
            if pin in net:
                return net
        return None

    def get(self, name: str) -> Net | None:
        for net in self._nets:
            if net.name == name:
                return net
        return None

    def _check(self, pins: tuple) -> None:
        problems = []
        for index, pin in enumerate(pins):
            reason = _validate(pin)
            if reason is not None:
                problems.append((index, pin, reason))
        if problems:
            raise NetlistError(problems)

    def _next_name(self) -> str:
        taken = {net.name for net in self._nets}
        while True:
            self._counter += 1
            name = f"{self.prefix}{self._counter}"
            if name not in taken:
                return name

    def union(self, *pins: Pin, name: str | None = None) -> bool:
        if not pins:
            return False
        self._check(pins)

        incoming = {pin.key for pin in pins}
        targets = [
            net for net in self._nets
            if incoming & net.keys() or (name is not None and net.name == name)
        ]

        if not targets:
            self._ordinal += 1
            explicit = name is not None
            net = Net(name if explicit else self._next_name(), self._ordinal, explicit=explicit)
            self._nets.append(net)
        else:
            net = targets[0]
            for other in targets[1:]:
                self._record_rename(other.name, net)
                net.pins.extend(other.pins)
                self._nets.remove(other)
            if name is not None and name != net.name:
                self._record_rename(name, net)

        net.pins.extend(pins)
        net.pins = _dedupe(net.pins)
        return True

    def no_connect(self, *pins: Pin) -> bool:
        if not pins:
            return False
        self._check(pins)
        for pin in pins:
            pin.type = PinType.NO_CONNECT
            self.union(pin)
        return True

    def _record_rename(self, old_name: str, net: Net) -> None:
        self._renames.append(NetRename(old_name, net.name, net.ordinal))
        logger.info("net %s merged into %s", old_name, net.name)

    def finalize(self) -> list[Net]:
        seen: dict[tuple[str | None, str], str] = {}
        for net in self._nets:
            for pin in net.pins:
                if pin.key in seen:
                    raise AssertionError(f"{pin.label} is in both {seen[pin.key]} and {net.name}")
                seen[pin.key] = net.name
        return self.nets


def _dedupe(pins: list[Pin]) -> list[Pin]:
    seen = set()
    result = []
    for pin in pins:
        if pin.key in seen:
            continue
        seen.add(pin.key)
        result.append(pin)
    return result
