from __future__ import annotations

from dataclasses import dataclass, field
from itertools import combinations
from typing import Iterable

from kicad_circuit.models import Pin, PinType
from kicad_circuit.netlist import Net

ERROR = "error"
WARNING = "warning"

UNDRIVEN_INPUT = "undriven_input"
UNDRIVEN_POWER_INPUT = "undriven_power_input"
PIN_CONFLICT = "pin_conflict"
NO_CONNECT_CONNECTED = "no_connect_connected"

_T = PinType

# (type_a, type_b) -> severity; looked up in both orders.
_PAIR_RULES: dict[tuple[PinType, PinType], str] = {
    (_T.OUTPUT, _T.OUTPUT): ERROR,
    (_T.OUTPUT, _T.BIDIRECTIONAL): ERROR,
    (_T.POWER_IN, _T.TRI_STATE): WARNING,
    (_T.POWER_OUT, _T.POWER_OUT): ERROR,
    (_T.POWER_OUT, _T.OUTPUT): ERROR,
    (_T.POWER_OUT, _T.TRI_STATE): ERROR,
    (_T.POWER_OUT, _T.BIDIRECTIONAL): WARNING,
    (_T.POWER_OUT, _T.UNSPECIFIED): WARNING,
    (_T.OPEN_COLLECTOR, _T.OUTPUT): ERROR,
    (_T.OPEN_COLLECTOR, _T.POWER_OUT): ERROR,
    (_T.OPEN_COLLECTOR, _T.TRI_STATE): WARNING,
    (_T.OPEN_COLLECTOR, _T.UNSPECIFIED): WARNING,
    (_T.OPEN_EMITTER, _T.OUTPUT): ERROR,
    (_T.OPEN_EMITTER, _T.POWER_OUT): ERROR,
    (_T.OPEN_EMITTER, _T.BIDIRECTIONAL): WARNING,
    (_T.OPEN_EMITTER, _T.TRI_STATE): WARNING,
    (_T.OPEN_EMITTER, _T.UNSPECIFIED): WARNING,
    (_T.TRI_STATE, _T.OUTPUT): WARNING,
}


@dataclass(frozen=True)
class Violation:
    kind: str
    severity: str
    message: str
    net: str
    pins: tuple[str, ...] = ()


@dataclass
class ErcReport:
    errors: list[Violation] = field(default_factory=list)
    warnings: list[Violation] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors

    def add(self, violation: Violation) -> None:
        if violation.severity == ERROR:
            self.errors.append(violation)
        else:
            self.warnings.append(violation)

    def kinds(self, severity: str = ERROR) -> list[str]:
        source = self.errors if severity == ERROR else self.warnings
        return [v.kind for v in source]


def pair_severity(a: PinType, b: PinType) -> str | None:
    """Compatibility of two pin types sharing a net, independent of order."""
    if PinType.NO_CONNECT in (a, b):
        return None
    severity = _PAIR_RULES.get((a, b)) or _PAIR_RULES.get((b, a))
    if severity is not None:
        return severity
    if a == PinType.UNSPECIFIED and b != PinType.FREE:
        return WARNING
    if b == PinType.UNSPECIFIED and a != PinType.FREE:
        return WARNING
    return None


def check(nets: Iterable[Net]) -> ErcReport:
    report = ErcReport()
    for net in nets:
        _check_drivers(net, report)
        _check_no_connects(net, report)
        _check_pairs(net, report)
    return report


def _check_drivers(net: Net, report: ErcReport) -> None:
    types = {pin.type for pin in net.pins}
    for pin in net.pins:
        if pin.type == PinType.INPUT and PinType.OUTPUT not in types:
            report.add(Violation(
                UNDRIVEN_INPUT, ERROR,
                f"input pin {pin.label} not driven by an output pin",
                net.name, (pin.label,),
            ))
        elif pin.type == PinType.POWER_IN and PinType.POWER_OUT not in types:
            report.add(Violation(
                UNDRIVEN_POWER_INPUT, ERROR,
                f"power_in pin {pin.label} not driven by a power_out pin",
                net.name, (pin.label,),
            ))


def _check_no_connects(net: Net, report: ErcReport) -> None:
    for nc in net.pins:
        if nc.type != PinType.NO_CONNECT:
            continue
        for other in net.pins:
            if other.key == nc.key:
                continue
            report.add(Violation(
                NO_CONNECT_CONNECTED, WARNING,
                f"no_connect pin {nc.label} connected to {other.label}",
                net.name, (nc.label, other.label),
            ))


def _owner(pin: Pin) -> str | None:
    return pin.reference


def _check_pairs(net: Net, report: ErcReport) -> None:
    owners = {_owner(pin) for pin in net.pins}
    if len(owners) < 2:
        return
    for a, b in combinations(net.pins, 2):
        if a.key == b.key or _owner(a) == _owner(b):
            continue
        severity = pair_severity(a.type, b.type)
        if severity is None:
            continue
        report.add(Violation(
            PIN_CONFLICT, severity,
            f"{a.type.value} pin {a.label} connected to {b.type.value} pin {b.label}",
            net.name, (a.label, b.label),
        ))
