"""Named bundles of pins for passing interfaces around as one value."""

from __future__ import annotations

from dataclasses import dataclass

from kicad_circuit.models import Pin, PinType


@dataclass
class I2C:
    scl: Pin
    sda: Pin


@dataclass
class UART:
    rx: Pin
    tx: Pin
    rts: Pin | None = None
    dtr: Pin | None = None


@dataclass
class USB:
    dp: Pin
    dn: Pin


@dataclass
class Power:
    """A supply rail pair; both pins become ``power_out`` so rails count as driven."""

    power: Pin
    gnd: Pin

    def __post_init__(self):
        self.power.type = PinType.POWER_OUT
        self.gnd.type = PinType.POWER_OUT
