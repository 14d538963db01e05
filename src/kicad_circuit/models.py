from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class PinType(str, Enum):
    PASSIVE = "passive"
    INPUT = "input"
    OUTPUT = "output"
    BIDIRECTIONAL = "bidirectional"
    TRI_STATE = "tri_state"
    POWER_IN = "power_in"
    POWER_OUT = "power_out"
    UNSPECIFIED = "unspecified"
    FREE = "free"
    OPEN_COLLECTOR = "open_collector"
    OPEN_EMITTER = "open_emitter"
    NO_CONNECT = "no_connect"


@dataclass(eq=False)
class Pin:
    """A component terminal, or a sheet boundary pin when ``reference`` is None."""

    reference: str | None
    number: str | None
    type: PinType = PinType.PASSIVE
    name: str | None = None

    @property
    def is_boundary(self) -> bool:
        return self.reference is None

    @property
    def key(self) -> tuple[str | None, str]:
        if self.reference is None:
            return (None, str(self.name))
        return (self.reference, str(self.number))

    @property
    def label(self) -> str:
        if self.reference is None:
            return f"<{self.name}>"
        return f"{self.reference}:{self.number}"


@dataclass(frozen=True)
class Placement:
    x: float = 0
    y: float = 0
    rotation: float = 0


@dataclass(frozen=True)
class PropertyDescriptor:
    name: str
    value: str
    hidden: bool = True


@dataclass
class PinConnection:
    component_ref: str
    pin_name: str
    pin_number: str = ""


@dataclass
class NetRecord:
    name: str | None
    connections: list[PinConnection]
    is_power: bool = False


@dataclass
class PartRecord:
    reference: str
    value: str
    footprint: str
    lib_id: str = ""
    properties: dict[str, str] = field(default_factory=dict)


@dataclass
class SchematicRecord:
    components: list[PartRecord]
    nets: list[NetRecord]
