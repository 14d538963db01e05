from __future__ import annotations

import logging
import uuid as uuid_module

from kicad_circuit.models import Pin, PinType, Placement, PropertyDescriptor
from kicad_circuit.references import DesignatorError, ReferenceCounter

logger = logging.getLogger(__name__)

_COMPONENT_NAMESPACE = uuid_module.uuid5(uuid_module.NAMESPACE_URL, "kicad_circuit/component")


class Component:
    """A physical device placed in the schematic and on the board.

    The reference designator is registered with ``references`` at
    construction. A designator that is already taken or malformed is replaced
    by the next free one for ``prefix``; the original is kept in
    ``renamed_from``. Without an explicit ``uuid`` the merge key is derived
    from the final designator, so rebuilding the same circuit reuses it.
    """

    def __init__(
        self,
        *,
        references: ReferenceCounter,
        symbol: str = "",
        reference: str | None = None,
        prefix: str = "U",
        value: str = "",
        footprint: str = "",
        datasheet: str = "",
        description: str = "",
        voltage: str = "",
        wattage: str = "",
        mpn: str = "",
        dnp: bool = False,
        placement: Placement | None = None,
        at: tuple[float, float] | None = None,
        uuid: str | None = None,
        pin_types: dict[str, PinType] | None = None,
    ):
        self.symbol = symbol
        self.prefix = prefix
        self.value = value
        self.footprint = footprint
        self.datasheet = datasheet
        self.description = description
        self.voltage = voltage
        self.wattage = wattage
        self.mpn = mpn
        self.dnp = dnp
        self.placement = placement or Placement()
        self.at = at
        self.renamed_from: str | None = None
        self._pin_types = dict(pin_types or {})
        self._pins: dict[str, Pin] = {}
        self.reference = self._register(references, reference, prefix)
        if reference is not None and self.reference != reference:
            self.renamed_from = reference
        self.uuid = uuid or str(uuid_module.uuid5(_COMPONENT_NAMESPACE, self.reference))
        logger.info("%s created", self.reference)

    @staticmethod
    def _register(references: ReferenceCounter, reference: str | None, prefix: str) -> str:
        if reference is None:
            return references.allocate(prefix)
        try:
            if references.reserve(reference):
                return reference
        except DesignatorError as exc:
            logger.warning("%s", exc)
        renamed = references.allocate(prefix)
        logger.warning("renaming %s to %s", reference, renamed)
        return renamed

    def __repr__(self) -> str:
        return f"Component({self.reference!r}, symbol={self.symbol!r}, value={self.value!r})"

    @property
    def pins(self) -> list[Pin]:
        return list(self._pins.values())

    def pin(self, number: int | str) -> Pin:
        key = str(number)
        existing = self._pins.get(key)
        if existing is not None:
            return existing
        pin = Pin(self.reference, key, self._pin_types.get(key, PinType.PASSIVE))
        self._pins[key] = pin
        return pin

    def set_pin_types(self, pin_types: dict[str, PinType]) -> None:
        """Seed electrical types for pins, typically from the symbol library.

        Pins that were already handed out keep any type the caller changed.
        """
        for number, pin_type in pin_types.items():
            self._pin_types.setdefault(str(number), pin_type)
            pin = self._pins.get(str(number))
            if pin is not None and pin.type == PinType.PASSIVE:
                pin.type = pin_type

    def properties(self) -> list[PropertyDescriptor]:
        props = [
            PropertyDescriptor("Reference", self.reference, hidden=False),
            PropertyDescriptor("Value", self.value, hidden=False),
            PropertyDescriptor("Footprint", self.footprint),
            PropertyDescriptor("Datasheet", self.datasheet),
            PropertyDescriptor("Description", self.description),
        ]
        for name, value in (("MPN", self.mpn), ("Voltage", self.voltage), ("Wattage", self.wattage)):
            if value:
                props.append(PropertyDescriptor(name, value))
        return props
