from __future__ import annotations

import math
import re
from pathlib import Path

from skip import Schematic as SkipSchematic

from kicad_circuit import sexpr
from kicad_circuit.models import NetRecord, PartRecord, PinConnection, SchematicRecord

_STANDARD_FIELDS = ("Reference", "Value", "Footprint", "Datasheet")


def read_schematic(path: str | Path) -> SchematicRecord:
    skip_sch = SkipSchematic(str(path))
    unit_pins = _build_unit_pins(skip_sch)
    components = _extract_components(skip_sch)
    hier_labels = _hierarchical_labels(sexpr.parse(Path(path).read_text(encoding="utf-8")))
    nets = _extract_nets(skip_sch, unit_pins, hier_labels)
    return SchematicRecord(components=components, nets=nets)


def _collection(sch: SkipSchematic, name: str) -> list:
    try:
        items = getattr(sch, name)
    except AttributeError:
        return []
    return list(items) if items is not None else []


def _hierarchical_labels(tree: list) -> list[tuple[str, float, float]]:
    """kicad-skip does not wrap hierarchical labels, so they come from the raw tree."""
    labels = []
    for node in sexpr.children(tree, "hierarchical_label"):
        at = sexpr.find(node, "at")
        if len(node) > 1 and at is not None and len(at) > 2:
            labels.append((str(node[1]), float(at[1]), float(at[2])))
    return labels


def _get_lib_symbol(sch: SkipSchematic, lib_id: str):
    attr_name = re.sub(r"[^a-zA-Z0-9_]", "_", lib_id)
    for name in (attr_name, "n" + attr_name):
        try:
            return getattr(sch.lib_symbols, name)
        except AttributeError:
            continue
    return None


def _unit_number(sub) -> int:
    return int(sub.raw[1].rsplit("_", 2)[-2])


def _build_unit_pins(sch: SkipSchematic) -> dict[tuple[str, int], dict[str, object]]:
    """Map (lib_id, unit) to {pin_number: lib_pin}; unit 0 is shared by all units."""
    result: dict[tuple[str, int], dict[str, object]] = {}
    for sym in _collection(sch, "symbol"):
        lib_id = sym.lib_id.value
        if any(key[0] == lib_id for key in result):
            continue
        lib_sym = _get_lib_symbol(sch, lib_id)
        if lib_sym is None:
            continue
        for sub in lib_sym.symbol:
            if not hasattr(sub, "pin") or sub.pin is None:
                continue
            pins = result.setdefault((lib_id, _unit_number(sub)), {})
            for pin in sub.pin:
                pins.setdefault(str(pin.number.value), pin)
    return result


def _pins_for(unit_pins, lib_id: str, unit: int) -> dict[str, object]:
    pins = dict(unit_pins.get((lib_id, 0), {}))
    if unit != 0:
        pins.update(unit_pins.get((lib_id, unit), {}))
    return pins


def _extract_components(sch: SkipSchematic) -> list[PartRecord]:
    seen: set[str] = set()
    components = []
    for sym in _collection(sch, "symbol"):
        if sym.is_power:
            continue
        reference = sym.property.Reference.value
        if reference in seen:
            continue
        seen.add(reference)
        try:
            footprint = sym.property.Footprint.value
        except (AttributeError, KeyError):
            footprint = ""
        props = {}
        for prop in sym.property:
            if prop.name not in _STANDARD_FIELDS and prop.value:
                props[prop.name] = prop.value
        components.append(PartRecord(
            reference=reference,
            value=sym.property.Value.value,
            footprint=footprint,
            lib_id=sym.lib_id.value,
            properties=props,
        ))
    return components


class _UnionFind:
    def __init__(self):
        self._parent: dict = {}

    def find(self, x):
        if x not in self._parent:
            self._parent[x] = x
        while self._parent[x] != x:
            self._parent[x] = self._parent[self._parent[x]]
            x = self._parent[x]
        return x

    def union(self, a, b):
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self._parent[ra] = rb

    def groups(self) -> dict:
        result: dict = {}
        for key in self._parent:
            result.setdefault(self.find(key), []).append(key)
        return result


def _coord_key(x: float, y: float) -> tuple[float, float]:
    return (round(x, 2), round(y, 2))


def _pin_location(sym, lib_pin) -> tuple[float, float]:
    sx, sy = sym.at.value[0], sym.at.value[1]
    rotation = sym.at.value[2] if len(sym.at.value) > 2 else 0
    px, py = lib_pin.at.value[0], lib_pin.at.value[1]

    theta = math.radians(rotation)
    rx = px * math.cos(theta) - py * math.sin(theta)
    ry = px * math.sin(theta) + py * math.cos(theta)

    mirror = getattr(sym, "mirror", None)
    if mirror is not None:
        axis = str(mirror.value)
        if axis == "x":
            ry = -ry
        elif axis == "y":
            rx = -rx

    return _coord_key(sx + rx, sy - ry)


def _pin_name(lib_pin, number: str) -> str:
    name = str(lib_pin.name.value)
    return name if name and name != "~" else number


def _extract_nets(sch: SkipSchematic, unit_pins, hier_labels=()) -> list[NetRecord]:
    uf = _UnionFind()
    pin_at_coord: dict[tuple[float, float], list[PinConnection]] = {}
    label_at_coord: dict[tuple[float, float], str] = {}
    power_names: set[str] = set()

    for sym in _collection(sch, "symbol"):
        if sym.is_power:
            value = sym.property.Value.value
            if value == "PWR_FLAG":
                continue
            coord = _coord_key(sym.at.value[0], sym.at.value[1])
            uf.find(coord)
            power_names.add(value)
            label_at_coord[coord] = value
            continue
        reference = sym.property.Reference.value
        pins = _pins_for(unit_pins, sym.lib_id.value, sym.unit.value)
        for number, lib_pin in pins.items():
            coord = _pin_location(sym, lib_pin)
            uf.find(coord)
            pin_at_coord.setdefault(coord, []).append(
                PinConnection(reference, _pin_name(lib_pin, number), number)
            )

    for wire in _collection(sch, "wire"):
        start = _coord_key(wire.start.value[0], wire.start.value[1])
        end = _coord_key(wire.end.value[0], wire.end.value[1])
        uf.union(start, end)

    for kind in ("label", "global_label"):
        for label in _collection(sch, kind):
            coord = _coord_key(label.at.value[0], label.at.value[1])
            uf.find(coord)
            label_at_coord[coord] = label.value

    for name, x, y in hier_labels:
        coord = _coord_key(x, y)
        uf.find(coord)
        label_at_coord[coord] = name

    by_name: dict[str, list[tuple[float, float]]] = {}
    for coord, name in label_at_coord.items():
        by_name.setdefault(name, []).append(coord)
    for coords in by_name.values():
        for coord in coords[1:]:
            uf.union(coords[0], coord)

    nets = []
    for coords in uf.groups().values():
        connections = []
        name = None
        is_power = False
        for coord in coords:
            connections.extend(pin_at_coord.get(coord, []))
            if coord in label_at_coord:
                name = label_at_coord[coord]
                is_power = is_power or name in power_names
        if connections:
            nets.append(NetRecord(name=name, connections=connections, is_power=is_power))
    return nets
