"""Schematic build contexts.

A ``Schematic`` collects components and connections and writes one
``.kicad_sch`` file. Connectivity is carried by net labels placed on every
connected pin rather than by wires, so the layout of the sheet does not
matter to KiCad.
"""

from __future__ import annotations

import copy
import logging
import math
import sys
import uuid as uuid_module
from pathlib import Path

from kicad_circuit import erc, sexpr
from kicad_circuit.component import Component
from kicad_circuit.config import Config, find_kicad
from kicad_circuit.kicad_cli import KicadCli
from kicad_circuit.library import Library, LibraryError, SymbolDefinition
from kicad_circuit.models import Pin
from kicad_circuit.netlist import NetBuilder, NetlistError
from kicad_circuit.references import ReferenceCounter
from kicad_circuit.sexpr import num, sym

logger = logging.getLogger(__name__)

GENERATOR = "kicad_circuit"
SCHEMATIC_VERSION = 20231120
GRID = 2.54
GRID_ORIGIN = 25.4
GRID_PITCH = 25.4
GRID_COLUMNS = 6
SHEET_X = 177.8
SHEET_WIDTH = 20.32

_SCHEMATIC_NAMESPACE = uuid_module.uuid5(uuid_module.NAMESPACE_URL, "kicad_circuit/schematic")


def snap(value: float) -> int | float:
    """Round up to the 2.54 mm connection grid."""
    return num(GRID * math.ceil(round(value / GRID, 6)))


def _effects(*justify: str, hide: bool = False) -> list:
    node = [sym("effects"), [sym("font"), [sym("size"), 1.27, 1.27]]]
    if justify:
        node.append([sym("justify"), *(sym(j) for j in justify)])
    if hide:
        node.append([sym("hide"), sym("yes")])
    return node


def _label_orientation(angle: float) -> tuple[int, tuple[str, ...]]:
    angle = angle % 360
    if angle == 0:
        return 0, ("right", "bottom")
    if angle == 90:
        return 0, ("right", "top")
    if angle == 270:
        return 180, ()
    return 0, ()


class Schematic:
    def __init__(
        self,
        name: str,
        references: ReferenceCounter | None = None,
        library: Library | None = None,
        build_dir: str | Path = "build",
        net_prefix: str = "net",
        cli: KicadCli | None = None,
    ):
        self.name = name
        self.references = references if references is not None else ReferenceCounter()
        self.build_dir = Path(build_dir)
        self.builder = NetBuilder(net_prefix)
        self.parent: Schematic | None = None
        self.uuid = str(uuid_module.uuid5(_SCHEMATIC_NAMESPACE, name))
        self.components: list[Component] = []
        self.sheets: list[Sheet] = []
        self._library = library
        self._cli = cli
        self._no_connects: list[Pin] = []
        self._hier: dict[tuple, tuple[str, str]] = {}
        self._sheet_slots = 0

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"

    @property
    def library(self) -> Library:
        if self._library is None:
            self._library = Library(share_dir=find_kicad(Config()).share_dir)
        return self._library

    @property
    def cli(self) -> KicadCli:
        if self._cli is None:
            self._cli = KicadCli(find_kicad(Config()).cli_path)
        return self._cli

    @property
    def root(self) -> Schematic:
        return self if self.parent is None else self.parent.root

    @property
    def instance_path(self) -> str:
        if self.parent is None:
            return f"/{self.uuid}"
        return f"{self.parent.instance_path}/{self.uuid}"

    @property
    def path(self) -> Path:
        return self.build_dir / f"{self.name}.kicad_sch"

    def _definition(self, lib_id: str) -> SymbolDefinition | None:
        if not lib_id:
            return None
        try:
            return self.library.symbol(lib_id)
        except LibraryError as exc:
            logger.warning("%s", exc)
            return None

    def component(self, **fields) -> Component:
        """Create a component registered with this build's allocator.

        Pin types, the designator prefix and the value default to what the
        symbol library says when the symbol can be found.
        """
        definition = self._definition(fields.get("symbol", ""))
        if definition is not None:
            fields.setdefault("prefix", definition.reference_prefix)
            fields.setdefault("value", definition.properties.get("Value", ""))
            fields.setdefault("pin_types", definition.pin_types())
        component = Component(references=self.references, **fields)
        self.add(component)
        return component

    def add(self, *components: Component) -> None:
        for component in components:
            if not any(existing is component for existing in self.components):
                self.components.append(component)

    def net(self, *pins: Pin, name: str | None = None) -> bool:
        try:
            return self.builder.union(*pins, name=name)
        except NetlistError as exc:
            for index, _pin, reason in exc.problems:
                logger.error("net %s: pin #%d is malformed: %s", name or "(unnamed)", index, reason)
            return False

    def dnc(self, *pins: Pin) -> bool:
        try:
            added = self.builder.no_connect(*pins)
        except NetlistError as exc:
            for index, _pin, reason in exc.problems:
                logger.error("no-connect pin #%d is malformed: %s", index, reason)
            return False
        known = {pin.key for pin in self._no_connects}
        self._no_connects.extend(pin for pin in pins if pin.key not in known)
        return added

    def sheet(self, sheet: Sheet) -> None:
        if not any(existing is sheet for existing in self.sheets):
            self.sheets.append(sheet)
            logger.info("sheet %s added to %s", sheet.name, self.name)

    def _uuid(self, *parts: str) -> str:
        return str(uuid_module.uuid5(uuid_module.UUID(self.uuid), "/".join(parts)))

    def _position(self, index: int, component: Component) -> tuple[float, float]:
        if component.at is not None:
            return snap(component.at[0]), snap(component.at[1])
        return (
            snap(GRID_ORIGIN + (index % GRID_COLUMNS) * GRID_PITCH),
            snap(GRID_ORIGIN + (index // GRID_COLUMNS) * GRID_PITCH),
        )

    def create(self, *components: Component) -> Path:
        self.add(*components)

        placed: dict[str, tuple[Component, SymbolDefinition, tuple[float, float]]] = {}
        lib_symbols: dict[str, list] = {}
        symbols = []
        for component in self.components:
            if not component.symbol:
                logger.warning("%s has no symbol; left out of %s", component.reference, self.path)
                continue
            definition = self.library.symbol(component.symbol)
            lib_symbols.setdefault(definition.lib_id, copy.deepcopy(definition.node))
            position = self._position(len(placed), component)
            placed[component.reference] = (component, definition, position)
            symbols.append(self._symbol_node(component, definition, position))

        tree = [
            sym("kicad_sch"),
            [sym("version"), SCHEMATIC_VERSION],
            [sym("generator"), GENERATOR],
            [sym("generator_version"), "1.0"],
            [sym("uuid"), self.uuid],
            [sym("paper"), "A4"],
            [sym("lib_symbols"), *lib_symbols.values()],
            *symbols,
            *self._label_nodes(placed),
            *self._no_connect_nodes(placed),
            *(sheet.sheet_node() for sheet in self.sheets),
        ]
        if self.parent is None:
            tree.append([sym("sheet_instances"), [sym("path"), "/", [sym("page"), "1"]]])

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(sexpr.format_document(tree), encoding="utf-8")
        logger.info("wrote %s (%d symbols, %d nets)", self.path, len(symbols), len(self.builder.nets))
        return self.path

    def _symbol_node(self, component: Component, definition: SymbolDefinition, position) -> list:
        x, y = position
        node = [
            sym("symbol"),
            [sym("lib_id"), definition.lib_id],
            [sym("at"), x, y, 0],
            [sym("unit"), 1],
            [sym("exclude_from_sim"), sym("no")],
            [sym("in_bom"), sym("yes")],
            [sym("on_board"), sym("yes")],
            [sym("dnp"), sym("yes" if component.dnp else "no")],
            [sym("uuid"), component.uuid],
        ]
        for offset, prop in enumerate(component.properties()):
            node.append([
                sym("property"), prop.name, prop.value,
                [sym("at"), num(x + 2 * GRID), num(y - GRID + offset * GRID), 0],
                _effects("left", hide=prop.hidden),
            ])
        for lib_pin in definition.pins:
            node.append([sym("pin"), lib_pin.number, [sym("uuid"), self._uuid(component.uuid, lib_pin.number)]])
        node.append([
            sym("instances"),
            [sym("project"), self.root.name,
             [sym("path"), self.instance_path, [sym("reference"), component.reference], [sym("unit"), 1]]],
        ])
        return node

    def _pin_location(self, pin: Pin, placed) -> tuple[float, float, float] | None:
        entry = placed.get(pin.reference)
        if entry is None:
            logger.error("pin %s belongs to a component that is not in %s", pin.label, self.name)
            return None
        component, definition, (x, y) = entry
        lib_pin = definition.pin(pin.number)
        if lib_pin is None:
            logger.error("pin %s of %s not found", pin.number, component.symbol)
            return None
        return num(x + lib_pin.x), num(y - lib_pin.y), lib_pin.angle

    def _label_nodes(self, placed) -> list[list]:
        nodes = []
        no_connect_keys = {pin.key for pin in self._no_connects}
        for net in self.builder.nets:
            for pin in net.pins:
                if pin.is_boundary:
                    node = self._sheet_pin_label(net.name, pin)
                    if node is not None:
                        nodes.append(node)
                    continue
                if pin.key in no_connect_keys and len(net.pins) == 1:
                    continue
                location = self._pin_location(pin, placed)
                if location is None:
                    continue
                x, y, angle = location
                label_angle, justify = _label_orientation(angle)
                hier = self._hier.get(pin.key)
                if hier is not None:
                    hier_name, shape = hier
                    nodes.append([
                        sym("hierarchical_label"), hier_name,
                        [sym("shape"), sym(shape)],
                        [sym("at"), x, y, label_angle],
                        _effects(*justify),
                        [sym("uuid"), self._uuid("hier", hier_name, pin.label)],
                    ])
                    if hier_name == net.name:
                        continue
                nodes.append([
                    sym("label"), net.name,
                    [sym("at"), x, y, label_angle],
                    _effects(*justify),
                    [sym("uuid"), self._uuid("label", net.name, pin.label)],
                ])
        return nodes

    def _sheet_pin_label(self, net_name: str, pin: Pin) -> list | None:
        for sheet in self.sheets:
            location = sheet.boundary_location(pin)
            if location is not None:
                x, y = location
                return [
                    sym("label"), net_name,
                    [sym("at"), x, y, 180],
                    _effects("right"),
                    [sym("uuid"), self._uuid("label", net_name, pin.label)],
                ]
        logger.error("boundary pin %s does not belong to a sheet of %s", pin.label, self.name)
        return None

    def _no_connect_nodes(self, placed) -> list[list]:
        nodes = []
        for pin in self._no_connects:
            location = self._pin_location(pin, placed)
            if location is None:
                continue
            x, y, _angle = location
            nodes.append([sym("no_connect"), [sym("at"), x, y], [sym("uuid"), self._uuid("nc", pin.label)]])
        return nodes

    def erc(self, fail_hard: bool = True) -> erc.ErcReport:
        report = erc.check(self.builder.finalize())
        for violation in report.errors:
            logger.error("%s: %s", violation.kind, violation.message)
        for violation in report.warnings:
            logger.warning("%s: %s", violation.kind, violation.message)
        logger.info("ERC %s: %d errors, %d warnings", self.name, len(report.errors), len(report.warnings))
        if not report.passed and fail_hard:
            sys.exit(1)
        return report

    def netlist(self) -> bool:
        return self.cli.export_netlist(self.path, self.build_dir / f"{self.name}.net")

    def bom(self) -> bool:
        return self.cli.export_bom(self.path, self.build_dir / f"{self.name}.csv")

    def kicad_erc(self, show_all: bool = False) -> bool:
        """Run KiCad's own ERC on the written file; True when it reports no errors."""
        result = self.cli.run_erc(self.path, self.build_dir / f"{self.name}.json")
        for violation in result.violations:
            if violation.severity == "error":
                logger.error("%s: %s", violation.type, violation.description)
            elif show_all:
                logger.warning("%s: %s", violation.type, violation.description)
        return result.passed

    def verify(self, path: str | Path | None = None) -> list[str]:
        """Compare the builder's nets with the connectivity read back from disk.

        Returns a description of every net that went missing, was split or
        was shorted to another net; an empty list means the file matches.
        """
        from kicad_circuit.reader import read_schematic

        record = read_schematic(path or self.path)
        located: dict[tuple[str, str], int] = {}
        for index, net in enumerate(record.nets):
            for conn in net.connections:
                located[(conn.component_ref, conn.pin_number)] = index

        problems = []
        owners: dict[int, str] = {}
        for net in self.builder.nets:
            keys = [pin.key for pin in net.pins if not pin.is_boundary]
            if not keys:
                continue
            missing = [f"{ref}:{number}" for ref, number in keys if (ref, number) not in located]
            if missing:
                problems.append(f"{net.name}: {', '.join(missing)} not found")
                continue
            found = {located[key] for key in keys}
            if len(found) > 1:
                problems.append(f"{net.name}: split into {len(found)} nets")
            for index in found:
                other = owners.setdefault(index, net.name)
                if other != net.name:
                    problems.append(f"{other} and {net.name} are shorted")
        return problems


class Sheet(Schematic):
    """A hierarchical sheet inside ``parent``, written to its own file.

    The sheet shares the parent's designator allocator. ``hier`` declares a
    boundary pin that the parent connects to through ``pin(name)``.
    """

    def __init__(self, name: str, parent: Schematic, x: float | None = None, y: float | None = None):
        super().__init__(
            name,
            references=parent.references,
            library=parent._library,
            build_dir=parent.build_dir,
            net_prefix=parent.builder.prefix,
            cli=parent._cli,
        )
        self.parent = parent
        self.uuid = str(uuid_module.uuid5(uuid_module.UUID(parent.uuid), name))
        if x is None:
            x = SHEET_X
        if y is None:
            y = GRID_ORIGIN + 2 * GRID_PITCH * parent._sheet_slots
        parent._sheet_slots += 1
        self.x = snap(x)
        self.y = snap(y)
        self._boundary: dict[str, tuple[Pin, str]] = {}

    @property
    def library(self) -> Library:
        if self._library is None:
            self._library = self.parent.library
        return self._library

    @property
    def cli(self) -> KicadCli:
        if self._cli is None:
            self._cli = self.parent.cli
        return self._cli

    def hier(self, name: str, *pins: Pin, shape: str = "passive") -> bool:
        if name not in self._boundary:
            self._boundary[name] = (Pin(None, None, name=f"{self.name}/{name}"), shape)
        for pin in pins:
            if isinstance(pin, Pin):
                self._hier[pin.key] = (name, shape)
        return self.net(*pins, name=name)

    def pin(self, name: str) -> Pin:
        try:
            return self._boundary[name][0]
        except KeyError:
            raise KeyError(f"sheet {self.name} has no boundary pin {name!r}") from None

    def boundary_location(self, pin: Pin) -> tuple[float, float] | None:
        for order, (boundary, _shape) in enumerate(self._boundary.values(), start=1):
            if boundary is pin or boundary.key == pin.key:
                return self.x, num(self.y + order * GRID)
        return None

    def sheet_node(self) -> list:
        height = num((len(self._boundary) + 1) * GRID)
        node = [
            sym("sheet"),
            [sym("at"), self.x, self.y],
            [sym("size"), SHEET_WIDTH, height],
            [sym("fields_autoplaced"), sym("yes")],
            [sym("stroke"), [sym("width"), 0.1524], [sym("type"), sym("solid")]],
            [sym("fill"), [sym("color"), 0, 0, 0, 0]],
            [sym("uuid"), self.uuid],
            [sym("property"), "Sheetname", self.name,
             [sym("at"), self.x, num(self.y - 0.7112), 0], _effects("left", "bottom")],
            [sym("property"), "Sheetfile", f"{self.name}.kicad_sch",
             [sym("at"), self.x, num(self.y + height + 0.5888), 0], _effects("left", "top", hide=True)],
        ]
        for order, (name, (boundary, shape)) in enumerate(self._boundary.items(), start=1):
            node.append([
                sym("pin"), name, sym(shape),
                [sym("at"), self.x, num(self.y + order * GRID), 180],
                _effects("left"),
                [sym("uuid"), self._uuid("pin", name)],
            ])
        page = str(self.parent.sheets.index(self) + 2) if self in self.parent.sheets else "2"
        node.append([
            sym("instances"),
            [sym("project"), self.root.name, [sym("path"), self.parent.instance_path, [sym("page"), page]]],
        ])
        return node

    def create(self, *components: Component) -> Path:
        self.parent.sheet(self)
        return super().create(*components)
