"""Symbol and footprint lookup.

Project directories are searched before the KiCad install. Symbols come from
``<Lib>.kicad_sym`` files and footprints from ``<Lib>.pretty/<Name>.kicad_mod``
(or a flat ``footprints/<Name>.kicad_mod`` for parts downloaded into the
project).
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path

from kicad_circuit import sexpr
from kicad_circuit.models import PinType
from kicad_circuit.sexpr import sym

logger = logging.getLogger(__name__)

DEFAULT_PATHS = ("lib", "build/lib")


class LibraryError(LookupError):
    pass


@dataclass
class LibPin:
    number: str
    name: str
    type: PinType
    x: float
    y: float
    angle: float = 0


@dataclass
class SymbolDefinition:
    lib_id: str
    node: list
    pins: list[LibPin] = field(default_factory=list)
    properties: dict[str, str] = field(default_factory=dict)

    def pin(self, number: int | str) -> LibPin | None:
        for lib_pin in self.pins:
            if lib_pin.number == str(number):
                return lib_pin
        return None

    def pin_types(self) -> dict[str, PinType]:
        return {lib_pin.number: lib_pin.type for lib_pin in self.pins}

    @property
    def reference_prefix(self) -> str:
        return self.properties.get("Reference", "").rstrip("?") or "U"


def split_lib_id(lib_id: str) -> tuple[str, str]:
    library, sep, name = (lib_id or "").partition(":")
    if not sep or not library or not name:
        raise LibraryError(f"lib id {lib_id!r} is not of the form Library:Name")
    return library, name


def _pin_type(value) -> PinType:
    try:
        return PinType(str(value))
    except ValueError:
        return PinType.UNSPECIFIED


def _collect_pins(node: list) -> list[LibPin]:
    pins: list[LibPin] = []
    seen = set()
    units = [node, *sexpr.children(node, "symbol")]
    for unit in units:
        for pin in sexpr.children(unit, "pin"):
            number = sexpr.find(pin, "number")
            if number is None or len(number) < 2:
                continue
            key = str(number[1])
            if key in seen:
                continue
            seen.add(key)
            name = sexpr.find(pin, "name")
            at = sexpr.find(pin, "at") or [sym("at"), 0, 0]
            pins.append(LibPin(
                number=key,
                name=str(name[1]) if name is not None and len(name) > 1 else "",
                type=_pin_type(pin[1]) if len(pin) > 1 else PinType.UNSPECIFIED,
                x=float(at[1]),
                y=float(at[2]),
                angle=float(at[3]) if len(at) > 3 else 0,
            ))
    return pins


def _properties(node: list) -> dict[str, str]:
    return {
        str(prop[1]): str(prop[2])
        for prop in sexpr.children(node, "property")
        if len(prop) > 2
    }


class Library:
    def __init__(self, paths: list[str | Path] | None = None, share_dir: str | Path | None = None):
        self.paths = [Path(p) for p in (DEFAULT_PATHS if paths is None else paths)]
        self.share_dir = Path(share_dir) if share_dir else None
        self._symbol_files: dict[Path, list] = {}
        self._symbols: dict[str, SymbolDefinition] = {}
        self._footprints: dict[str, list] = {}

    def _symbol_candidates(self, library: str) -> list[Path]:
        candidates = [path / f"{library}.kicad_sym" for path in self.paths]
        if self.share_dir is not None:
            candidates.append(self.share_dir / "symbols" / f"{library}.kicad_sym")
        return candidates

    def _footprint_candidates(self, library: str, name: str) -> list[Path]:
        candidates = []
        for path in self.paths:
            candidates.append(path / f"{library}.pretty" / f"{name}.kicad_mod")
            candidates.append(path / "footprints" / f"{name}.kicad_mod")
        if self.share_dir is not None:
            candidates.append(self.share_dir / "footprints" / f"{library}.pretty" / f"{name}.kicad_mod")
        return candidates

    def _load_symbol_file(self, path: Path) -> list:
        tree = self._symbol_files.get(path)
        if tree is None:
            tree = sexpr.parse(path.read_text(encoding="utf-8"))
            self._symbol_files[path] = tree
        return tree

    def _find_symbol_node(self, library: str, name: str) -> list | None:
        for candidate in self._symbol_candidates(library):
            if not candidate.is_file():
                continue
            tree = self._load_symbol_file(candidate)
            for node in sexpr.children(tree, "symbol"):
                if len(node) > 1 and str(node[1]) == name:
                    return node
        return None

    def symbol(self, lib_id: str) -> SymbolDefinition:
        cached = self._symbols.get(lib_id)
        if cached is not None:
            return cached

        library, name = split_lib_id(lib_id)
        found = self._find_symbol_node(library, name)
        if found is None:
            searched = ", ".join(str(p) for p in self._symbol_candidates(library))
            raise LibraryError(f"symbol {lib_id} not found (searched {searched})")

        node = copy.deepcopy(found)
        properties = _properties(node)
        extends = sexpr.find(node, "extends")
        if extends is not None:
            parent = self.symbol(f"{library}:{extends[1]}")
            node = _derive(parent, node, str(extends[1]), name)
            properties = {**parent.properties, **properties}
        node[1] = lib_id

        definition = SymbolDefinition(lib_id, node, _collect_pins(node), properties)
        self._symbols[lib_id] = definition
        logger.debug("loaded symbol %s (%d pins)", lib_id, len(definition.pins))
        return definition

    def footprint(self, lib_id: str) -> list:
        cached = self._footprints.get(lib_id)
        if cached is None:
            library, name = split_lib_id(lib_id)
            candidates = self._footprint_candidates(library, name)
            for candidate in candidates:
                if candidate.is_file():
                    cached = sexpr.parse(candidate.read_text(encoding="utf-8"))
                    break
            else:
                searched = ", ".join(str(p) for p in candidates)
                raise LibraryError(f"footprint {lib_id} not found (searched {searched})")
            if sexpr.head(cached) == "module":
                cached[0] = sym("footprint")
            self._footprints[lib_id] = cached
        return copy.deepcopy(cached)


def _derive(parent: SymbolDefinition, child: list, parent_name: str, name: str) -> list:
    """Build a standalone symbol from a derived one and its resolved parent."""
    node = copy.deepcopy(parent.node)
    overrides = {str(p[1]): p for p in sexpr.children(child, "property") if len(p) > 1}
    for index, existing in enumerate(node):
        if sexpr.head(existing) == "property" and str(existing[1]) in overrides:
            node[index] = overrides.pop(str(existing[1]))
    position = sexpr.index_of(node, "symbol") or len(node)
    node[position:position] = list(overrides.values())
    for unit in sexpr.children(node, "symbol"):
        unit_name = str(unit[1])
        if unit_name.startswith(parent_name + "_"):
            unit[1] = name + unit_name[len(parent_name):]
    return node
