from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from kicad_circuit.component import Component
from kicad_circuit.config import Config, find_kicad
from kicad_circuit.document import BoardEntity, EntityGroup, write_board
from kicad_circuit.library import Library, LibraryError
from kicad_circuit.netlist import Net

logger = logging.getLogger(__name__)


def net_table(nets: Iterable[Net]) -> tuple[list[tuple[int, str]], dict[str, dict[str, tuple[int, str]]]]:
    """Number nets from 1 and map each component pad to its ``(code, name)``."""
    codes: list[tuple[int, str]] = []
    pads: dict[str, dict[str, tuple[int, str]]] = {}
    for code, net in enumerate(nets, start=1):
        codes.append((code, net.name))
        for pin in net.pins:
            if pin.is_boundary:
                continue
            pads.setdefault(pin.reference, {})[str(pin.number)] = (code, net.name)
    return codes, pads


class PCB:
    """A board fed from components; existing layout work is merged, not overwritten."""

    def __init__(self, name: str, library: Library | None = None, build_dir: str | Path = "build"):
        self.name = name
        self.build_dir = Path(build_dir)
        self.components: list[Component] = []
        self._groups: list[tuple[str, list[Component]]] = []
        self._library = library

    @property
    def library(self) -> Library:
        if self._library is None:
            self._library = Library(share_dir=find_kicad(Config()).share_dir)
        return self._library

    @property
    def path(self) -> Path:
        return self.build_dir / f"{self.name}.kicad_pcb"

    def place(self, *components: Component) -> None:
        for component in components:
            if not component.footprint:
                logger.warning("%s has no footprint", component.reference)
            if not any(existing is component for existing in self.components):
                self.components.append(component)

    def group(self, name: str, *components: Component) -> None:
        self.place(*components)
        self._groups.append((name, list(components)))

    def _template(self, component: Component) -> list | None:
        if not component.footprint:
            return None
        try:
            return self.library.footprint(component.footprint)
        except LibraryError as exc:
            logger.error("%s: %s", component.reference, exc)
            return None

    def entities(self, pad_nets: dict[str, dict[str, tuple[int, str]]] | None = None) -> list[BoardEntity]:
        return [
            BoardEntity(
                uuid=component.uuid,
                reference=component.reference,
                footprint=component.footprint,
                placement=component.placement,
                properties=component.properties(),
                dnp=component.dnp,
                pad_nets=None if pad_nets is None else pad_nets.get(component.reference, {}),
                template=self._template(component),
            )
            for component in self.components
        ]

    def entity_groups(self) -> list[EntityGroup]:
        groups = [EntityGroup(name, [c.uuid for c in members]) for name, members in self._groups]
        grouped = {c.uuid for _name, members in self._groups for c in members}
        board_members = [c.uuid for c in self.components if c.uuid not in grouped]
        board_members.extend(group.uuid for group in groups)
        groups.append(EntityGroup(self.name, board_members))
        return groups

    def create(self, nets: Iterable[Net] | None = None) -> Path:
        """Write or update the board.

        With ``nets`` the pad nets and net declarations are regenerated; without
        them the ones already in the file are left alone.
        """
        codes = pad_nets = None
        if nets is not None:
            codes, pad_nets = net_table(nets)
        return write_board(self.path, self.entities(pad_nets), self.entity_groups(), codes)
