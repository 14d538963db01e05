"""Board document merge.

A board regenerated from code is merged into the ``.kicad_pcb`` already on
disk instead of overwriting it, so tracks, zones and other edits made in
KiCad survive. Footprints are matched by UUID: matched ones are updated in
place, new ones are built from their footprint template, and footprints that
no longer exist in the build are dropped. Groups and net declarations are
regenerated on every run; everything else is kept as it was.
"""

from __future__ import annotations

import copy
import logging
import os
import tempfile
import uuid as uuid_module
from dataclasses import dataclass, field
from pathlib import Path

from kicad_circuit import sexpr
from kicad_circuit.models import Placement, PropertyDescriptor
from kicad_circuit.sexpr import sym

logger = logging.getLogger(__name__)

GENERATOR = "kicad_circuit"
BOARD_VERSION = 20240108
ENTITY_HEADS = ("footprint", "module")
HEADER_HEADS = (
    "version", "generator", "generator_version", "general", "paper",
    "title_block", "layers", "setup", "property",
)
_GROUP_NAMESPACE = uuid_module.uuid5(uuid_module.NAMESPACE_URL, "kicad_circuit/group")
_PROPERTY_NAMESPACE = uuid_module.uuid5(uuid_module.NAMESPACE_URL, "kicad_circuit/property")
# Library-file keys that are not valid inside a board footprint.
_TEMPLATE_ONLY = ("version", "generator", "generator_version", "uuid", "tstamp", "tedit", "at")


class DocumentError(RuntimeError):
    pass


class DocumentLockedError(DocumentError):
    pass


@dataclass
class BoardEntity:
    uuid: str
    reference: str
    footprint: str
    placement: Placement = field(default_factory=Placement)
    properties: list[PropertyDescriptor] = field(default_factory=list)
    dnp: bool = False
    pad_nets: dict[str, tuple[int, str]] | None = None
    template: list | None = None


@dataclass
class EntityGroup:
    name: str
    members: list[str]

    @property
    def uuid(self) -> str:
        return str(uuid_module.uuid5(_GROUP_NAMESPACE, self.name))


def empty_board() -> list:
    return sexpr.parse(
        f'(kicad_pcb (version {BOARD_VERSION}) (generator "{GENERATOR}") '
        '(generator_version "1.0") (general (thickness 1.6) (legacy_teardrops no)) '
        '(paper "A4"))'
    )


def load_board(text: str | None) -> list:
    if text is None or not text.strip():
        return empty_board()
    try:
        tree = sexpr.parse(text)
    except Exception as exc:  # sexpdata raises several unrelated exception types
        logger.warning("existing board could not be parsed (%s); starting from an empty board", exc)
        return empty_board()
    if sexpr.head(tree) != "kicad_pcb":
        logger.warning("existing document is not a kicad_pcb; starting from an empty board")
        return empty_board()
    return tree


def lock_path(path: str | Path) -> Path:
    path = Path(path)
    return path.with_name(f"~{path.name}.lck")


def merge_board(
    existing: str | None,
    entities: list[BoardEntity],
    groups: list[EntityGroup] = (),
    nets: list[tuple[int, str]] | None = None,
) -> list:
    tree = load_board(existing)

    indexed: dict[str, list] = {}
    for node in tree[1:]:
        if sexpr.head(node) in ENTITY_HEADS:
            node_id = sexpr.node_uuid(node)
            if node_id is not None:
                indexed[node_id] = node

    claimed: set[int] = set()
    fresh: list[list] = []
    for entity in entities:
        node = indexed.get(entity.uuid)
        if node is not None:
            update_entity(node, entity)
            claimed.add(id(node))
        else:
            fresh.append(build_entity(entity))

    dropped = 0
    kept = [tree[0]]
    for node in tree[1:]:
        if sexpr.head(node) in ENTITY_HEADS and id(node) not in claimed:
            dropped += 1
            continue
        kept.append(node)
    tree[:] = kept

    insert_at = len(tree)
    for i, node in enumerate(tree):
        if i and sexpr.head(node) in ENTITY_HEADS:
            insert_at = i + 1
    tree[insert_at:insert_at] = fresh

    _replace_nets(tree, nets)
    known = set(indexed) | {entity.uuid for entity in entities}
    _replace_groups(tree, groups, known)

    logger.info(
        "board merge: %d updated, %d added, %d removed",
        len(claimed), len(fresh), dropped,
    )
    return tree


def build_entity(entity: BoardEntity) -> list:
    if entity.template is None:
        raise DocumentError(f"no footprint template for {entity.reference} ({entity.footprint or 'no footprint'})")
    node = copy.deepcopy(entity.template)
    node[0] = sym("footprint")
    for name in _TEMPLATE_ONLY:
        sexpr.remove(node, name)
    if sexpr.find(node, "layer") is None:
        node.insert(2, [sym("layer"), "F.Cu"])
    update_entity(node, entity, previous_rotation=0)
    return node


def update_entity(node: list, entity: BoardEntity, previous_rotation: float | None = None) -> None:
    if previous_rotation is None:
        previous_rotation = _rotation(node)
    node[0] = sym("footprint")
    if len(node) > 1 and not isinstance(node[1], list):
        node[1] = entity.footprint
    else:
        node.insert(1, entity.footprint)

    sexpr.remove(node, "tstamp")
    sexpr.set_child(node, "uuid", entity.uuid, after=("layer",))
    place = entity.placement
    sexpr.set_child(
        node, "at", sexpr.num(place.x), sexpr.num(place.y), sexpr.num(place.rotation),
        after=("layer", "uuid"),
    )
    _rotate_pads(node, place.rotation - previous_rotation)
    _apply_properties(node, entity)
    _apply_dnp(node, entity.dnp)
    if entity.pad_nets is not None:
        _apply_pad_nets(node, entity.pad_nets)


def _rotation(node: list) -> float:
    at = sexpr.find(node, "at")
    if at is not None and len(at) > 3:
        return float(at[3])
    return 0


def _rotate_pads(node: list, delta: float) -> None:
    if not delta % 360:
        return
    for pad in sexpr.children(node, "pad"):
        at = sexpr.find(pad, "at")
        if at is None:
            continue
        angle = float(at[3]) if len(at) > 3 else 0
        at[3:] = [sexpr.num((angle + delta) % 360)]


def _apply_properties(node: list, entity: BoardEntity) -> None:
    # Older footprints carry reference and value as fp_text instead of properties.
    legacy = {}
    for text in sexpr.children(node, "fp_text"):
        if len(text) > 2:
            legacy[str(text[1]).lower()] = text

    for prop in entity.properties:
        text = legacy.get(prop.name.lower())
        if text is not None:
            text[2] = prop.value
            continue
        existing = None
        for child in sexpr.children(node, "property"):
            if len(child) > 2 and child[1] == prop.name:
                existing = child
                break
        if existing is not None:
            existing[2] = prop.value
        else:
            node.append(_property_node(entity, prop))


def _property_node(entity: BoardEntity, prop: PropertyDescriptor) -> list:
    prop_id = uuid_module.uuid5(_PROPERTY_NAMESPACE, f"{entity.uuid}/{prop.name}")
    node = [
        sym("property"), prop.name, prop.value,
        [sym("at"), 0, 0, 0],
        [sym("layer"), "F.Fab"],
    ]
    if prop.hidden:
        node.append([sym("hide"), sym("yes")])
    node.append([sym("uuid"), str(prop_id)])
    node.append([sym("effects"), [sym("font"), [sym("size"), 1, 1], [sym("thickness"), 0.15]]])
    return node


def _apply_dnp(node: list, dnp: bool) -> None:
    attr = sexpr.find(node, "attr")
    if attr is None:
        if dnp:
            sexpr.set_child(node, "attr", sym("dnp"), after=("at", "property", "layer"))
        return
    flags = [flag for flag in attr[1:] if str(flag) != "dnp"]
    if dnp:
        flags.append(sym("dnp"))
    attr[1:] = flags


def _apply_pad_nets(node: list, pad_nets: dict[str, tuple[int, str]]) -> None:
    for pad in sexpr.children(node, "pad"):
        if len(pad) < 2:
            continue
        number = str(pad[1])
        assignment = pad_nets.get(number)
        if assignment is None:
            sexpr.remove(pad, "net")
            continue
        code, name = assignment
        net_node = [sym("net"), code, name]
        index = sexpr.index_of(pad, "net")
        if index is not None:
            pad[index] = net_node
            continue
        uuid_index = sexpr.index_of(pad, "uuid") or sexpr.index_of(pad, "tstamp")
        if uuid_index is None:
            pad.append(net_node)
        else:
            pad.insert(uuid_index, net_node)


def _replace_nets(tree: list, nets: list[tuple[int, str]] | None) -> None:
    if nets is None:
        return
    position = sexpr.index_of(tree, "net")
    sexpr.remove(tree, "net")
    if not nets:
        return
    if position is None:
        position = 1
        for i, node in enumerate(tree):
            if i and sexpr.head(node) in HEADER_HEADS:
                position = i + 1
    declarations = [[sym("net"), 0, ""]] + [[sym("net"), code, name] for code, name in nets]
    tree[position:position] = declarations


def _replace_groups(tree: list, groups: list[EntityGroup], known: set[str]) -> None:
    names = {group.name for group in groups}
    kept = [tree[0]]
    for node in tree[1:]:
        if sexpr.head(node) == "group" and _is_stale_group(node, names, known):
            continue
        kept.append(node)
    tree[:] = kept
    for group in groups:
        tree.append([
            sym("group"), group.name,
            [sym("uuid"), group.uuid],
            [sym("members"), *group.members],
        ])


def _is_stale_group(node: list, names: set[str], known: set[str]) -> bool:
    if len(node) > 1 and not isinstance(node[1], list) and str(node[1]) in names:
        return True
    members = sexpr.find(node, "members")
    if members is None:
        return False
    return any(str(member) in known for member in members[1:])


def write_board(
    path: str | Path,
    entities: list[BoardEntity],
    groups: list[EntityGroup] = (),
    nets: list[tuple[int, str]] | None = None,
) -> Path:
    path = Path(path)
    lock = lock_path(path)
    if lock.exists():
        raise DocumentLockedError(f"{path} is open in KiCad ({lock} exists); close it and run again")

    missing = [entity.reference for entity in entities if entity.template is None]
    if missing:
        raise DocumentError(f"no footprint template for {', '.join(missing)}; {path} not written")

    existing = path.read_text(encoding="utf-8") if path.exists() else None
    text = sexpr.format_document(merge_board(existing, entities, groups, nets))

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        os.unlink(tmp_name)
        raise
    logger.info("wrote %s", path)
    return path
