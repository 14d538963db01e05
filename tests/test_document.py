import logging
import os

import pytest

from kicad_circuit import sexpr
from kicad_circuit.document import (
    BoardEntity,
    DocumentError,
    DocumentLockedError,
    EntityGroup,
    lock_path,
    merge_board,
    write_board,
)
from kicad_circuit.library import Library
from kicad_circuit.models import Placement, PropertyDescriptor

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")

EXISTING = """\
(kicad_pcb (version 20240108) (generator "pcbnew")
  (general (thickness 1.6))
  (layers (0 "F.Cu" signal) (31 "B.Cu" signal))
  (net 0 "")
  (net 1 "old")
  (footprint "Resistor_SMD:R_0603_1608Metric" (layer "F.Cu") (uuid "keep")
    (at 10 20 0)
    (property "Reference" "R1" (at 0 -1.43 0) (layer "F.SilkS"))
    (pad "1" smd roundrect (at -0.825 0) (size 0.8 0.95) (net 1 "old") (uuid "p1"))
  )
  (footprint "Resistor_SMD:R_0603_1608Metric" (layer "F.Cu") (uuid "gone")
    (at 30 20 0)
  )
  (module LED_0603 (layer F.Cu) (at 5 5))
  (segment (start 10 20) (end 30 20) (width 0.25) (layer "F.Cu") (net 1) (uuid "track"))
  (group "old" (uuid "g1") (members "gone" "keep"))
  (group "user" (uuid "g2") (members "track"))
)
"""


@pytest.fixture
def library():
    return Library(paths=[FIXTURES])


def _entity(library, uuid="keep", reference="R1", footprint="Resistor_SMD:R_0603_1608Metric", **kwargs):
    kwargs.setdefault("placement", Placement(10, 20, 0))
    kwargs.setdefault("properties", [PropertyDescriptor("Reference", reference, hidden=False)])
    return BoardEntity(uuid=uuid, reference=reference, footprint=footprint,
                       template=library.footprint(footprint), **kwargs)


def _entities(tree):
    return [node for node in tree[1:] if sexpr.head(node) in ("footprint", "module")]


def test_matched_entity_updated_in_place(library):
    entity = _entity(library, placement=Placement(12.5, 20, 0))
    tree = merge_board(EXISTING, [entity])
    (node,) = _entities(tree)
    assert sexpr.node_uuid(node) == "keep"
    assert sexpr.find(node, "at") == [sexpr.sym("at"), 12.5, 20, 0]


def test_unmatched_and_untagged_nodes_dropped(library, caplog):
    with caplog.at_level(logging.INFO, logger="kicad_circuit.document"):
        tree = merge_board(EXISTING, [_entity(library)])
    uuids = [sexpr.node_uuid(node) for node in _entities(tree)]
    assert uuids == ["keep"]
    assert "1 updated, 0 added, 2 removed" in caplog.text


def test_foreign_content_preserved_in_order(library):
    tree = merge_board(EXISTING, [_entity(library)])
    heads = [sexpr.head(node) for node in tree[1:]]
    assert heads.index("layers") < heads.index("footprint") < heads.index("segment")
    segment = sexpr.find(tree, "segment")
    assert sexpr.node_uuid(segment) == "track"


def test_new_entity_built_from_template(library):
    new = _entity(library, uuid="new", reference="R2", placement=Placement(40, 20, 90))
    tree = merge_board(EXISTING, [_entity(library), new])
    nodes = _entities(tree)
    assert [sexpr.node_uuid(n) for n in nodes] == ["keep", "new"]
    built = nodes[1]
    assert built[1] == "Resistor_SMD:R_0603_1608Metric"
    assert sexpr.find(built, "version") is None
    refs = [p[2] for p in sexpr.children(built, "property") if p[1] == "Reference"]
    assert refs == ["R2"]
    pad_angles = [sexpr.find(pad, "at")[3] for pad in sexpr.children(built, "pad")]
    assert pad_angles == [90, 90]


def test_new_entity_inserted_after_last_entity(library):
    tree = merge_board(EXISTING, [_entity(library), _entity(library, uuid="new", reference="R2")])
    heads = [sexpr.head(node) for node in tree[1:]]
    footprints = [i for i, h in enumerate(heads) if h == "footprint"]
    assert footprints == [footprints[0], footprints[0] + 1]
    assert heads.index("segment") > footprints[1]


def test_legacy_module_template(library):
    led = _entity(library, uuid="d1", reference="D1", footprint="LED_SMD:LED_0603",
                  properties=[PropertyDescriptor("Reference", "D1"), PropertyDescriptor("Value", "red")])
    tree = merge_board(None, [led])
    (node,) = _entities(tree)
    assert sexpr.head(node) == "footprint"
    assert sexpr.find(node, "tedit") is None
    texts = {str(t[1]): t[2] for t in sexpr.children(node, "fp_text")}
    assert texts == {"reference": "D1", "value": "red"}
    assert list(sexpr.children(node, "property")) == []


def test_rotation_change_rotates_pads_by_delta(library):
    first = merge_board(None, [_entity(library, placement=Placement(0, 0, 90))])
    text = sexpr.format_document(first)
    second = merge_board(text, [_entity(library, placement=Placement(0, 0, 180))])
    (node,) = _entities(second)
    assert [sexpr.find(pad, "at")[3] for pad in sexpr.children(node, "pad")] == [180, 180]


def test_dnp_attribute_toggles(library):
    tree = merge_board(None, [_entity(library, dnp=True)])
    (node,) = _entities(tree)
    assert sexpr.words(sexpr.find(node, "attr")) == ["smd", "dnp"]
    tree = merge_board(sexpr.format_document(tree), [_entity(library, dnp=False)])
    (node,) = _entities(tree)
    assert sexpr.words(sexpr.find(node, "attr")) == ["smd"]


def test_dnp_remerge_is_stable(library):
    once = sexpr.format_document(merge_board(None, [_entity(library, dnp=True)]))
    twice = sexpr.format_document(merge_board(once, [_entity(library, dnp=True)]))
    assert twice == once
    (node,) = _entities(sexpr.parse(twice))
    assert sexpr.words(sexpr.find(node, "attr")).count("dnp") == 1


def test_pad_nets_and_declarations(library):
    entity = _entity(library, pad_nets={"1": (1, "vcc"), "2": (2, "gnd")})
    tree = merge_board(EXISTING, [entity], nets=[(1, "vcc"), (2, "gnd")])
    declared = [(n[1], n[2]) for n in sexpr.children(tree, "net")]
    assert declared == [(0, ""), (1, "vcc"), (2, "gnd")]
    (node,) = _entities(tree)
    pads = {pad[1]: sexpr.find(pad, "net") for pad in sexpr.children(node, "pad")}
    assert pads["1"] == [sexpr.sym("net"), 1, "vcc"]


def test_nets_none_leaves_declarations(library):
    tree = merge_board(EXISTING, [_entity(library)])
    assert [n[2] for n in sexpr.children(tree, "net")] == ["", "old"]
    (node,) = _entities(tree)
    pad = next(sexpr.children(node, "pad"))
    assert sexpr.find(pad, "net") == [sexpr.sym("net"), 1, "old"]


def test_groups_regenerated(library):
    group = EntityGroup("board", ["keep"])
    tree = merge_board(EXISTING, [_entity(library)], groups=[group])
    groups = list(sexpr.children(tree, "group"))
    assert [g[1] for g in groups] == ["user", "board"]
    assert sexpr.node_uuid(groups[1]) == group.uuid
    assert sexpr.find(groups[1], "members")[1:] == ["keep"]


def test_group_uuid_deterministic():
    assert EntityGroup("board", []).uuid == EntityGroup("board", ["x"]).uuid
    assert EntityGroup("board", []).uuid != EntityGroup("other", []).uuid


def test_merge_is_idempotent(library):
    entities = [
        _entity(library, placement=Placement(10, 20, 45), pad_nets={"1": (1, "a")}),
        _entity(library, uuid="new", reference="R2", placement=Placement(40, 20, 90)),
    ]
    groups = [EntityGroup("board", ["keep", "new"])]
    nets = [(1, "a")]
    once = sexpr.format_document(merge_board(EXISTING, entities, groups, nets))
    twice = sexpr.format_document(merge_board(once, entities, groups, nets))
    assert once == twice


def test_unparsable_board_starts_empty(library, caplog):
    with caplog.at_level(logging.WARNING, logger="kicad_circuit.document"):
        tree = merge_board("(kicad_pcb (version", [_entity(library)])
    assert sexpr.head(tree) == "kicad_pcb"
    assert len(_entities(tree)) == 1
    assert "could not be parsed" in caplog.text


def test_wrong_root_starts_empty(library, caplog):
    with caplog.at_level(logging.WARNING, logger="kicad_circuit.document"):
        tree = merge_board("(kicad_sch (version 1))", [_entity(library)])
    assert sexpr.head(tree) == "kicad_pcb"
    assert "not a kicad_pcb" in caplog.text


def test_write_board_roundtrip(tmp_path, library):
    path = tmp_path / "board.kicad_pcb"
    entities = [_entity(library)]
    write_board(path, entities, [EntityGroup("board", ["keep"])])
    first = path.read_text()
    write_board(path, entities, [EntityGroup("board", ["keep"])])
    assert path.read_text() == first
    assert [p.name for p in tmp_path.iterdir()] == ["board.kicad_pcb"]


def test_write_board_refuses_when_locked(tmp_path, library):
    path = tmp_path / "board.kicad_pcb"
    path.write_text(EXISTING)
    lock_path(path).write_text("")
    with pytest.raises(DocumentLockedError):
        write_board(path, [_entity(library)])
    assert path.read_text() == EXISTING


def test_write_board_requires_templates(tmp_path):
    path = tmp_path / "board.kicad_pcb"
    entity = BoardEntity(uuid="x", reference="R9", footprint="Missing:Nope")
    with pytest.raises(DocumentError, match="R9"):
        write_board(path, [entity])
    assert not path.exists()


def test_lock_path():
    assert lock_path("/tmp/build/board.kicad_pcb").name == "~board.kicad_pcb.lck"
