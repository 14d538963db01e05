from __future__ import annotations

from kicad_circuit.kicad_cli import CliViolation
from kicad_circuit.models import NetRecord, PartRecord, PinConnection, SchematicRecord


def format_netlist(schematic: SchematicRecord, components_filter: set[str] | None = None) -> str:
    pin_to_nets = _build_pin_index(schematic.nets)

    lines = []
    for comp in schematic.components:
        if components_filter and comp.reference not in components_filter:
            continue
        lines.append(_format_component_header(comp))
        for pin_name, net, peers in _get_component_pins(comp.reference, pin_to_nets):
            lines.append(_format_pin_line(pin_name, net, peers))
        lines.append("")

    return "\n".join(lines).rstrip("\n") + "\n"


def format_summary(schematic: SchematicRecord) -> str:
    refs = sorted(c.reference for c in schematic.components)
    net_names = sorted(n.name for n in schematic.nets if n.name)
    lines = [
        f"Components: {len(schematic.components)}",
        f"Nets: {len(schematic.nets)}",
        "",
        "References: " + ", ".join(refs),
        "",
        "Named nets: " + ", ".join(net_names) if net_names else "Named nets: (none)",
    ]
    return "\n".join(lines) + "\n"


def format_bom(schematic: SchematicRecord) -> str:
    """One row per distinct value and footprint, with the references that use it."""
    rows: dict[tuple[str, str], list[str]] = {}
    for comp in sorted(schematic.components, key=lambda c: c.reference):
        rows.setdefault((comp.value, comp.footprint), []).append(comp.reference)

    refs = {key: ", ".join(references) for key, references in rows.items()}
    ref_width = max(len("Refs"), max((len(r) for r in refs.values()), default=0))
    val_width = max(len("Value"), max((len(value) for value, _fp in rows), default=0))
    fp_width = max(len("Footprint"), max((len(fp) for _value, fp in rows), default=0))

    lines = [f"{'Refs':<{ref_width}}  {'Value':<{val_width}}  {'Footprint':<{fp_width}}  Qty"]
    for (value, footprint), references in rows.items():
        lines.append(
            f"{refs[(value, footprint)]:<{ref_width}}  {value:<{val_width}}  {footprint:<{fp_width}}  {len(references)}"
        )
    return "\n".join(lines) + "\n"


def format_cli_violations(violations: list[CliViolation], show_all: bool = False) -> str:
    lines = []
    for violation in violations:
        if violation.severity == "error":
            lines.append(f" - ERROR {violation.type}: {violation.description}")
        elif show_all and violation.severity == "warning":
            lines.append(f" - WARN {violation.type}: {violation.description}")
    return "\n".join(lines) + "\n" if lines else ""


def _build_pin_index(nets: list[NetRecord]) -> dict[tuple[str, str], list[tuple[NetRecord, list[PinConnection]]]]:
    index: dict[tuple[str, str], list[tuple[NetRecord, list[PinConnection]]]] = {}
    for net in nets:
        for conn in net.connections:
            peers = [c for c in net.connections if c is not conn]
            index.setdefault((conn.component_ref, conn.pin_name), []).append((net, peers))
    return index


def _get_component_pins(ref: str, pin_to_nets) -> list[tuple[str, NetRecord, list[PinConnection]]]:
    results = []
    for (comp_ref, pin_name), entries in pin_to_nets.items():
        if comp_ref == ref:
            for net, peers in entries:
                results.append((pin_name, net, peers))
    return results


def _format_component_header(comp: PartRecord) -> str:
    parts = [comp.reference, comp.value, comp.footprint]
    if comp.properties:
        props = ", ".join(f"{k}: {v}" for k, v in comp.properties.items())
        parts.append("{" + props + "}")
    return "  ".join(parts)


def _format_pin_line(pin_name: str, net: NetRecord, peers: list[PinConnection]) -> str:
    if net.is_power:
        return f"  {pin_name}  <- {net.name}"

    parts = [f"  {pin_name}"]
    peer_part = ", ".join(f"{p.component_ref}:{p.pin_name}" for p in peers)
    if peer_part:
        parts.append(f"-- {peer_part}")
    if net.name:
        parts.append(f"({net.name})")
    return "  ".join(parts)
