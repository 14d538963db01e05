import argparse
import logging
import sys
from fnmatch import fnmatch
from pathlib import Path

from kicad_circuit.config import Config, find_kicad
from kicad_circuit.formatter import format_bom, format_cli_violations, format_netlist, format_summary
from kicad_circuit.kicad_cli import KicadCli
from kicad_circuit.reader import read_schematic


EXAMPLES = """\
Examples:
  kicad-circuit netlist build/board.kicad_sch               full netlist
  kicad-circuit netlist build/board.kicad_sch --ref 'U1*'   filter by reference
  kicad-circuit netlist build/board.kicad_sch --summary     one-line-per-component summary
  kicad-circuit bom build/board.kicad_sch                   bill of materials
  kicad-circuit erc build/board.kicad_sch --all             KiCad ERC, warnings included
  kicad-circuit config set kicad_cli_path /opt/kicad/bin/kicad-cli
"""


def _netlist_filter(schematic, ref: str | None, net: str | None) -> set[str] | None:
    if ref:
        matched = {c.reference for c in schematic.components if fnmatch(c.reference, ref)}
        if net:
            net_refs = set()
            for n in schematic.nets:
                if n.name == net:
                    net_refs.update(c.component_ref for c in n.connections)
            matched &= net_refs
        neighbors = set()
        for n in schematic.nets:
            refs_in_net = {c.component_ref for c in n.connections}
            if refs_in_net & matched:
                neighbors.update(refs_in_net)
        return matched | neighbors
    if net:
        components = set()
        for n in schematic.nets:
            if n.name == net:
                components.update(c.component_ref for c in n.connections)
        return components
    return None


def _config_command(args) -> int:
    config = Config()
    if args.action == "get":
        print(config.get(args.key))
        return 0
    if args.value is None:
        print("config set needs a value", file=sys.stderr)
        return 2
    return 0 if config.set(args.key, args.value) else 1


def _erc_command(args) -> int:
    schematic = Path(args.schematic)
    cli = KicadCli(find_kicad(Config()).cli_path)
    result = cli.run_erc(schematic, schematic.with_suffix(".erc.json"))
    print(format_cli_violations(result.violations, show_all=args.all), end="")
    print(f"{len(result.errors)} errors, {len(result.violations) - len(result.errors)} other violations")
    return 0 if result.passed else 1


def main():
    parser = argparse.ArgumentParser(
        prog="kicad-circuit",
        description="Inspect and check schematics generated from circuit code.",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress messages")
    subparsers = parser.add_subparsers(dest="command")

    netlist_parser = subparsers.add_parser(
        "netlist",
        help="Show component connectivity and net assignments",
        description="Show per-component pin connections and net assignments. "
        "Use --ref and --net to narrow the output to a subset of components.",
    )
    netlist_parser.add_argument("schematic", help="Path to .kicad_sch file")
    netlist_parser.add_argument(
        "--ref", metavar="PATTERN", help="Filter by component reference (glob, e.g. 'U1*')"
    )
    netlist_parser.add_argument("--net", metavar="NAME", help="Filter by net name")
    netlist_parser.add_argument(
        "--summary", action="store_true", help="One-line-per-component summary instead of full netlist"
    )

    bom_parser = subparsers.add_parser(
        "bom",
        help="List components grouped by value",
        description="Print a bill of materials: components grouped by value and footprint.",
    )
    bom_parser.add_argument("schematic", help="Path to .kicad_sch file")

    erc_parser = subparsers.add_parser(
        "erc",
        help="Run KiCad's electrical rules check",
        description="Run kicad-cli's ERC on a schematic and print its violations. "
        "Exits with status 1 when errors are reported.",
    )
    erc_parser.add_argument("schematic", help="Path to .kicad_sch file")
    erc_parser.add_argument("--all", action="store_true", help="Also print warnings")

    config_parser = subparsers.add_parser(
        "config",
        help="Read or change kicad_circuit.json settings",
        description="Get or set a key in kicad_circuit.json in the current directory.",
    )
    config_parser.add_argument("action", choices=("get", "set"))
    config_parser.add_argument("key")
    config_parser.add_argument("value", nargs="?")

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "config":
        sys.exit(_config_command(args))

    if args.command == "erc":
        sys.exit(_erc_command(args))

    schematic = read_schematic(args.schematic)

    if args.command == "bom":
        print(format_bom(schematic), end="")
        return

    if args.summary:
        print(format_summary(schematic), end="")
        return

    components_filter = _netlist_filter(schematic, args.ref, args.net)
    print(format_netlist(schematic, components_filter=components_filter), end="")


if __name__ == "__main__":
    main()
