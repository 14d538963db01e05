from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

# kicad-cli exit status when --exit-code-violations finds violations
ERC_VIOLATIONS_EXIT = 5


@dataclass(frozen=True)
class CliViolation:
    severity: str
    type: str
    description: str


@dataclass
class CliErcResult:
    returncode: int | None
    violations: list[CliViolation] = field(default_factory=list)

    @property
    def errors(self) -> list[CliViolation]:
        return [v for v in self.violations if v.severity == "error"]

    @property
    def passed(self) -> bool:
        return self.returncode in (0, ERC_VIOLATIONS_EXIT) and not self.errors


def parse_erc_report(data: dict) -> list[CliViolation]:
    violations = []
    for sheet in data.get("sheets", []):
        for violation in sheet.get("violations", []):
            items = violation.get("items") or [{}]
            violations.append(CliViolation(
                severity=violation.get("severity", ""),
                type=violation.get("type", ""),
                description=items[0].get("description", violation.get("description", "")),
            ))
    return violations


class KicadCli:
    def __init__(self, cli_path: str | Path | None):
        self.cli_path = Path(cli_path) if cli_path else None

    def _run(self, *args: str) -> subprocess.CompletedProcess | None:
        if self.cli_path is None:
            logger.error("kicad-cli not found; set kicad_cli_path or KICAD_CLI")
            return None
        command = [str(self.cli_path), *args]
        logger.debug("running %s", " ".join(command))
        try:
            return subprocess.run(command, capture_output=True, text=True, check=False)
        except OSError as exc:
            logger.error("failed executing %s: %s", self.cli_path, exc)
            return None

    def _export(self, what: str, schematic: Path, output: Path, *extra: str) -> bool:
        proc = self._run("sch", "export", what, *extra, "--output", str(output), str(schematic))
        if proc is None:
            return False
        if proc.returncode != 0:
            logger.error("kicad-cli %s export failed (%d): %s", what, proc.returncode, proc.stderr.strip())
            return False
        logger.info("wrote %s", output)
        return True

    def export_netlist(self, schematic: str | Path, output: str | Path) -> bool:
        return self._export("netlist", Path(schematic), Path(output))

    def export_bom(self, schematic: str | Path, output: str | Path) -> bool:
        return self._export("bom", Path(schematic), Path(output), "--fields", "*")

    def run_erc(self, schematic: str | Path, output: str | Path) -> CliErcResult:
        output = Path(output)
        output.unlink(missing_ok=True)
        proc = self._run(
            "sch", "erc", "--exit-code-violations", "--format", "json",
            "--output", str(output), str(schematic),
        )
        if proc is None:
            return CliErcResult(None)
        if proc.returncode not in (0, ERC_VIOLATIONS_EXIT):
            logger.error("kicad-cli erc failed (%d): %s", proc.returncode, proc.stderr.strip())
            return CliErcResult(None)
        if not output.exists():
            logger.error("kicad-cli erc produced no report: %s", proc.stderr.strip())
            return CliErcResult(None)
        try:
            data = json.loads(output.read_text(encoding="utf-8"))
        except ValueError as exc:
            logger.error("cannot parse ERC report %s: %s", output, exc)
            return CliErcResult(None)
        return CliErcResult(proc.returncode, parse_erc_report(data))
