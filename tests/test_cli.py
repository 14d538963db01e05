import json
import os
import stat
import subprocess
import sys

import pytest

from kicad_circuit.library import Library
from kicad_circuit.schematic import Schematic

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
SRC = os.path.join(os.path.dirname(os.path.dirname(__file__)), "src")

FAKE_KICAD_CLI = """\
#!/bin/sh
while [ $# -gt 0 ]; do
  if [ "$1" = "--output" ]; then out="$2"; fi
  shift
done
cat > "$out" <<'EOF'
{"sheets": [{"path": "/", "violations": [
  {"severity": "error", "type": "pin_not_driven", "items": [{"description": "Input pin not driven"}]},
  {"severity": "warning", "type": "label_dangling", "items": [{"description": "Label not connected"}]}
]}]}
EOF
exit 5
"""


def _run(*args, cwd=None, env=None):
    environ = dict(os.environ)
    environ["PYTHONPATH"] = os.pathsep.join(filter(None, [SRC, environ.get("PYTHONPATH")]))
    environ.update(env or {})
    return subprocess.run(
        [sys.executable, "-m", "kicad_circuit.cli", *args],
        capture_output=True,
        text=True,
        cwd=cwd,
        env=environ,
    )


@pytest.fixture
def board(tmp_path):
    sch = Schematic("board", library=Library(paths=[FIXTURES]), build_dir=tmp_path)
    u1 = sch.component(symbol="Device:Sensor", value="BME280", footprint="Package_LGA:LGA-8")
    r1 = sch.component(symbol="Device:R", value="4k7", footprint="Resistor_SMD:R_0603_1608Metric")
    r2 = sch.component(symbol="Device:R", value="4k7", footprint="Resistor_SMD:R_0603_1608Metric")
    sch.net(u1.pin(3), r1.pin(1), name="sda")
    sch.net(u1.pin(4), r2.pin(1), name="scl")
    return str(sch.create())


def test_cli_netlist(board):
    result = _run("netlist", board)
    assert result.returncode == 0
    assert "U1  BME280  Package_LGA:LGA-8" in result.stdout
    assert "SDA  -- R1:1  (sda)" in result.stdout


def test_cli_summary(board):
    result = _run("netlist", "--summary", board)
    assert result.returncode == 0
    assert "Components: 3" in result.stdout
    assert "Named nets: scl, sda" in result.stdout


def test_cli_filter_net(board):
    result = _run("netlist", "--net", "scl", board)
    assert result.returncode == 0
    assert "R2  4k7" in result.stdout
    assert "R1  4k7" not in result.stdout


def test_cli_bom(board):
    result = _run("bom", board)
    assert result.returncode == 0
    lines = result.stdout.splitlines()
    assert lines[0].split() == ["Refs", "Value", "Footprint", "Qty"]
    assert any(l.startswith("R1, R2") and l.split()[-1] == "2" for l in lines)


def test_cli_config_roundtrip(tmp_path):
    result = _run("config", "set", "kicad_cli_path", "/opt/kicad/bin/kicad-cli", cwd=tmp_path)
    assert result.returncode == 0
    assert json.loads((tmp_path / "kicad_circuit.json").read_text()) == {
        "kicad_cli_path": "/opt/kicad/bin/kicad-cli"
    }
    result = _run("config", "get", "kicad_cli_path", cwd=tmp_path)
    assert result.stdout.strip() == "/opt/kicad/bin/kicad-cli"


def test_cli_config_set_needs_value(tmp_path):
    result = _run("config", "set", "kicad_path", cwd=tmp_path)
    assert result.returncode == 2


def test_cli_erc(board, tmp_path):
    fake = tmp_path / "kicad-cli"
    fake.write_text(FAKE_KICAD_CLI)
    fake.chmod(fake.stat().st_mode | stat.S_IXUSR)

    result = _run("erc", board, cwd=tmp_path, env={"KICAD_CLI": str(fake)})
    assert result.returncode == 1
    assert " - ERROR pin_not_driven: Input pin not driven" in result.stdout
    assert "WARN" not in result.stdout
    assert "1 errors, 1 other violations" in result.stdout

    result = _run("erc", board, "--all", cwd=tmp_path, env={"KICAD_CLI": str(fake)})
    assert " - WARN label_dangling: Label not connected" in result.stdout


def test_cli_without_command():
    result = _run()
    assert result.returncode == 1
    assert "usage: kicad-circuit" in result.stdout
