from __future__ import annotations

import json
import logging
import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILE = "kicad_circuit.json"

_SHARE_CANDIDATES = (
    Path("/usr/share/kicad"),
    Path("/usr/local/share/kicad"),
    Path("C:/Program Files/KiCad/8.0/share/kicad"),
    Path("/Applications/KiCad/KiCad.app/Contents/SharedSupport"),
)
_CLI_CANDIDATES = (
    Path("/usr/bin/kicad-cli"),
    Path("/usr/local/bin/kicad-cli"),
    Path("C:/Program Files/KiCad/8.0/bin/kicad-cli.exe"),
    Path("/Applications/KiCad/KiCad.app/Contents/MacOS/kicad-cli"),
)


class Config:
    """String settings kept in a JSON object beside the project."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path is not None else Path.cwd() / CONFIG_FILE

    def _open(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            contents = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("cannot read %s (%s); edit or delete the file", self.path, exc)
            return {}
        if not isinstance(contents, dict):
            logger.error("%s does not hold a JSON object; ignoring it", self.path)
            return {}
        return contents

    def get(self, key: str) -> str:
        value = self._open().get(key)
        return "" if value is None else str(value)

    def set(self, key: str, value: str) -> bool:
        contents = self._open()
        contents[key] = value
        try:
            self.path.write_text(json.dumps(contents, indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            logger.error("cannot write %s: %s", self.path, exc)
            return False
        return True


@dataclass
class KicadInstall:
    share_dir: Path | None = None
    cli_path: Path | None = None


def _first_dir(candidates: list[Path]) -> Path | None:
    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    return None


def _first_executable(candidates: list[Path]) -> Path | None:
    for candidate in candidates:
        if candidate.is_file() and (sys.platform == "win32" or os.access(candidate, os.X_OK)):
            return candidate
    return None


def find_kicad(config: Config | None = None) -> KicadInstall:
    """Locate the KiCad library share directory and ``kicad-cli``.

    Looks at the ``kicad_path`` / ``kicad_cli_path`` settings, then the
    ``KICAD_PATH`` / ``KICAD_CLI`` environment variables, then ``PATH`` and
    the usual install locations. Either half may come back as None.
    """
    share: list[Path] = []
    cli: list[Path] = []

    if config is not None:
        if config.get("kicad_path"):
            share.append(Path(config.get("kicad_path")).expanduser())
        if config.get("kicad_cli_path"):
            cli.append(Path(config.get("kicad_cli_path")).expanduser())
    if os.getenv("KICAD_PATH"):
        share.append(Path(os.environ["KICAD_PATH"]).expanduser())
    if os.getenv("KICAD_CLI"):
        cli.append(Path(os.environ["KICAD_CLI"]).expanduser())

    which = shutil.which("kicad-cli")
    if which:
        cli.append(Path(which))

    share.extend(_SHARE_CANDIDATES)
    cli.extend(_CLI_CANDIDATES)

    install = KicadInstall(_first_dir(share), _first_executable(cli))
    if install.share_dir is None:
        logger.debug("no KiCad library directory found")
    if install.cli_path is None:
        logger.debug("kicad-cli not found")
    return install
