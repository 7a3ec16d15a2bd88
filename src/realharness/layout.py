"""Preparation of a session directory before the server is launched."""

import shutil
from collections.abc import Iterable
from pathlib import Path

import structlog

log = structlog.get_logger("realharness.layout")

INIT_DIR: str = "init.d"
PLUGINS_DIR: str = "plugins"
INIT_SCRIPT_NAME: str = "realharness_init.py"

# Executed by the server after boot, with the live application bound to ``app``.
_INIT_SCRIPT: str = '''"""Hand the booted application to the realharness remote entry point."""

import importlib
import os
import sys

location = os.environ.get("REALHARNESS_LOCATION", "")
if len(location) > 0 and location not in sys.path:
    sys.path.insert(0, location)
importlib.import_module("realharness.remote").run(app)
'''


def harness_location() -> str:
    """Return the directory that contains the ``realharness`` package.

    :returns: Absolute path usable as an import path entry.
    """
    return str(Path(__file__).resolve().parent.parent)


def install_init_script(home: Path) -> Path:
    """Write the bootstrap init script into ``home``.

    :param home: Session directory.
    :returns: Path of the written script.
    """
    init_dir: Path = home / INIT_DIR
    init_dir.mkdir(parents=True, exist_ok=True)
    script: Path = init_dir / INIT_SCRIPT_NAME
    script.write_text(_INIT_SCRIPT, encoding="utf-8")
    return script


def install_plugins(home: Path, sources: Iterable[Path]) -> list[Path]:
    """Copy plugin modules, packages or archives into ``home``.

    :param home: Session directory.
    :param sources: Plugin ``.py`` files, package directories, or ``.zip``/``.whl`` archives.
    :returns: Installed paths, in input order.
    :raises FileNotFoundError: If a source does not exist.
    """
    plugins_dir: Path = home / PLUGINS_DIR
    plugins_dir.mkdir(parents=True, exist_ok=True)
    installed: list[Path] = []
    for source in sources:
        source_path: Path = Path(source)
        if source_path.exists() is False:
            raise FileNotFoundError(f"plugin source does not exist: {source_path}")
        destination: Path = plugins_dir / source_path.name
        if source_path.is_dir() is True:
            shutil.copytree(source_path, destination, dirs_exist_ok=True)
        else:
            shutil.copy2(source_path, destination)
        log.debug("Installed plugin", source=str(source_path), destination=str(destination))
        installed.append(destination)
    return installed
