"""
imaris_locator - find, load and launch Imaris

Imaris ships its ICE client (ImarisLib) under <install>/XT/python3. That
directory has to be importable (e.g. via PYTHONPATH) for the connector to
talk to Imaris; find_imaris() reports where it is.
"""

import logging
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import List, Mapping, NamedTuple, Optional, Tuple

from volume_marshaller import ConnectorError

logger = logging.getLogger(__name__)

IMARIS_PATH_ENV = "IMARISPATH"

DEFAULT_INSTALL_ROOTS = {
    "win32": [r"C:\Program Files\Bitplane"],
    "darwin": ["/Applications"],
}

_VERSION_DIR = re.compile(r"^Imaris\s+(\d+)\.(\d+)\.(\d+)(?:\.app)?$")


class ImarisNotFoundError(ConnectorError):
    """No usable Imaris installation."""


class ImarisPaths(NamedTuple):
    install_dir: Path
    exe: Path
    server_exe: Path
    lib_dir: Path


def _version_key(name: str) -> Optional[Tuple[int, int, int]]:
    match = _VERSION_DIR.match(name)
    if match is None:
        return None
    return tuple(int(g) for g in match.groups())


def _newest_install(roots: List[str]) -> Optional[Path]:
    best, best_key = None, None
    for root in roots:
        root = Path(root)
        if not root.is_dir():
            continue
        for entry in root.iterdir():
            key = _version_key(entry.name)
            if key is not None and (best_key is None or key > best_key):
                best, best_key = entry, key
    return best


def find_imaris(env: Mapping[str, str] = None, platform: str = None,
                install_roots: Mapping[str, List[str]] = None) -> ImarisPaths:
    """
    Locate the Imaris installation.

    Args:
        env: environment to read IMARISPATH from (default: os.environ)
        platform: sys.platform style string (default: sys.platform)
        install_roots: platform -> directories searched for "Imaris x.y.z"

    Returns:
        ImarisPaths

    Raises:
        ImarisNotFoundError
    """
    env = os.environ if env is None else env
    platform = sys.platform if platform is None else platform
    install_roots = DEFAULT_INSTALL_ROOTS if install_roots is None else install_roots

    if env.get(IMARIS_PATH_ENV):
        install_dir = Path(env[IMARIS_PATH_ENV])
        if not install_dir.is_dir():
            raise ImarisNotFoundError(
                f"{IMARIS_PATH_ENV} points to '{install_dir}', which does not exist.")
    else:
        if platform not in install_roots:
            raise ImarisNotFoundError(
                f"Imaris is not available on '{platform}'; set {IMARIS_PATH_ENV} explicitly.")
        install_dir = _newest_install(install_roots[platform])
        if install_dir is None:
            raise ImarisNotFoundError(
                f"No Imaris installation found; set {IMARIS_PATH_ENV} to the Imaris folder.")

    if platform == "darwin":
        exe = install_dir / "Contents" / "MacOS" / "Imaris"
        server_exe = install_dir / "Contents" / "MacOS" / "ImarisServerIce"
        lib_dir = install_dir / "Contents" / "SharedSupport" / "XT" / "python3"
    else:
        exe = install_dir / "Imaris.exe"
        server_exe = install_dir / "ImarisServerIce.exe"
        lib_dir = install_dir / "XT" / "python3"

    if not exe.exists():
        raise ImarisNotFoundError(f"Could not find the Imaris executable '{exe}'.")

    logger.debug("Found Imaris at %s", install_dir)
    return ImarisPaths(install_dir, exe, server_exe, lib_dir)


def load_imaris_lib():
    """
    Return a new ImarisLib instance.

    Raises:
        ConnectorError: ImarisLib is not importable
    """
    try:
        import ImarisLib
    except ImportError as e:
        raise ConnectorError(
            "Could not import ImarisLib. Add the XT/python3 folder of your "
            "Imaris installation to PYTHONPATH.") from e
    return ImarisLib.ImarisLib()


def launch_imaris(paths: ImarisPaths, object_id: int) -> subprocess.Popen:
    """Start Imaris registering itself under the given object id."""
    logger.info("Starting %s with id %d", paths.exe, object_id)
    return subprocess.Popen([str(paths.exe), "id%d" % object_id])
