"""Environment variables exported by an installed layer, and pkg-config fixups."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)


def is_shared_library(path: Path) -> bool:
    """Match ``libfoo.so`` as well as versioned names like ``libfoo.so.1.2``."""
    return ".so" in path.suffixes


def is_header(path: Path) -> bool:
    return path.suffix == ".h"


def dirs_containing(start: Path, condition: Callable[[Path], bool]) -> list[Path]:
    """Directories under ``start`` holding at least one file matching ``condition``, deepest first."""
    if not start.is_dir():
        return []
    matches = []
    for current, _dirnames, filenames in os.walk(start):
        if any(condition(Path(current, name)) for name in filenames):
            matches.append(Path(current))
    matches.sort(key=lambda p: (-len(p.parts), str(p)))
    return matches


def _search_paths(tree: Path, roots: list[str], condition: Callable[[Path], bool] | None = None) -> list[str]:
    found: dict[Path, None] = {}
    for root in roots:
        base = tree / root
        if condition is not None:
            for nested in dirs_containing(base, condition):
                found.setdefault(nested)
        if base.is_dir():
            found.setdefault(base)
    return [str(path.relative_to(tree)) for path in found]


def discover_environment(tree: Path, triplet: str) -> dict[str, list[str]]:
    """Search paths to export for a layer tree, relative to the tree.

    ``triplet`` is the multiarch name, for example ``x86_64-linux-gnu``.
    Directories that do not exist are left out, as are variables with no
    directories at all.
    """
    bin_paths = _search_paths(tree, ["bin", "usr/bin", "usr/sbin"])
    library_paths = _search_paths(
        tree, [f"usr/lib/{triplet}", "usr/lib", f"lib/{triplet}", "lib"], is_shared_library
    )
    include_paths = _search_paths(tree, [f"usr/include/{triplet}", "usr/include"], is_header)
    pkg_config_paths = _search_paths(
        tree, [f"usr/lib/{triplet}/pkgconfig", "usr/lib/pkgconfig", "usr/share/pkgconfig"]
    )

    env = {
        "PATH": bin_paths,
        "LD_LIBRARY_PATH": library_paths,
        "LIBRARY_PATH": library_paths,
        "INCLUDE_PATH": include_paths,
        "CPATH": include_paths,
        "CPPPATH": include_paths,
        "PKG_CONFIG_PATH": pkg_config_paths,
    }
    env = {name: list(paths) for name, paths in env.items() if paths}
    logger.debug(f"Layer environment for {tree}: {env}")
    return env


def rewrite_package_configs(tree: Path, install_path: Path) -> list[Path]:
    """Point the ``prefix=`` of every ``pkgconfig/*.pc`` file under ``tree`` into ``install_path``.

    ``tree`` is where the files are now; ``install_path`` is where the layer
    will live once committed. Returns the rewritten files.
    """
    rewritten = []
    for pc_file in sorted(tree.rglob("pkgconfig/*.pc")):
        if pc_file.is_symlink() or not pc_file.is_file():
            continue
        lines = pc_file.read_text(errors="surrogateescape").splitlines()
        changed = False
        for i, line in enumerate(lines):
            if line.startswith("prefix="):
                value = line.removeprefix("prefix=").lstrip("/")
                lines[i] = f"prefix={install_path / value}"
                changed = True
        if changed:
            pc_file.write_text("\n".join(lines) + "\n", errors="surrogateescape")
            rewritten.append(pc_file)
            logger.debug(f"Rewrote prefix in {pc_file.relative_to(tree)}")
    return rewritten
