"""Project and task-file location.

Resolves a flake reference to a local directory (fetching remote flakes
through the engine) and finds ``om/<name>.yaml`` inside it.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from om_run.errors import ConfigNotFoundError, ProjectFetchError, RunError

if TYPE_CHECKING:
    from om_run.nix import Engine

logger = logging.getLogger(__name__)

TASK_DIR = "om"


def as_local_path(flake_ref: str) -> Path | None:
    """Return the local path of a path-like flake reference, else ``None``.

    A reference is local when, after stripping an optional ``path:``
    prefix, it starts with ``.`` or ``/``. Query (``?...``) and attribute
    (``#...``) suffixes are dropped.

    Args:
        flake_ref: Flake URL or path as given on the command line.

    Returns:
        The local path, or ``None`` for remote references.
    """
    ref = flake_ref.removeprefix("path:")
    if not ref.startswith((".", "/")):
        return None
    for sep in ("?", "#"):
        ref = ref.split(sep, 1)[0]
    return Path(ref)


def without_attr(flake_ref: str) -> str:
    """Strip a ``#attr`` suffix from a flake reference."""
    return flake_ref.split("#", 1)[0]


async def resolve_project_root(flake_ref: str, engine: Engine) -> Path:
    """Resolve *flake_ref* to a local project directory.

    Local references never touch the engine; remote ones are fetched via
    ``engine.resolve_reference``.

    Args:
        flake_ref: Project reference (local path or flake URL).
        engine: Engine used to fetch remote references.

    Returns:
        Absolute path of the project root.

    Raises:
        ProjectFetchError: If a remote reference cannot be fetched.
    """
    local = as_local_path(flake_ref)
    if local is not None:
        return local.resolve()

    url = without_attr(flake_ref)
    logger.info("Fetching %s", url)
    try:
        root = await engine.resolve_reference(url)
    except RunError:
        raise
    except Exception as exc:
        msg = f"Failed to fetch {url}: {exc}"
        raise ProjectFetchError(msg, diagnostics={"flake": url}) from exc
    logger.debug("Fetched %s to %s", flake_ref, root)
    return root


def task_config_path(root: Path, name: str) -> Path:
    """Return ``<root>/om/<name>.yaml`` without checking it exists."""
    return root / TASK_DIR / f"{name}.yaml"


def locate_task_config(root: Path, name: str) -> Path:
    """Find the task file for *name* under *root*.

    Raises:
        ConfigNotFoundError: If ``om/<name>.yaml`` does not exist.
    """
    path = task_config_path(root, name)
    if not path.is_file():
        raise ConfigNotFoundError(path, name)
    return path
