"""Result publishing.

The result document is staged in a freshly allocated temporary file, handed
to the engine for a durable content-addressed copy, and optionally exposed
through a stable symlink. Concurrent invocations never share a temp file;
on a shared link destination the last publisher to finish wins.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
from pathlib import Path
import tempfile
from typing import TYPE_CHECKING

from om_run.errors import PublishError
from om_run.models import ExecutionResult, PublishedArtifact

if TYPE_CHECKING:
    from om_run.nix import Engine

logger = logging.getLogger(__name__)

_TEMP_PREFIX = "om-run-results-"
_TEMP_SUFFIX = ".json"


def serialize_result(result: ExecutionResult) -> str:
    """Serialize *result* to canonical JSON text.

    Raises:
        PublishError: If the result is not JSON-serializable.
    """
    try:
        return json.dumps(result, sort_keys=True, allow_nan=False)
    except (TypeError, ValueError) as exc:
        msg = f"Result is not JSON-serializable: {exc}"
        raise PublishError(msg) from exc


def write_temp_result(text: str, directory: Path | None = None) -> Path:
    """Write *text* to a new, uniquely named temporary file.

    Args:
        text: Serialized result.
        directory: Directory for the temp file; the system default when ``None``.

    Returns:
        Path of the written file.

    Raises:
        PublishError: If the file cannot be created or written.
    """
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            prefix=_TEMP_PREFIX,
            suffix=_TEMP_SUFFIX,
            dir=directory,
            delete=False,
        ) as fh:
            fh.write(text)
            return Path(fh.name)
    except OSError as exc:
        msg = f"Failed to write result to a temporary file: {exc}"
        raise PublishError(msg) from exc


def replace_symlink(link: Path, target: Path) -> None:
    """Point *link* at *target*, replacing whatever is there.

    The new link is created under a unique sibling name and renamed over
    *link*, so readers always see either the old or the new link.

    Raises:
        PublishError: If the link cannot be created.
    """
    parent = link.parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
        # mkstemp only reserves a unique name; the placeholder is swapped for the link.
        fd, staging = tempfile.mkstemp(prefix=f".{link.name}.", dir=parent)
        os.close(fd)
        os.unlink(staging)
        os.symlink(target, staging)
        try:
            os.replace(staging, link)
        except OSError:
            with contextlib.suppress(OSError):
                os.unlink(staging)
            raise
    except OSError as exc:
        msg = f"Failed to create symlink {link} -> {target}: {exc}"
        raise PublishError(msg, diagnostics={"out_link": str(link)}) from exc


async def publish_result(
    result: ExecutionResult,
    engine: Engine,
    out_link: Path | None = None,
    *,
    temp_dir: Path | None = None,
) -> PublishedArtifact:
    """Persist *result* and return where it can be found.

    Args:
        result: The engine's result document.
        engine: Engine providing the durable-reference capability.
        out_link: Symlink to create at the stable path; ``None`` for no link.
        temp_dir: Directory for the staging file (system default if ``None``).

    Returns:
        The published artifact.

    Raises:
        PublishError: If serialization, the temp write, the durable
            reference, or the symlink fails.
    """
    text = serialize_result(result)
    temp_path = write_temp_result(text, temp_dir)
    logger.debug("Staged result in %s", temp_path)

    try:
        stable_path = await engine.publish_durable(temp_path)
    except PublishError:
        raise
    except Exception as exc:
        msg = f"Failed to publish {temp_path}: {exc}"
        raise PublishError(msg, diagnostics={"temp_path": str(temp_path)}) from exc
    finally:
        with contextlib.suppress(OSError):
            temp_path.unlink()

    if out_link is not None:
        replace_symlink(out_link, stable_path)

    return PublishedArtifact(
        temp_path=temp_path, stable_path=stable_path, out_link=out_link
    )
