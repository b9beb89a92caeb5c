"""Task-file parsing and expansion into the canonical configuration tree.

``om/<name>.yaml`` uses a minimal schema (``RawTaskSpec``). Before the
engine can run it, it is expanded into the full CI tree: a single
``default``/``ROOT`` entry with the lockfile, build and flake-check stages
switched off and the user's steps placed under ``custom``. Cache
requirements become a separate ``health`` domain.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError
import yaml

from om_run.errors import ConfigParseError
from om_run.models import (
    DEFAULT_TASK_NAME,
    ROOT_KEY,
    CachesConfig,
    ConfigTree,
    HealthConfig,
    RawTaskSpec,
    StepsConfig,
    StepToggle,
    SubflakeConfig,
)

logger = logging.getLogger(__name__)

_DISABLED = StepToggle(enable=False)


def parse_task_spec(text: str, source: Path | str = "<string>") -> RawTaskSpec:
    """Parse task-file text into a ``RawTaskSpec``.

    An empty document yields all defaults.

    Args:
        text: Raw YAML text.
        source: Path (or label) reported in errors.

    Returns:
        The validated task spec.

    Raises:
        ConfigParseError: If the text is not valid YAML, is not a mapping,
            or does not match the task schema.
    """
    try:
        data: Any = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigParseError(source, str(exc)) from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigParseError(
            source, f"expected a YAML mapping, got {type(data).__name__}"
        )

    try:
        return RawTaskSpec.model_validate(data)
    except ValidationError as exc:
        raise ConfigParseError(source, str(exc)) from exc


def load_task_spec(path: Path) -> RawTaskSpec:
    """Read and parse the task file at *path*.

    Raises:
        ConfigParseError: If the file cannot be read or parsed.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigParseError(path, f"failed to read file: {exc}") from exc

    spec = parse_task_spec(text, path)
    logger.debug("Loaded task spec from %s: %r", path, spec)
    return spec


def expand_task_spec(spec: RawTaskSpec) -> ConfigTree:
    """Expand a ``RawTaskSpec`` into the engine-ready ``ConfigTree``.

    Pure and deterministic. Step contents are copied verbatim and never
    inspected.

    Args:
        spec: The parsed task spec.

    Returns:
        A tree with ``ci.default.ROOT`` populated and, when the spec has
        caches, ``health.default.caches``.
    """
    root = SubflakeConfig(
        dir=spec.dir,
        skip=False,
        override_inputs=dict(spec.override_inputs),
        systems=list(spec.systems) if spec.systems is not None else None,
        steps=StepsConfig(
            lockfile=_DISABLED,
            build=_DISABLED,
            flake_check=_DISABLED,
            custom=copy.deepcopy(spec.steps),
        ),
    )

    health: dict[str, HealthConfig] | None = None
    if spec.caches is not None:
        health = {
            DEFAULT_TASK_NAME: HealthConfig(
                caches=CachesConfig(required=list(spec.caches.required))
            )
        }

    return ConfigTree(ci={DEFAULT_TASK_NAME: {ROOT_KEY: root}}, health=health)
