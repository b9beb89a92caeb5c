"""Pipeline orchestrator: task loading, phase dispatch, and publishing.

Provides ``run_task()`` (async) and ``run_task_sync()`` (sync wrapper) as
the top-level entry points of ``om run``. A run locates and expands the
task file, then executes three phases in strict order (info-gather,
health-check, step-execution), stopping at the first failure, and finally
publishes the result.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
import logging
from pathlib import Path
from typing import Any, TypeVar

from om_run.errors import (
    HealthCheckError,
    InfoGatherError,
    RunError,
    StepExecutionError,
)
from om_run.locator import (
    as_local_path,
    locate_task_config,
    resolve_project_root,
    without_attr,
)
from om_run.log_groups import log_group
from om_run.models import (
    ConfigTree,
    ExecutionResult,
    PublishedArtifact,
    RunCommand,
    SystemInfo,
    ToolchainOptions,
)
from om_run.nix import Engine, NixEngine
from om_run.publisher import publish_result
from om_run.translator import expand_task_spec, load_task_spec

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "OM_LOG_LEVEL": "log_level",
}
"""Maps environment variable names to RunCommand field names."""

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def apply_env_overrides(command: RunCommand, environ: Mapping[str, str]) -> RunCommand:
    """Apply ``OM_*`` environment overrides to *command*.

    Overrides apply only to fields still at their default value, so an
    explicit command-line option always wins. Unknown log levels are
    ignored.

    Args:
        command: The command built from CLI arguments.
        environ: Environment mapping, read once by the caller.

    Returns:
        A new ``RunCommand`` with overrides applied, or *command* itself.
    """
    defaults = RunCommand()
    overrides: dict[str, Any] = {}

    for env_var, field_name in _ENV_FIELD_MAP.items():
        raw = environ.get(env_var)
        if raw is None:
            continue
        if getattr(command, field_name) != getattr(defaults, field_name):
            continue
        value = raw.strip().upper()
        if value in _LOG_LEVELS:
            overrides[field_name] = value

    if not overrides:
        return command
    return command.model_copy(update=overrides)


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"


def configure_logging(level: str) -> None:
    """Configure the ``om_run`` logger with a console handler.

    Idempotent: repeated calls adjust the level without duplicating
    handlers.

    Args:
        level: Logging level name, e.g. ``"INFO"``.
    """
    om_logger = logging.getLogger("om_run")
    om_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not any(isinstance(h, logging.StreamHandler) for h in om_logger.handlers):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        om_logger.addHandler(console)


# ---------------------------------------------------------------------------
# Phase dispatch
# ---------------------------------------------------------------------------


async def _run_phase(
    phase: str,
    action: Callable[[], Awaitable[T]],
    error_type: type[RunError],
    diagnostics: dict[str, Any],
) -> T:
    """Await *action*, converting engine failures into *error_type*.

    ``RunError`` subclasses are already classified and propagate unchanged.
    """
    try:
        return await action()
    except RunError:
        raise
    except Exception as exc:
        msg = f"{phase} failed: {exc}"
        raise error_type(msg, diagnostics={**diagnostics, "cause": repr(exc)}) from exc


async def run_phases(
    engine: Engine,
    config: ConfigTree,
    options: ToolchainOptions,
    *,
    task_name: str,
    github_output: bool = False,
) -> ExecutionResult:
    """Run info-gather, health-check and step-execution in order.

    Each phase starts only after the previous one succeeded; no phase is
    retried. The info and health phases are wrapped in log groups when
    *github_output* is set.

    Args:
        engine: The execution engine.
        config: Expanded configuration tree.
        options: Toolchain options for the step run.
        task_name: Task name, for logs and diagnostics.
        github_output: Emit GitHub Actions log groups.

    Returns:
        The engine's result document.

    Raises:
        InfoGatherError: If toolchain information cannot be gathered.
        HealthCheckError: If the health check fails.
        StepExecutionError: If the engine fails running the steps.
    """
    diagnostics = {"task": task_name, "flake": options.flake_ref}

    with log_group("info", github_output):
        logger.info("Gathering toolchain info")
        info: SystemInfo = await _run_phase(
            "info", engine.gather_system_info, InfoGatherError, diagnostics
        )

    with log_group("health", github_output):
        logger.info("Performing health check")
        await _run_phase(
            "health",
            lambda: engine.check_health(config, info),
            HealthCheckError,
            diagnostics,
        )

    logger.info("Running task '%s' for %s", task_name, options.flake_ref)
    return await _run_phase(
        "steps",
        lambda: engine.run_steps(options, config, info),
        StepExecutionError,
        diagnostics,
    )


def load_config_tree(config_path: Path) -> ConfigTree:
    """Load ``om/<name>.yaml`` and expand it into the canonical tree."""
    spec = load_task_spec(config_path)
    return expand_task_spec(spec)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def run_task(command: RunCommand, engine: Engine) -> PublishedArtifact:
    """Execute one ``om run`` invocation end to end.

    Args:
        command: Resolved command options.
        engine: Execution engine.

    Returns:
        The published result artifact.

    Raises:
        RunError: Any subclass, naming the failing phase.
    """
    logger.info("Reading run config from om/ directory")
    root = await resolve_project_root(command.flake_ref, engine)
    config_path = locate_task_config(root, command.name)
    logger.info("Using %s", config_path)
    config = load_config_tree(config_path)

    # Remote refs drop any #attr suffix; local ones use the resolved directory.
    is_local = as_local_path(command.flake_ref) is not None
    flake_ref = str(root) if is_local else without_attr(command.flake_ref)
    options = ToolchainOptions(
        flake_ref=flake_ref,
        systems=command.systems,
        out_link=command.effective_out_link,
    )

    result = await run_phases(
        engine,
        config,
        options,
        task_name=command.name,
        github_output=command.github_output,
    )

    with log_group("outlink", command.github_output):
        artifact = await publish_result(result, engine, command.effective_out_link)
    logger.debug("%s", artifact.summary())
    return artifact


def run_task_sync(command: RunCommand, engine: Engine | None = None) -> PublishedArtifact:
    """Synchronous wrapper for ``run_task()``.

    Uses a ``NixEngine`` when no engine is given.
    """
    return asyncio.run(run_task(command, engine if engine is not None else NixEngine()))
