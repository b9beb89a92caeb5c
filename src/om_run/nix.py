"""Execution engine interface and its Nix-backed implementation.

``Engine`` is the protocol the orchestrator and publisher consume. The
bundled ``NixEngine`` wraps the ``nix`` CLI as async subprocess calls: it
fetches remote flakes, gathers version and substituter information, checks
toolchain health, runs the task's custom steps and adds the result file
to the Nix store.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
import json
import logging
from pathlib import Path
import time
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlparse

from om_run.locator import as_local_path
from om_run.models import (
    ConfigTree,
    ExecutionResult,
    NixVersion,
    SubflakeConfig,
    SystemInfo,
    ToolchainOptions,
)

logger = logging.getLogger(__name__)

MIN_NIX_VERSION = NixVersion(major=2, minor=16, patch=0)

_NIX_FLAGS: tuple[str, ...] = (
    "--extra-experimental-features",
    "nix-command flakes",
)

_KNOWN_SYSTEM_LISTS: dict[str, list[str]] = {
    "x86_64-linux": ["x86_64-linux"],
    "aarch64-linux": ["aarch64-linux"],
    "x86_64-darwin": ["x86_64-darwin"],
    "aarch64-darwin": ["aarch64-darwin"],
    "default": ["x86_64-linux", "aarch64-linux", "x86_64-darwin", "aarch64-darwin"],
    "default-linux": ["x86_64-linux", "aarch64-linux"],
    "default-darwin": ["x86_64-darwin", "aarch64-darwin"],
}
"""Lists published by the ``github:nix-systems/*`` flakes, resolved offline."""


# ---------------------------------------------------------------------------
# Engine protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Engine(Protocol):
    """Capabilities ``om run`` delegates to the build engine."""

    async def resolve_reference(self, flake_ref: str) -> Path:
        """Fetch a remote flake and return its local source path."""
        ...

    async def gather_system_info(self) -> SystemInfo:
        """Collect toolchain version and configuration."""
        ...

    async def check_health(self, config: ConfigTree, info: SystemInfo) -> None:
        """Raise if the toolchain or its caches are unfit for *config*."""
        ...

    async def run_steps(
        self, options: ToolchainOptions, config: ConfigTree, info: SystemInfo
    ) -> ExecutionResult:
        """Run every step in *config* and return the result document."""
        ...

    async def publish_durable(self, path: Path) -> Path:
        """Return a durable, content-addressed copy of the file at *path*."""
        ...


# ---------------------------------------------------------------------------
# Engine errors
# ---------------------------------------------------------------------------


class NixCommandError(RuntimeError):
    """A ``nix`` invocation exited with a non-zero status.

    Attributes:
        argv: The full command line.
        returncode: Process exit status.
        stderr: Captured standard error (empty for passthrough runs).
    """

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        msg = f"nix command failed (exit {returncode}): {' '.join(self.argv)}"
        if stderr.strip():
            msg += f"\n{stderr.strip()[:2000]}"
        super().__init__(msg)


class HealthCheckFailed(RuntimeError):
    """One or more required health checks failed.

    Attributes:
        failures: Human-readable description of each failed check.
    """

    def __init__(self, failures: list[str]) -> None:
        self.failures = list(failures)
        super().__init__("; ".join(self.failures))


class InvalidStepError(ValueError):
    """A custom step definition cannot be executed."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def sub_flake_url(flake_ref: str, directory: str) -> str:
    """Return the flake reference for a sub-flake living in *directory*.

    Local paths are joined; other URLs get a ``dir`` query parameter.
    """
    if directory in ("", "."):
        return flake_ref
    local = as_local_path(flake_ref)
    if local is not None:
        return str(local / directory)
    sep = "&" if "?" in flake_ref else "?"
    return f"{flake_ref}{sep}dir={directory}"


def normalize_cache_url(url: str) -> str:
    """Normalize a cache URL for comparison (trailing ``/`` is ignored)."""
    parsed = urlparse(url.strip())
    return parsed.geturl().rstrip("/")


def missing_caches(required: Sequence[str], configured: Sequence[str]) -> list[str]:
    """Return the entries of *required* not present in *configured*."""
    available = {normalize_cache_url(c) for c in configured}
    return [c for c in required if normalize_cache_url(c) not in available]


def _override_input_flags(override_inputs: Mapping[str, str]) -> list[str]:
    flags: list[str] = []
    for name, url in override_inputs.items():
        flags.extend(["--override-input", name, url])
    return flags


def _string_list(value: Any, field: str, step_name: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        msg = f"'{field}' of step {step_name!r} must be a list of strings"
        raise InvalidStepError(msg)
    return list(value)


def build_step_command(
    step_name: str,
    step: Any,
    flake: str,
    override_inputs: Mapping[str, str],
) -> list[str]:
    """Translate one custom step into ``nix`` arguments.

    Supported step types:

    - ``app``: ``nix run <flake>#<name> -- <args...>``
    - ``devshell``: ``nix develop <flake>#<name> -c <command...>``

    Args:
        step_name: Key of the step under ``steps``.
        step: The step definition mapping.
        flake: Flake reference of the root the step belongs to.
        override_inputs: Inputs to override for this root.

    Returns:
        Arguments to pass after ``nix``.

    Raises:
        InvalidStepError: If the step is malformed or of an unknown type.
    """
    if not isinstance(step, Mapping):
        msg = f"invalid step config for {step_name!r}: expected a mapping"
        raise InvalidStepError(msg)

    step_type = step.get("type")
    overrides = _override_input_flags(override_inputs)

    if step_type == "app":
        app = step.get("name", "default")
        args = _string_list(step.get("args"), "args", step_name)
        return ["run", f"{flake}#{app}", *overrides, "--", *args]

    if step_type == "devshell":
        shell = step.get("name", "default")
        command = _string_list(step.get("command"), "command", step_name)
        if not command:
            msg = f"missing 'command' for devshell step {step_name!r}"
            raise InvalidStepError(msg)
        return ["develop", f"{flake}#{shell}", *overrides, "-c", *command]

    msg = f"unknown step type {step_type!r} for step {step_name!r}"
    raise InvalidStepError(msg)


# ---------------------------------------------------------------------------
# NixEngine
# ---------------------------------------------------------------------------


class NixEngine:
    """``Engine`` implementation backed by the ``nix`` CLI.

    Each call spawns a new ``nix`` subprocess. Step commands inherit the
    terminal so their output streams through; all other commands capture
    stdout for parsing.
    """

    def __init__(self, *, nix: str = "nix", extra_args: Sequence[str] = ()) -> None:
        """Initialize the engine.

        Args:
            nix: Name or path of the ``nix`` executable.
            extra_args: Extra global flags appended to every invocation.
        """
        self._nix = nix
        self._extra_args = list(extra_args)

    def _argv(self, args: Sequence[str]) -> list[str]:
        return [self._nix, *_NIX_FLAGS, *self._extra_args, *args]

    async def _capture(self, *args: str) -> str:
        """Run ``nix`` with *args* and return its stdout.

        Raises:
            NixCommandError: If the command exits non-zero.
        """
        argv = self._argv(args)
        logger.debug("Running %s", argv)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise NixCommandError(
                argv, proc.returncode or -1, stderr.decode("utf-8", errors="replace")
            )
        return stdout.decode("utf-8", errors="replace")

    async def _passthrough(self, args: Sequence[str]) -> int:
        """Run ``nix`` with the terminal attached and return the exit status."""
        argv = self._argv(args)
        logger.debug("Running %s", argv)
        proc = await asyncio.create_subprocess_exec(*argv)
        return await proc.wait()

    async def _capture_json(self, *args: str) -> Any:
        raw = await self._capture(*args)
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            msg = f"nix {' '.join(args)} did not return JSON: {exc}"
            raise ValueError(msg) from exc

    # -- Engine protocol ---------------------------------------------------

    async def resolve_reference(self, flake_ref: str) -> Path:
        metadata = await self._capture_json("flake", "metadata", "--json", flake_ref)
        path = metadata.get("path") if isinstance(metadata, dict) else None
        if not path:
            msg = f"nix flake metadata returned no path for {flake_ref}"
            raise ValueError(msg)
        return Path(path)

    async def gather_system_info(self) -> SystemInfo:
        version = NixVersion.parse(await self._capture("--version"))
        try:
            config = await self._capture_json("config", "show", "--json")
        except NixCommandError:
            # `nix config show` only exists from 2.19 on.
            config = await self._capture_json("show-config", "--json")

        system = config.get("system", {}).get("value", "")
        substituters = config.get("substituters", {}).get("value", [])
        info = SystemInfo(
            nix_version=version,
            system=str(system),
            substituters=[str(s) for s in substituters],
        )
        logger.info("Nix %s on %s", info.nix_version, info.system)
        return info

    async def check_health(self, config: ConfigTree, info: SystemInfo) -> None:
        failures: list[str] = []

        if info.nix_version.as_tuple() < MIN_NIX_VERSION.as_tuple():
            failures.append(
                f"Your Nix version ({info.nix_version}) doesn't satisfy the "
                f"supported bounds: >={MIN_NIX_VERSION}"
            )
        else:
            logger.info("Nix version %s is supported", info.nix_version)

        missing = missing_caches(config.required_caches(), info.substituters)
        if missing:
            failures.append(
                f"You are missing some required caches: {' '.join(missing)}"
            )
        elif config.health is not None:
            logger.info("Required caches are configured")

        if failures:
            raise HealthCheckFailed(failures)

    async def resolve_systems(self, systems: str | None, info: SystemInfo) -> list[str]:
        """Resolve a ``--systems`` value to a list of system doubles.

        ``None`` means the current system. Known names are resolved offline;
        anything else is evaluated as a flake returning a list of systems.
        """
        if systems is None:
            return [info.system]
        name = systems.removeprefix("github:nix-systems/")
        if name in _KNOWN_SYSTEM_LISTS:
            return list(_KNOWN_SYSTEM_LISTS[name])

        expr = f'import (builtins.getFlake "{systems}").outPath'
        value = await self._capture_json("eval", "--impure", "--json", "--expr", expr)
        if not isinstance(value, list):
            msg = f"{systems} does not evaluate to a list of systems"
            raise ValueError(msg)
        return [str(v) for v in value]

    async def run_steps(
        self, options: ToolchainOptions, config: ConfigTree, info: SystemInfo
    ) -> ExecutionResult:
        systems = await self.resolve_systems(options.systems, info)
        results: dict[str, Any] = {}
        for root_name, root in config.roots().items():
            results[root_name] = await self._run_root(
                root_name, root, options.flake_ref, systems
            )
        return {"systems": systems, "result": results}

    async def _run_root(
        self,
        root_name: str,
        root: SubflakeConfig,
        flake_ref: str,
        systems: list[str],
    ) -> dict[str, Any]:
        """Run the custom steps of one root, stopping at the first failure."""
        entry: dict[str, Any] = {"dir": root.dir, "skipped": False, "steps": {}}
        if root.skip or not root.can_run_on(systems):
            logger.info("Skipping %s (systems=%s)", root_name, root.systems)
            entry["skipped"] = True
            return entry

        custom = root.steps.custom
        if not isinstance(custom, Mapping):
            msg = f"custom steps of {root_name} must be a mapping of name to step"
            raise InvalidStepError(msg)

        flake = sub_flake_url(flake_ref, root.dir)
        step_results: dict[str, Any] = {}
        for step_name, step in custom.items():
            args = build_step_command(str(step_name), step, flake, root.override_inputs)
            logger.info("Running custom step %s", step_name)
            start = time.monotonic()
            returncode = await self._passthrough(args)
            step_results[str(step_name)] = {
                "type": step["type"],
                "success": returncode == 0,
                "exit_code": returncode,
                "duration_seconds": round(time.monotonic() - start, 3),
            }
            if returncode != 0:
                raise NixCommandError(self._argv(args), returncode)

        entry["steps"] = {"custom": step_results}
        return entry

    async def publish_durable(self, path: Path) -> Path:
        out = await self._capture("store", "add-file", str(path))
        store_path = out.strip()
        if not store_path:
            msg = f"nix store add-file printed no store path for {path}"
            raise ValueError(msg)
        return Path(store_path)
