"""Core data models for ``om run``.

Defines the user-facing task schema (``RawTaskSpec``), the canonical CI
configuration tree it expands into (``ConfigTree``), the toolchain
information gathered before running, the resolved command options, and the
published result artifact.
"""

from __future__ import annotations

from pathlib import Path
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

ExecutionResult = dict[str, Any]
"""Opaque JSON-serializable result document produced by the engine."""

DEFAULT_TASK_NAME = "default"
DEFAULT_FLAKE_REF = "."
DEFAULT_OUT_LINK = "result"
ROOT_KEY = "ROOT"


# ---------------------------------------------------------------------------
# Task file schema (om/<name>.yaml)
# ---------------------------------------------------------------------------


class CachesConfig(BaseModel):
    """Binary caches the project needs.

    Attributes:
        required: Cache URLs that must be configured as substituters.
    """

    model_config = ConfigDict(frozen=True)

    required: list[str] = Field(default_factory=list)

    @field_validator("required", mode="before")
    @classmethod
    def _null_is_empty(cls, v: Any) -> Any:
        return [] if v is None else v


class RawTaskSpec(BaseModel):
    """Minimal task description read from ``om/<name>.yaml``.

    Every field except ``steps`` carries a deterministic default. ``steps``
    is an opaque, order-preserving document handed to the engine untouched.

    Attributes:
        dir: Subdirectory in which the flake lives.
        steps: Custom steps to run, validated downstream by the engine.
        caches: Optional cache requirements; enables the health domain.
        override_inputs: Flake inputs to override (``overrideInputs``).
        systems: Optional whitelist of systems to build on.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    dir: str = "."
    steps: Any = Field(default_factory=dict)
    caches: CachesConfig | None = None
    override_inputs: dict[str, str] = Field(default_factory=dict, alias="overrideInputs")
    systems: list[str] | None = None

    @field_validator("dir", mode="before")
    @classmethod
    def _default_dir(cls, v: Any) -> Any:
        """Treat a null or empty ``dir`` as the project root."""
        if v is None or v == "":
            return "."
        return v

    @field_validator("steps", mode="before")
    @classmethod
    def _default_steps(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("override_inputs", mode="before")
    @classmethod
    def _default_override_inputs(cls, v: Any) -> Any:
        return {} if v is None else v


# ---------------------------------------------------------------------------
# Canonical configuration tree
# ---------------------------------------------------------------------------


class StepToggle(BaseModel):
    """On/off switch for one of the built-in CI stages."""

    model_config = ConfigDict(frozen=True)

    enable: bool = False


class StepsConfig(BaseModel):
    """Per-root CI stages. Built-in stages are toggles; ``custom`` is opaque."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    lockfile: StepToggle = Field(default_factory=StepToggle)
    build: StepToggle = Field(default_factory=StepToggle)
    flake_check: StepToggle = Field(default_factory=StepToggle, alias="flake-check")
    custom: Any = Field(default_factory=dict)


class SubflakeConfig(BaseModel):
    """Settings for one root (sub-flake) of a CI task.

    Attributes:
        dir: Subdirectory of the project holding the flake.
        skip: Whether the engine should skip this root.
        override_inputs: Flake inputs to override.
        systems: Whitelist of systems; ``None`` means unrestricted.
        steps: Stages to run for this root.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    dir: str = "."
    skip: bool = False
    override_inputs: dict[str, str] = Field(default_factory=dict, alias="overrideInputs")
    systems: list[str] | None = None
    steps: StepsConfig = Field(default_factory=StepsConfig)

    def can_run_on(self, systems: list[str]) -> bool:
        """Return whether any of *systems* is allowed by the whitelist."""
        if not self.systems:
            return True
        return any(system in self.systems for system in systems)


class HealthConfig(BaseModel):
    """Health-check settings for one task."""

    model_config = ConfigDict(frozen=True)

    caches: CachesConfig = Field(default_factory=CachesConfig)


class ConfigTree(BaseModel):
    """Fully expanded, engine-ready configuration keyed by domain.

    ``ci`` maps task name to root name to ``SubflakeConfig``. ``health`` is
    present only when the task file declared caches.
    """

    model_config = ConfigDict(frozen=True)

    ci: dict[str, dict[str, SubflakeConfig]]
    health: dict[str, HealthConfig] | None = None

    def roots(self, task: str = DEFAULT_TASK_NAME) -> dict[str, SubflakeConfig]:
        """Return the root entries configured for *task*."""
        return self.ci.get(task, {})

    def required_caches(self, task: str = DEFAULT_TASK_NAME) -> list[str]:
        """Return the required caches for *task*, empty when there is no health domain."""
        if self.health is None or task not in self.health:
            return []
        return list(self.health[task].caches.required)

    def to_json(self) -> str:
        """Serialize using the wire names (``overrideInputs``, ``flake-check``)."""
        return self.model_dump_json(by_alias=True)


# ---------------------------------------------------------------------------
# Toolchain information
# ---------------------------------------------------------------------------

_NIX_VERSION_PATTERN: re.Pattern[str] = re.compile(
    r"(?:nix \((?:Nix|Determinate Nix [^)]+)\) )?(\d+)\.(\d+)\.(\d+)\S*$"
)


class NixVersion(BaseModel):
    """Semantic version of the installed Nix."""

    model_config = ConfigDict(frozen=True)

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, text: str) -> NixVersion:
        """Parse ``nix --version`` output.

        Accepts ``nix (Nix) 2.13.0``, ``nix (Determinate Nix 3.6.6) 2.29.0``
        and a bare ``2.13.0``. A pre-release suffix after the patch number
        (``2.24.0pre20240801_abc``) is ignored.

        Raises:
            ValueError: If no version number can be found.
        """
        match = _NIX_VERSION_PATTERN.search(text.strip())
        if match is None:
            msg = f"failed to parse nix version from: {text.strip()!r}"
            raise ValueError(msg)
        major, minor, patch = (int(part) for part in match.groups())
        return cls(major=major, minor=minor, patch=patch)

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


class SystemInfo(BaseModel):
    """Information gathered about the local Nix installation.

    Attributes:
        nix_version: Installed Nix version.
        system: Current system double, e.g. ``x86_64-linux``.
        substituters: Configured binary cache URLs.
    """

    model_config = ConfigDict(frozen=True)

    nix_version: NixVersion
    system: str
    substituters: list[str] = Field(default_factory=list)


class ToolchainOptions(BaseModel):
    """Options passed through to the engine when running steps.

    Attributes:
        flake_ref: Flake the steps run against (local root or remote URL).
        systems: Raw ``--systems`` value; ``None`` builds for the current system.
        out_link: Requested result symlink, informational for the engine.
    """

    model_config = ConfigDict(frozen=True)

    flake_ref: str = DEFAULT_FLAKE_REF
    systems: str | None = None
    out_link: Path | None = None


# ---------------------------------------------------------------------------
# Command options and results
# ---------------------------------------------------------------------------


class RunCommand(BaseModel):
    """Resolved options of one ``om run`` invocation.

    Environment-derived defaults (``github_output``) are resolved by the
    CLI before this model is built.

    Attributes:
        name: Task name selecting ``om/<name>.yaml``.
        flake_ref: Project reference, local path or flake URL.
        systems: Optional ``--systems`` value (system name or flake URL).
        out_link: Requested symlink path for the result JSON.
        no_link: Disable symlink creation regardless of ``out_link``.
        github_output: Emit GitHub Actions log groups around phases.
        log_level: Logging level name.
    """

    model_config = ConfigDict(frozen=True)

    name: str = DEFAULT_TASK_NAME
    flake_ref: str = DEFAULT_FLAKE_REF
    systems: str | None = None
    out_link: Path | None = Path(DEFAULT_OUT_LINK)
    no_link: bool = False
    github_output: bool = False
    log_level: str = "INFO"

    @property
    def effective_out_link(self) -> Path | None:
        """The link to create, or ``None`` when linking is disabled."""
        if self.no_link:
            return None
        return self.out_link


class PublishedArtifact(BaseModel):
    """Location of a published result.

    Attributes:
        temp_path: Transient file the result was staged in.
        stable_path: Durable, content-addressed reference to the result.
        out_link: Symlink pointing at ``stable_path``, if one was created.
    """

    model_config = ConfigDict(frozen=True)

    temp_path: Path
    stable_path: Path
    out_link: Path | None = None

    def summary(self) -> str:
        """Human-readable message naming the stable path and the link."""
        msg = f"Result available at {self.stable_path}"
        if self.out_link is not None:
            msg += f" and symlinked at {self.out_link}"
        return msg
