"""Error taxonomy for ``om run``.

Every failure that terminates an invocation is a ``RunError`` subclass
naming the phase it came from. The CLI is the only place that turns these
into exit codes.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class RunError(Exception):
    """Terminal ``om run`` failure with diagnostic context.

    Attributes:
        phase: Name of the pipeline phase that failed.
        diagnostics: Structured context (paths, task name, cause) for debugging.
    """

    phase: str = "run"

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None) -> None:
        """Initialize with a message and optional structured diagnostics.

        Args:
            message: Human-readable error description.
            diagnostics: Structured context for the failure.
        """
        super().__init__(message)
        self.diagnostics: dict[str, Any] = dict(diagnostics or {})


class ConfigNotFoundError(RunError):
    """The task file ``om/<name>.yaml`` does not exist under the project root."""

    phase = "locate"

    def __init__(self, path: Path, task_name: str) -> None:
        """Initialize with the expected config path.

        Args:
            path: Absolute path that was expected to exist.
            task_name: The task name that selected the file.
        """
        self.path = path
        self.task_name = task_name
        super().__init__(
            f"Config file not found: {path}\nExpected om/{task_name}.yaml to exist",
            diagnostics={"path": str(path), "task": task_name},
        )


class ConfigParseError(RunError):
    """The task file could not be read or is not a valid task description."""

    phase = "parse"

    def __init__(self, path: Path | str, detail: str) -> None:
        """Initialize with the source path and the underlying diagnostic.

        Args:
            path: The file (or pseudo-source label) that failed to parse.
            detail: Parser or validator message.
        """
        self.path = Path(path)
        self.detail = detail
        super().__init__(
            f"Failed to parse config from {path}: {detail}",
            diagnostics={"path": str(path), "detail": detail},
        )


class InfoGatherError(RunError):
    """Gathering toolchain information failed."""

    phase = "info"


class HealthCheckError(RunError):
    """The toolchain or its caches failed the health check."""

    phase = "health"


class StepExecutionError(RunError):
    """The execution engine failed while running the task's steps."""

    phase = "steps"


class PublishError(RunError):
    """Writing or publishing the result artifact failed."""

    phase = "outlink"


class ProjectFetchError(RunError):
    """A remote project reference could not be fetched."""

    phase = "fetch"
