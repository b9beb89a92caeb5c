"""Shared fixtures for the om_run test suite."""

from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path
from typing import Any

from om_run.models import (
    ConfigTree,
    ExecutionResult,
    NixVersion,
    RawTaskSpec,
    RunCommand,
    SystemInfo,
    ToolchainOptions,
)
import pytest
import yaml

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_info(**overrides: Any) -> SystemInfo:
    """Build a valid SystemInfo with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed SystemInfo instance.
    """
    defaults: dict[str, Any] = {
        "nix_version": NixVersion(major=2, minor=24, patch=9),
        "system": "x86_64-linux",
        "substituters": ["https://cache.nixos.org/"],
    }
    defaults.update(overrides)
    return SystemInfo(**defaults)


def make_spec(**overrides: Any) -> RawTaskSpec:
    """Build a valid RawTaskSpec from wire-format field names.

    Args:
        **overrides: Field values to override (e.g. ``overrideInputs``).

    Returns:
        A fully constructed RawTaskSpec instance.
    """
    defaults: dict[str, Any] = {
        "steps": {"s1": {"type": "app", "name": "hello"}},
    }
    defaults.update(overrides)
    return RawTaskSpec.model_validate(defaults)


def make_command(**overrides: Any) -> RunCommand:
    """Build a RunCommand with linking disabled unless overridden.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed RunCommand instance.
    """
    defaults: dict[str, Any] = {"no_link": True, "out_link": None}
    defaults.update(overrides)
    return RunCommand(**defaults)


def write_task_file(root: Path, data: Any, name: str = "default") -> Path:
    """Write ``om/<name>.yaml`` under *root*.

    Args:
        root: Project directory.
        data: Document to dump as YAML, or raw text when a ``str``.
        name: Task name.

    Returns:
        Path of the written file.
    """
    om_dir = root / "om"
    om_dir.mkdir(parents=True, exist_ok=True)
    path = om_dir / f"{name}.yaml"
    text = data if isinstance(data, str) else yaml.safe_dump(data, sort_keys=False)
    path.write_text(text, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Fake engine
# ---------------------------------------------------------------------------


class FakeEngine:
    """In-memory ``Engine`` recording every call.

    ``failures`` maps a method name to the exception that method raises.
    ``publish_delays`` is consumed in order, one delay per publish, to
    control which concurrent publish finishes last.
    """

    def __init__(self, store_dir: Path, *, fetched_root: Path | None = None) -> None:
        self.store_dir = store_dir
        self.fetched_root = fetched_root
        self.info = make_info()
        self.calls: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.publish_delays: list[float] = []
        self.published: list[tuple[Path, str]] = []
        self.seen_options: ToolchainOptions | None = None
        self.seen_config: ConfigTree | None = None

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if name in self.failures:
            raise self.failures[name]

    async def resolve_reference(self, flake_ref: str) -> Path:
        self._enter("resolve_reference")
        assert self.fetched_root is not None
        return self.fetched_root

    async def gather_system_info(self) -> SystemInfo:
        self._enter("gather_system_info")
        return self.info

    async def check_health(self, config: ConfigTree, info: SystemInfo) -> None:
        self._enter("check_health")

    async def run_steps(
        self, options: ToolchainOptions, config: ConfigTree, info: SystemInfo
    ) -> ExecutionResult:
        self._enter("run_steps")
        self.seen_options = options
        self.seen_config = config
        results = {
            name: {"dir": root.dir, "steps": {"custom": root.steps.custom}}
            for name, root in config.roots().items()
        }
        return {"systems": [info.system], "result": results}

    async def publish_durable(self, path: Path) -> Path:
        self._enter("publish_durable")
        content = path.read_text(encoding="utf-8")
        if self.publish_delays:
            await asyncio.sleep(self.publish_delays.pop(0))
        # Re-read after the delay: the staged file must still be intact.
        assert path.read_text(encoding="utf-8") == content
        digest = hashlib.sha256(content.encode("utf-8")).hexdigest()[:32]
        stable = self.store_dir / f"{digest}-om-run-results.json"
        stable.write_text(content, encoding="utf-8")
        self.published.append((path, content))
        return stable


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store_dir(tmp_path: Path) -> Path:
    """Directory standing in for the content-addressed store."""
    path = tmp_path / "store"
    path.mkdir()
    return path


@pytest.fixture()
def fake_engine(store_dir: Path) -> FakeEngine:
    """Return a FakeEngine backed by ``store_dir``."""
    return FakeEngine(store_dir)


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    """Provide a project with ``om/default.yaml`` defining step ``s1``."""
    root = tmp_path / "project"
    root.mkdir()
    write_task_file(
        root,
        {"dir": ".", "steps": {"s1": {"type": "devshell", "command": ["echo", "hi"]}}},
    )
    return root
