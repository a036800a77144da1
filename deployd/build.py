"""Async runner for the external build/deploy command."""

from __future__ import annotations

import asyncio
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from loguru import logger

from deployd.errors import BuildFailedError, BuildLaunchError
from deployd.models import Task


DEFAULT_COMMAND = ("docker-compose", "up", "--build", "-d")
INSTANCE_ENV = "COMPOSE_PROJECT_NAME"


@dataclass(slots=True)
class BuildResult:
    """Holds the outcome of one build command invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class BuildCommand:
    """Run the build command in a working directory, one call per task."""

    def __init__(self, argv: Sequence[str] | str = DEFAULT_COMMAND,
                 project_prefix: str = "adm") -> None:
        if isinstance(argv, str):
            argv = shlex.split(argv)
        if not argv:
            raise ValueError("build command must not be empty")
        self.argv = tuple(argv)
        self.project_prefix = project_prefix

    @property
    def display(self) -> str:
        return shlex.join(self.argv)

    def environment(self, task: Task) -> dict[str, str]:
        env = dict(os.environ)
        env[INSTANCE_ENV] = task.instance_name(self.project_prefix)
        return env

    async def _invoke(self, workdir: Path, env: dict[str, str]) -> BuildResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv,
                cwd=workdir,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("Failed to run `{}`: {}", self.display, e)
            raise BuildLaunchError(f"failed to run `{self.display}`") from e
        stdout_bytes, stderr_bytes = await process.communicate()
        return BuildResult(
            args=self.argv,
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def run(self, task: Task, workdir: Path) -> BuildResult:
        """Run the build. Raises BuildLaunchError or BuildFailedError."""
        result = await self._invoke(workdir, self.environment(task))
        if not result.ok:
            logger.bind(stdout=result.stdout, stderr=result.stderr).error(
                "`{}` returned failure. STDERR: {}",
                self.display, result.stderr)
            raise BuildFailedError(self.display, result.returncode,
                                   result.stdout, result.stderr)
        logger.info("Successfully deployed {}", task.key)
        return result


class FakeBuildCommand(BuildCommand):
    """Test double that records invocations instead of spawning processes."""

    def __init__(self, results: Sequence[BuildResult] | None = None,
                 project_prefix: str = "adm") -> None:
        super().__init__(("fake-build",), project_prefix)
        self._results = list(results or [])
        self.invocations: list[tuple[Path, str]] = []

    async def _invoke(self, workdir: Path, env: dict[str, str]) -> BuildResult:
        self.invocations.append((Path(workdir), env[INSTANCE_ENV]))
        if self._results:
            return self._results.pop(0)
        return BuildResult(args=self.argv, returncode=0, stdout="", stderr="")
