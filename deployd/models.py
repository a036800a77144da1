"""
Data models for the deployment pipeline.

A Task is built from a verified push event, travels through the queue
and is owned by one worker for exactly one build attempt. Nothing here is
persisted: once the Outcome has been reported the task is gone.

The Branch Key (owner, repository, branch) is the unit of serialization.
Two tasks with equal keys never synchronize or build at the same time.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple

from deployd.errors import DeployError, describe


class BranchKey(NamedTuple):
    owner: str
    repository: str
    branch: str

    def __str__(self) -> str:
        return f"{self.owner}/{self.repository}#{self.branch}"


@dataclass(frozen=True)
class Task:
    owner: str
    repository: str
    branch: str
    commit_hash: str
    source_url: str

    @property
    def key(self) -> BranchKey:
        return BranchKey(self.owner, self.repository, self.branch)

    def workdir(self, base_path: Path) -> Path:
        """base_path / owner / repository / branch"""
        return Path(base_path) / self.owner / self.repository / self.branch

    def instance_name(self, prefix: str) -> str:
        """Unique name for the build tool's own namespacing."""
        return f"{prefix}-{self.owner}-{self.repository}-{self.branch}"

    def log_tags(self) -> dict:
        return {
            "owner": self.owner,
            "repo": self.repository,
            "branch": self.branch,
            "commit": self.commit_hash,
        }


@dataclass(frozen=True)
class Outcome:
    """
    Terminal result of one build attempt. Success when error is None,
    Failure(detail) otherwise.
    """
    error: DeployError | None = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls()

    @classmethod
    def failure(cls, error: DeployError) -> "Outcome":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def detail(self) -> str:
        if self.error is None:
            return "completed"
        return describe(self.error)

    def __str__(self) -> str:
        return "Success" if self.ok else f"Failure({self.detail})"
