"""
Repository synchronization.

Brings a working directory from Absent or Present to AtCommit:

    ensure_present  open the clone at path, or clone url into it
    synchronize     fetch the upstream branch from origin, no merge
    checkout        hard reset to the commit and delete untracked files

The steps run strictly in that order and the first failure aborts the
sequence. Nothing is rolled back: the working directory is disposable and
the next push converges it again. Never edit files in it by hand.

All calls block; the runner moves them off the event loop.
"""

import re
from pathlib import Path

from git import Commit, Repo
from git.exc import BadName, BadObject, GitError
from loguru import logger

from deployd.errors import (
    CheckoutError, CommitNotFound, FetchError, InvalidCommitId,
    OpenOrCloneError,
)


# SHA-1 or SHA-256 object names
_COMMIT_ID = re.compile(r"[0-9a-fA-F]{40}|[0-9a-fA-F]{64}")


class GitBackend:
    """The handful of git operations the synchronizer needs, via GitPython."""

    def open(self, path: Path) -> Repo:
        return Repo(path)

    def clone(self, url: str, path: Path) -> Repo:
        return Repo.clone_from(url, path)

    def fetch(self, repo: Repo, remote: str = "origin",
              refs: tuple[str, ...] = ("master",)) -> None:
        repo.remote(remote).fetch(list(refs))

    def resolve_commit(self, repo: Repo, hex_id: str) -> Commit:
        if not _COMMIT_ID.fullmatch(hex_id):
            raise InvalidCommitId(f"invalid commit ID `{hex_id}`")
        try:
            return repo.commit(hex_id.lower())
        except (BadName, BadObject, ValueError) as e:
            raise CommitNotFound(f"failed to find commit `{hex_id}`") from e

    def hard_reset_and_clean(self, repo: Repo, commit: Commit) -> None:
        repo.head.reset(commit, index=True, working_tree=True)
        repo.git.clean("-f", "-f", "-d")


class RepositorySynchronizer:
    def __init__(self, backend: GitBackend | None = None,
                 upstream_branch: str = "master", remote: str = "origin"):
        self.backend = backend or GitBackend()
        self.upstream_branch = upstream_branch
        self.remote = remote

    def ensure_present(self, url: str, path: Path) -> Repo:
        try:
            repo = self.backend.open(path)
        except GitError as open_err:
            try:
                repo = self.backend.clone(url, path)
            except GitError as clone_err:
                logger.error(
                    "Failed to either open or clone repository {} at {}. "
                    "Open error: {}. Clone error: {}",
                    url, path, open_err, clone_err)
                raise OpenOrCloneError(url, path, open_err,
                                       clone_err) from clone_err
            logger.info("Cloned repo {} to {}", url, path)
            return repo
        logger.info("Opened repo at {}", path)
        return repo

    def synchronize(self, repo: Repo) -> None:
        try:
            self.backend.fetch(repo, self.remote, (self.upstream_branch,))
        except ValueError as e:
            # GitPython raises ValueError for an unknown remote name
            logger.error("Failed to find remote `{}`: {}", self.remote, e)
            raise FetchError(f"failed to find remote `{self.remote}`") from e
        except GitError as e:
            logger.error("Failed to fetch {}/{}: {}",
                         self.remote, self.upstream_branch, e)
            raise FetchError(
                f"failed to fetch {self.remote}/{self.upstream_branch}"
            ) from e

    def checkout(self, repo: Repo, commit_hash: str) -> Commit:
        try:
            commit = self.backend.resolve_commit(repo, commit_hash)
        except (InvalidCommitId, CommitNotFound) as e:
            logger.error("{}", e)
            raise
        try:
            self.backend.hard_reset_and_clean(repo, commit)
        except GitError as e:
            logger.error("Failed to reset repo to {}: {}", commit.hexsha, e)
            raise CheckoutError(
                f"failed to reset repo to {commit.hexsha}") from e
        logger.info("Checked out {}", commit.hexsha)
        return commit

    def run(self, url: str, path: Path, commit_hash: str) -> Commit:
        """ensure_present, synchronize and checkout, in order."""
        repo = self.ensure_present(url, path)
        try:
            self.synchronize(repo)
            return self.checkout(repo, commit_hash)
        finally:
            repo.close()
