"""
Orchestrator tests: the build command, one task end to end, and the
worker pool.

Covers:
- Build command environment, exit status and launch failures
- Outcome of each failing step, and that a failed sync skips the build
- Branch serialization across workers
- Notifications per outcome, sent in the background; a broken notifier
  is contained
- Unexpected errors still end in a reported Failure
- Pool shutdown drains the queue and pending notifications
"""

import asyncio
from pathlib import Path

import pytest
from git import Actor, Repo
from git.exc import GitCommandError

from deployd.build import BuildCommand, BuildResult, FakeBuildCommand
from deployd.errors import (
    BuildFailedError, BuildLaunchError, CheckoutError, CommitNotFound,
    FetchError, LockTimeout, OpenOrCloneError, QueueClosed, UnexpectedError,
    WorkdirError,
)
from deployd.git_sync import GitBackend, RepositorySynchronizer
from deployd.lock_manager import LockManager
from deployd.models import Outcome, Task
from deployd.notifier import Notifier
from deployd.runner import Runner, WorkerPool
from deployd.task_queue import TaskQueue


AUTHOR = Actor("Deploy Test", "deploy@example.com")


def make_task(owner="acme", repo="site", branch="master",
              commit="a" * 40, url="https://example.com/site") -> Task:
    return Task(owner=owner, repository=repo, branch=branch,
                commit_hash=commit, source_url=url)


class FakeSynchronizer:
    """Records calls, optionally failing every one of them."""

    def __init__(self, fail: Exception | None = None):
        self.fail = fail
        self.calls = []

    def run(self, url, path, commit_hash):
        self.calls.append((url, Path(path), commit_hash))
        if self.fail is not None:
            raise self.fail


class RecordingNotifier(Notifier):
    def __init__(self):
        super().__init__()
        self.sent = []

    async def notify(self, task, outcome):
        self.sent.append((task, outcome))


class ExplodingNotifier(Notifier):
    async def notify(self, task, outcome):
        raise RuntimeError("notifier exploded")


def make_runner(tmp_path, sync=None, builder=None, notifier=None,
                locks=None) -> Runner:
    return Runner(
        base_path=tmp_path / "builds",
        lock_manager=locks if locks is not None else LockManager(),
        synchronizer=sync or FakeSynchronizer(),
        builder=builder or FakeBuildCommand(),
        notifier=notifier,
    )


def script(tmp_path, body: str) -> Path:
    path = tmp_path / "build.sh"
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(0o755)
    return path


# ---------------------------------------------------------------------------
# Build command
# ---------------------------------------------------------------------------

class TestBuildCommand:
    async def test_runs_in_workdir_with_instance_name(self, tmp_path):
        cmd = BuildCommand([str(script(tmp_path, 'pwd; echo "$COMPOSE_PROJECT_NAME"'))],
                           project_prefix="adm")
        workdir = tmp_path / "wd"
        workdir.mkdir()
        result = await cmd.run(make_task(), workdir)
        assert result.ok
        lines = result.stdout.split()
        assert Path(lines[0]).resolve() == workdir.resolve()
        assert lines[1] == "adm-acme-site-master"

    async def test_nonzero_exit_keeps_stderr(self, tmp_path):
        cmd = BuildCommand([str(script(tmp_path, "echo out; echo 'no such service' >&2; exit 3"))])
        with pytest.raises(BuildFailedError) as info:
            await cmd.run(make_task(), tmp_path)
        assert info.value.returncode == 3
        assert info.value.stdout.strip() == "out"
        assert "no such service" in info.value.stderr
        assert "no such service" in str(info.value)

    async def test_missing_executable_is_launch_error(self, tmp_path):
        cmd = BuildCommand([str(tmp_path / "missing-tool"), "up"])
        with pytest.raises(BuildLaunchError):
            await cmd.run(make_task(), tmp_path)

    def test_string_command_is_split(self):
        cmd = BuildCommand("docker compose up --build -d")
        assert cmd.argv == ("docker", "compose", "up", "--build", "-d")

    def test_empty_command(self):
        with pytest.raises(ValueError):
            BuildCommand("")

    def test_default_command(self):
        assert BuildCommand().argv == ("docker-compose", "up", "--build", "-d")


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class TestRunner:
    async def test_success(self, tmp_path):
        sync = FakeSynchronizer()
        builder = FakeBuildCommand()
        notifier = RecordingNotifier()
        runner = make_runner(tmp_path, sync, builder, notifier)
        task = make_task()

        outcome = await runner.process(task)

        path = tmp_path / "builds" / "acme" / "site" / "master"
        assert outcome.ok
        assert path.is_dir()
        assert sync.calls == [(task.source_url, path, task.commit_hash)]
        assert builder.invocations == [(path, "adm-acme-site-master")]
        await runner.flush()
        assert notifier.sent == [(task, outcome)]

    async def test_sync_failure_skips_build(self, tmp_path):
        sync = FakeSynchronizer(fail=FetchError("failed to fetch origin/master"))
        builder = FakeBuildCommand()
        notifier = RecordingNotifier()
        runner = make_runner(tmp_path, sync, builder, notifier)

        outcome = await runner.process(make_task())

        assert not outcome.ok
        assert isinstance(outcome.error, FetchError)
        assert builder.invocations == []
        await runner.flush()
        assert notifier.sent[0][1] is outcome

    async def test_build_failure(self, tmp_path):
        builder = FakeBuildCommand([
            BuildResult(args=("fake-build",), returncode=1, stdout="",
                        stderr="image not found"),
        ])
        outcome = await make_runner(tmp_path, builder=builder).process(make_task())
        assert isinstance(outcome.error, BuildFailedError)
        assert "image not found" in outcome.detail

    async def test_workdir_failure_drops_task(self, tmp_path):
        (tmp_path / "builds").write_text("a file, not a directory")
        sync = FakeSynchronizer()
        notifier = RecordingNotifier()
        runner = make_runner(tmp_path, sync, notifier=notifier)

        outcome = await runner.process(make_task())

        assert isinstance(outcome.error, WorkdirError)
        assert sync.calls == []
        await runner.flush()
        assert len(notifier.sent) == 1

    async def test_lock_timeout_is_failure(self, tmp_path):
        locks = LockManager(timeout=0.01)
        runner = make_runner(tmp_path, locks=locks)
        task = make_task()
        async with locks.hold(task.key):
            outcome = await runner.process(task)
        assert isinstance(outcome.error, LockTimeout)

    async def test_notifier_errors_do_not_escape_worker(self, tmp_path):
        runner = make_runner(tmp_path, notifier=ExplodingNotifier())
        queue = TaskQueue(4)
        pool = WorkerPool(runner, queue, size=1)
        pool.start()
        queue.submit(make_task())
        queue.submit(make_task(commit="b" * 40))
        await asyncio.wait_for(queue.join(), timeout=5)
        assert len(pool) == 1
        await pool.stop()

    async def test_real_git_unknown_commit_never_builds(self, tmp_path):
        upstream = Repo.init(tmp_path / "upstream", initial_branch="master")
        (tmp_path / "upstream" / "README.md").write_text("v1\n")
        upstream.index.add(["README.md"])
        upstream.index.commit("initial", author=AUTHOR, committer=AUTHOR)

        builder = FakeBuildCommand()
        runner = make_runner(tmp_path, sync=RepositorySynchronizer(),
                             builder=builder)
        task = make_task(commit="0123456789abcdef0123456789abcdef01234567",
                         url=upstream.working_tree_dir)

        outcome = await runner.process(task)

        assert not outcome.ok
        assert isinstance(outcome.error, CommitNotFound)
        assert builder.invocations == []

    async def test_real_git_deploys_pushed_commit(self, tmp_path):
        upstream = Repo.init(tmp_path / "upstream", initial_branch="master")
        (tmp_path / "upstream" / "README.md").write_text("v1\n")
        upstream.index.add(["README.md"])
        sha = upstream.index.commit("initial", author=AUTHOR,
                                    committer=AUTHOR).hexsha

        builder = BuildCommand([str(script(tmp_path, "cat README.md"))])
        runner = make_runner(tmp_path, sync=RepositorySynchronizer(),
                             builder=builder)
        outcome = await runner.process(
            make_task(commit=sha, url=upstream.working_tree_dir))
        assert outcome == Outcome.success()

    async def test_unexpected_error_is_reported_as_failure(self, tmp_path):
        sync = FakeSynchronizer(fail=RuntimeError("disk on fire"))
        builder = FakeBuildCommand()
        notifier = RecordingNotifier()
        runner = make_runner(tmp_path, sync, builder, notifier)

        outcome = await runner.process(make_task())
        await runner.flush()

        assert isinstance(outcome.error, UnexpectedError)
        assert isinstance(outcome.error.__cause__, RuntimeError)
        assert "disk on fire" in outcome.detail
        assert builder.invocations == []
        assert notifier.sent == [(make_task(), outcome)]

    async def test_unsafe_clone_url_is_reported_as_failure(self, tmp_path):
        builder = FakeBuildCommand()
        notifier = RecordingNotifier()
        runner = make_runner(tmp_path, sync=RepositorySynchronizer(),
                             builder=builder, notifier=notifier)

        outcome = await runner.process(make_task(url="ext::sh -c true"))
        await runner.flush()

        assert isinstance(outcome.error, OpenOrCloneError)
        assert builder.invocations == []
        assert len(notifier.sent) == 1

    async def test_checkout_failure_never_builds(self, tmp_path):
        upstream = Repo.init(tmp_path / "upstream", initial_branch="master")
        (tmp_path / "upstream" / "README.md").write_text("v1\n")
        upstream.index.add(["README.md"])
        sha = upstream.index.commit("initial", author=AUTHOR,
                                    committer=AUTHOR).hexsha

        class BrokenReset(GitBackend):
            def hard_reset_and_clean(self, repo, commit):
                raise GitCommandError(["git", "clean", "-f", "-f", "-d"], 1)

        builder = FakeBuildCommand()
        runner = make_runner(tmp_path, sync=RepositorySynchronizer(BrokenReset()),
                             builder=builder)
        outcome = await runner.process(
            make_task(commit=sha, url=upstream.working_tree_dir))

        assert isinstance(outcome.error, CheckoutError)
        assert builder.invocations == []

    async def test_notification_does_not_hold_up_the_worker(self, tmp_path):
        release = asyncio.Event()

        class SlowNotifier(RecordingNotifier):
            async def notify(self, task, outcome):
                await release.wait()
                await super().notify(task, outcome)

        notifier = SlowNotifier()
        runner = make_runner(tmp_path, notifier=notifier)

        outcome = await asyncio.wait_for(runner.process(make_task()), timeout=2)
        assert outcome.ok
        assert notifier.sent == []

        release.set()
        await runner.flush()
        assert notifier.sent == [(make_task(), outcome)]


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

class SlowBuild(FakeBuildCommand):
    """Tracks how many builds run at once, overall and per instance name."""

    def __init__(self, delay=0.02):
        super().__init__()
        self.delay = delay
        self.active: dict[str, int] = {}
        self.peak: dict[str, int] = {}
        self.total = 0
        self.peak_total = 0

    async def _invoke(self, workdir, env):
        name = env["COMPOSE_PROJECT_NAME"]
        self.active[name] = self.active.get(name, 0) + 1
        self.peak[name] = max(self.peak.get(name, 0), self.active[name])
        self.total += 1
        self.peak_total = max(self.peak_total, self.total)
        try:
            await asyncio.sleep(self.delay)
            return await super()._invoke(workdir, env)
        finally:
            self.active[name] -= 1
            self.total -= 1


class TestWorkerPool:
    async def test_same_branch_is_serialized_across_workers(self, tmp_path):
        builder = SlowBuild()
        runner = make_runner(tmp_path, builder=builder)
        queue = TaskQueue(16)
        pool = WorkerPool(runner, queue, size=4)
        pool.start()
        for c in "abcdef":
            queue.submit(make_task(commit=c * 40))
        await asyncio.wait_for(queue.join(), timeout=5)
        await pool.stop()

        assert builder.peak["adm-acme-site-master"] == 1
        assert len(builder.invocations) == 6

    async def test_different_branches_build_concurrently(self, tmp_path):
        builder = SlowBuild(delay=0.05)
        runner = make_runner(tmp_path, builder=builder)
        queue = TaskQueue(16)
        pool = WorkerPool(runner, queue, size=3)
        pool.start()
        for repo in ("site", "blog", "api"):
            queue.submit(make_task(repo=repo))
        await asyncio.wait_for(queue.join(), timeout=5)
        await pool.stop()

        assert builder.peak_total > 1
        assert all(peak == 1 for peak in builder.peak.values())

    async def test_pool_size_bounds_concurrency(self, tmp_path):
        builder = SlowBuild()
        runner = make_runner(tmp_path, builder=builder)
        queue = TaskQueue(16)
        pool = WorkerPool(runner, queue, size=2)
        pool.start()
        for i in range(6):
            queue.submit(make_task(repo=f"repo{i}"))
        await asyncio.wait_for(queue.join(), timeout=5)
        await pool.stop()
        assert builder.peak_total <= 2

    async def test_stop_drains_queue_and_closes_admission(self, tmp_path):
        builder = SlowBuild()
        runner = make_runner(tmp_path, builder=builder)
        queue = TaskQueue(16)
        pool = WorkerPool(runner, queue, size=1)
        pool.start()
        for c in "abc":
            queue.submit(make_task(commit=c * 40))

        await asyncio.wait_for(pool.stop(), timeout=5)

        assert len(builder.invocations) == 3
        assert len(pool) == 0
        with pytest.raises(QueueClosed):
            queue.submit(make_task())

    def test_invalid_size(self, tmp_path):
        with pytest.raises(ValueError):
            WorkerPool(make_runner(tmp_path), TaskQueue(1), size=0)

    async def test_stop_waits_for_notifications(self, tmp_path):
        class SlowNotifier(RecordingNotifier):
            async def notify(self, task, outcome):
                await asyncio.sleep(0.05)
                await super().notify(task, outcome)

        notifier = SlowNotifier()
        queue = TaskQueue(4)
        pool = WorkerPool(make_runner(tmp_path, notifier=notifier), queue, size=1)
        pool.start()
        queue.submit(make_task())

        await asyncio.wait_for(pool.stop(), timeout=5)

        assert len(notifier.sent) == 1
