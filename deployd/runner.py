"""
Build orchestration.

A worker takes one task at a time off the queue and runs it:

  1. create base_path/owner/repo/branch (failure drops the task)
  2. take the branch lock
  3. open-or-clone, fetch, hard reset to the pushed commit
  4. run the build command in the working directory
  5. release the lock
  6. report the Outcome to the logs, and to the notifier in the background

Every push gets exactly one attempt. A failed build is retried only by
the next push or by running `deployd deploy` by hand.

Workers run as asyncio tasks. Git work runs in a thread; the build
command is an asyncio subprocess. A build that has started always runs to
completion: stopping the pool drains the queue first and only cancels
workers that are idle on it.
"""

import asyncio
from pathlib import Path

from loguru import logger

from deployd.build import BuildCommand
from deployd.errors import DeployError, UnexpectedError, WorkdirError
from deployd.git_sync import RepositorySynchronizer
from deployd.lock_manager import LockManager
from deployd.models import Outcome, Task
from deployd.notifier import Notifier
from deployd.task_queue import TaskQueue


class Runner:
    def __init__(self, base_path: Path, lock_manager: LockManager,
                 synchronizer: RepositorySynchronizer, builder: BuildCommand,
                 notifier: Notifier | None = None):
        self.base_path = Path(base_path)
        self.lock_manager = lock_manager
        self.synchronizer = synchronizer
        self.builder = builder
        self.notifier = notifier or Notifier()
        self._notifications: set[asyncio.Task] = set()

    async def _sync_and_build(self, task: Task, path: Path) -> None:
        logger.info("Acquired lock for {}, starting build", task.key)
        await asyncio.to_thread(
            self.synchronizer.run, task.source_url, path, task.commit_hash)
        await self.builder.run(task, path)

    async def execute(self, task: Task) -> None:
        """Steps 1-5. Raises on the first failing step."""
        path = task.workdir(self.base_path)
        logger.info("Running build for {} ({}) in {}",
                    task.key, task.commit_hash, path)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WorkdirError(
                f"failed to create build directory {path}") from e
        if self.lock_manager.locked(task.key):
            logger.info("Waiting for another build of {} to finish", task.key)
        await self.lock_manager.with_lock(
            task.key, lambda: self._sync_and_build(task, path))

    async def process(self, task: Task) -> Outcome:
        """Run task and report the outcome. Never raises."""
        with logger.contextualize(**task.log_tags()):
            try:
                await self.execute(task)
            except DeployError as e:
                outcome = Outcome.failure(e)
                logger.error("Build of {} failed: {}", task.key,
                             outcome.detail)
            except Exception as e:
                logger.exception("Unexpected error while building {}",
                                 task.key)
                error = UnexpectedError(f"unexpected {type(e).__name__}")
                error.__cause__ = e
                outcome = Outcome.failure(error)
            else:
                outcome = Outcome.success()
                logger.info("Build of {} completed", task.key)
            self._report(task, outcome)
        return outcome

    def _report(self, task: Task, outcome: Outcome) -> None:
        # runs off the build path, see flush()
        notification = asyncio.create_task(self._deliver(task, outcome))
        self._notifications.add(notification)
        notification.add_done_callback(self._notifications.discard)

    async def _deliver(self, task: Task, outcome: Outcome) -> None:
        try:
            await self.notifier.notify(task, outcome)
        except Exception:
            logger.exception("Failed to send notification for {}", task.key)

    async def flush(self) -> None:
        """Wait for notifications still in flight."""
        while self._notifications:
            await asyncio.gather(*self._notifications)

    async def work(self, queue: TaskQueue, worker_id: int = 0) -> None:
        """Consume queue until cancelled."""
        logger.debug("Worker {} started", worker_id)
        while True:
            task = await queue.get()
            try:
                await self.process(task)
            except Exception:
                # keep the worker alive for the next task
                logger.exception("Unexpected error while processing {}",
                                 task.key)
            finally:
                queue.task_done()


def runner_from_settings(settings, lock_manager: LockManager,
                         notifier: Notifier | None = None) -> Runner:
    return Runner(
        base_path=settings.repo_root,
        lock_manager=lock_manager,
        synchronizer=RepositorySynchronizer(
            upstream_branch=settings.target_branch),
        builder=BuildCommand(settings.build_command, settings.project_prefix),
        notifier=notifier,
    )


class WorkerPool:
    """A fixed number of workers consuming one queue."""

    def __init__(self, runner: Runner, queue: TaskQueue, size: int = 1):
        if size < 1:
            raise ValueError("worker pool size must be >= 1")
        self.runner = runner
        self.queue = queue
        self.size = size
        self._workers: list[asyncio.Task] = []

    def __len__(self) -> int:
        return len(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self.runner.work(self.queue, i),
                                name=f"deployd-worker-{i}")
            for i in range(self.size)
        ]
        logger.info("Started {} build workers", self.size)

    async def stop(self) -> None:
        """Close admission, finish queued work and pending notifications."""
        self.queue.close()
        if not self._workers:
            return
        pending = self.queue.qsize()
        if pending:
            logger.info("Draining {} queued build tasks", pending)
        await self.queue.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        await self.runner.flush()
        logger.info("Build workers stopped")
